"""
Idempotent copy of every user's dataset from one StorageProvider to another.

Rows are matched on natural keys rather than ids: users by email, categories
by (user, name), time entries by (user, category, start_time, task_name) and
settings by user. Re-running against the same source creates nothing new.
"""

from __future__ import annotations

import logging
from typing import Dict

from timetracker.entities import MigrationStats, TimeEntryCreate, User
from timetracker.provider import StorageProvider

logger = logging.getLogger(__name__)


def _target_user(source_user: User, target: StorageProvider, stats: MigrationStats) -> User:
    existing = target.find_user_by_email(source_user.email)
    if existing is not None:
        stats.users_existing += 1
        return existing
    stats.users_created += 1
    return target.create_user(
        source_user.email, source_user.username, source_user.password_hash
    )


def migrate_user(
    source: StorageProvider,
    target: StorageProvider,
    source_user: User,
    stats: MigrationStats,
) -> None:
    user = _target_user(source_user, target, stats)

    category_map: Dict[int, int] = {}
    for category in source.list_categories_for_migration(source_user.id):
        existing = target.find_category_by_name(user.id, category.name)
        if existing is not None:
            stats.categories_existing += 1
        else:
            existing = target.create_category(user.id, category.name, category.color)
            stats.categories_created += 1
        category_map[category.id] = existing.id

    for entry in source.list_time_entries_for_migration(source_user.id):
        category_id = category_map.get(entry.category_id)
        if category_id is None:
            stats.entries_skipped += 1
            continue
        duplicate = target.find_equivalent_time_entry(
            user.id, category_id, entry.start_time, entry.task_name
        )
        if duplicate is not None:
            stats.entries_existing += 1
            continue
        target.create_time_entry(
            TimeEntryCreate(
                user_id=user.id,
                category_id=category_id,
                start_time=entry.start_time,
                task_name=entry.task_name,
                end_time=entry.end_time,
                scheduled_end_time=entry.scheduled_end_time,
                duration_minutes=entry.duration_minutes,
            )
        )
        stats.entries_created += 1

    settings = source.get_user_settings_for_migration(source_user.id)
    if settings is not None:
        target.upsert_user_settings(user.id, settings.timezone)
        stats.settings_copied += 1


def migrate(source: StorageProvider, target: StorageProvider) -> MigrationStats:
    """Copy every user from ``source`` into ``target``. Both must be initialized."""
    stats = MigrationStats()
    users = source.list_users_for_migration()
    logger.info("Migrating %d users", len(users))
    for user in users:
        migrate_user(source, target, user, stats)
        logger.debug("Migrated user %s", user.email)
    logger.info("Migration finished: %s", stats.as_dict())
    return stats
