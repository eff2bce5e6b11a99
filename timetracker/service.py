"""
Backend-agnostic workflows over a StorageProvider.

Argument checks, ownership checks and uniqueness pre-checks live here once so
neither backend has to repeat them. Providers still enforce their own
constraints; the service only turns the common failure cases into clear
errors before any write happens.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from timetracker.analytics import (
    AnalyticsReport,
    CategoryDrilldown,
    PageRequest,
    TaskNamePage,
    build_report,
    validate_period,
)
from timetracker.entities import (
    DEFAULT_TIMEZONE,
    UNSET,
    Category,
    ExportRow,
    TaskSuggestion,
    TimeEntry,
    TimeEntryCreate,
    TimeEntryUpdate,
    User,
    UserSettings,
    anonymous_username_candidates,
)
from timetracker.errors import ConflictError, NotFoundError, ValidationError
from timetracker.provider import StorageProvider
from timetracker.timeutil import (
    local_day_bounds,
    normalize_optional_timestamp,
    normalize_timestamp,
    to_iso,
    utc_now,
    validate_timezone_offset,
)

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 500
MAX_SUGGESTIONS = 50


def _require_text(value: Optional[str], field: str) -> str:
    if value is None or not str(value).strip():
        raise ValidationError(f"{field} is required")
    return str(value).strip()


def _require_value(value, field: str):
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{field} is required")
    return value


def _clean_task_name(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _require_id(value, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(f"{field} must be a positive integer")
    return value


class TimeTrackingService:
    """Operations the HTTP layer (or any other caller) invokes per user."""

    def __init__(
        self,
        provider: StorageProvider,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.provider = provider
        self.clock = clock

    def _now(self) -> str:
        return to_iso(self.clock())

    def _require_user(self, user_id: int) -> User:
        user = self.provider.find_user_by_id(user_id)
        if user is None:
            raise NotFoundError("User not found", {"user_id": user_id})
        return user

    def _require_category(self, user_id: int, category_id) -> Category:
        _require_id(category_id, "category_id")
        category = self.provider.find_category_by_id(user_id, category_id)
        if category is None:
            raise NotFoundError("Category not found", {"category_id": category_id})
        return category

    def _require_entry(self, user_id: int, entry_id) -> TimeEntry:
        _require_id(entry_id, "entry_id")
        entry = self.provider.find_time_entry_by_id(user_id, entry_id)
        if entry is None:
            raise NotFoundError("Time entry not found", {"entry_id": entry_id})
        return entry

    # Accounts

    def register_user(self, email: str, username: str, password_hash: str) -> User:
        email = _require_text(email, "email").lower()
        username = _require_text(username, "username")
        password_hash = _require_text(password_hash, "password_hash")
        if self.provider.find_user_by_email(email) is not None:
            raise ConflictError("Email already registered", {"email": email})
        if self.provider.find_user_by_username(username) is not None:
            raise ConflictError("Username already taken", {"username": username})
        user = self.provider.create_user(email, username, password_hash)
        self.provider.create_default_categories(user.id)
        logger.info("Registered user %s", user.id)
        return user

    def get_or_create_anonymous_user(self, session_id: str) -> User:
        session_id = _require_text(session_id, "session_id")
        user = self.provider.find_anonymous_user_by_session(session_id)
        if user is not None:
            return user
        username = next(
            name
            for name in anonymous_username_candidates(session_id)
            if self.provider.find_user_by_username(name) is None
        )
        user = self.provider.create_anonymous_user(session_id, username)
        self.provider.create_default_categories(user.id)
        logger.info("Created anonymous user %s", user.id)
        return user

    def delete_account(self, user_id: int) -> None:
        self._require_user(user_id)
        self.provider.delete_user(user_id)
        logger.info("Deleted user %s and all owned data", user_id)

    # Categories

    def list_categories(self, user_id: int) -> List[Category]:
        return self.provider.list_categories(user_id)

    def create_category(
        self, user_id: int, name: str, color: Optional[str] = None
    ) -> Category:
        name = _require_text(name, "name")
        self._require_user(user_id)
        if self.provider.find_category_by_name(user_id, name) is not None:
            raise ConflictError("Category already exists", {"name": name})
        return self.provider.create_category(user_id, name, color or None)

    def update_category(
        self, user_id: int, category_id: int, name: str, color: Optional[str] = None
    ) -> Category:
        self._require_category(user_id, category_id)
        name = _require_text(name, "name")
        clash = self.provider.find_category_by_name(user_id, name)
        if clash is not None and clash.id != category_id:
            raise ConflictError("Category already exists", {"name": name})
        return self.provider.update_category(user_id, category_id, name, color or None)

    def delete_category(
        self,
        user_id: int,
        category_id: int,
        replacement_category_id: Optional[int] = None,
    ) -> int:
        """
        Delete a category, moving its entries to ``replacement_category_id``
        first when it has any. Returns the number of reassigned entries.
        """
        self._require_category(user_id, category_id)
        linked = self.provider.count_time_entries_for_category(user_id, category_id)
        if linked == 0:
            self.provider.delete_category(user_id, category_id)
            logger.info("Deleted empty category %s for user %s", category_id, user_id)
            return 0
        if self.provider.count_categories(user_id) <= 1:
            raise ConflictError(
                "Cannot delete the only category while it has time entries",
                {"category_id": category_id, "count": linked},
            )
        if replacement_category_id is None:
            raise ConflictError(
                "Category has time entries; a replacement category is required",
                {"category_id": category_id, "count": linked},
            )
        _require_id(replacement_category_id, "replacementCategoryId")
        if replacement_category_id == category_id:
            raise ValidationError(
                "Replacement category must differ from the deleted category"
            )
        self._require_category(user_id, replacement_category_id)
        reassigned = self.provider.delete_category(
            user_id, category_id, replacement_category_id
        )
        logger.info(
            "Deleted category %s for user %s, %d entries moved to %s",
            category_id,
            user_id,
            reassigned,
            replacement_category_id,
        )
        return reassigned

    # Time entries

    def get_active_entry(self, user_id: int) -> Optional[TimeEntry]:
        return self.provider.get_active_time_entry(user_id)

    def start_entry(
        self,
        user_id: int,
        category_id: int,
        task_name: Optional[str] = None,
        scheduled_end_time=None,
    ) -> TimeEntry:
        """Start a timer, finalizing whichever entry was running."""
        self._require_category(user_id, category_id)
        return self.provider.create_time_entry(
            TimeEntryCreate(
                user_id=user_id,
                category_id=category_id,
                start_time=self._now(),
                task_name=_clean_task_name(task_name),
                scheduled_end_time=normalize_optional_timestamp(
                    scheduled_end_time, "scheduled_end_time"
                ),
            )
        )

    def stop_entry(self, user_id: int, entry_id: int) -> TimeEntry:
        _require_id(entry_id, "entry_id")
        entry = self.provider.stop_time_entry(user_id, entry_id, self._now())
        if entry is None:
            raise NotFoundError("Active entry not found", {"entry_id": entry_id})
        return entry

    def create_manual_entry(
        self,
        user_id: int,
        category_id: int,
        start_time,
        end_time,
        task_name: Optional[str] = None,
    ) -> TimeEntry:
        start = normalize_timestamp(_require_value(start_time, "start_time"), "start_time")
        end = normalize_timestamp(_require_value(end_time, "end_time"), "end_time")
        if end <= start:
            raise ValidationError("End time must be after start time")
        self._require_category(user_id, category_id)
        return self.provider.create_time_entry(
            TimeEntryCreate(
                user_id=user_id,
                category_id=category_id,
                start_time=start,
                end_time=end,
                task_name=_clean_task_name(task_name),
            )
        )

    def update_entry(
        self,
        user_id: int,
        entry_id: int,
        *,
        category_id=UNSET,
        task_name=UNSET,
        start_time=UNSET,
        end_time=UNSET,
        scheduled_end_time=UNSET,
    ) -> TimeEntry:
        entry = self._require_entry(user_id, entry_id)
        update = TimeEntryUpdate()
        if category_id is not UNSET:
            self._require_category(user_id, category_id)
            update.category_id = category_id
        if task_name is not UNSET:
            update.task_name = _clean_task_name(task_name)
        if start_time is not UNSET:
            update.start_time = normalize_timestamp(
                _require_value(start_time, "start_time"), "start_time"
            )
        if end_time is not UNSET:
            update.end_time = normalize_optional_timestamp(end_time, "end_time")
        if scheduled_end_time is not UNSET:
            update.scheduled_end_time = normalize_optional_timestamp(
                scheduled_end_time, "scheduled_end_time"
            )

        start = entry.start_time if update.start_time is UNSET else update.start_time
        end = entry.end_time if update.end_time is UNSET else update.end_time
        if end is not None and end < start:
            raise ValidationError("End time must be after start time")
        if end is None and entry.end_time is not None:
            active = self.provider.get_active_time_entry(user_id)
            if active is not None and active.id != entry_id:
                raise ConflictError(
                    "Another time entry is already active", {"entry_id": active.id}
                )
        if not update.changes():
            return entry
        return self.provider.update_time_entry(user_id, entry_id, update)

    def delete_entry(self, user_id: int, entry_id: int) -> None:
        _require_id(entry_id, "entry_id")
        self.provider.delete_time_entry(user_id, entry_id)

    def delete_entries_by_date(
        self, user_id: int, day: str, timezone_offset: int = 0
    ) -> int:
        """Delete the finished entries that started on a local calendar day."""
        validate_timezone_offset(timezone_offset)
        start, end = local_day_bounds(day, timezone_offset)
        return self.provider.delete_time_entries_by_date(user_id, start, end)

    def list_entries(
        self,
        user_id: int,
        *,
        limit: int = 100,
        offset: int = 0,
        start_date=None,
        end_date=None,
        category_id: Optional[int] = None,
        search: Optional[str] = None,
    ) -> List[TimeEntry]:
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        return self.provider.list_time_entries(
            user_id,
            limit=min(limit, MAX_LIST_LIMIT),
            offset=offset,
            start_date=normalize_optional_timestamp(start_date, "startDate"),
            end_date=normalize_optional_timestamp(end_date, "endDate"),
            category_id=category_id,
            search=(search or "").strip() or None,
        )

    # Task names

    def task_suggestions(
        self,
        user_id: int,
        category_id: Optional[int] = None,
        query: str = "",
        limit: int = 10,
    ) -> List[TaskSuggestion]:
        if limit < 1:
            raise ValidationError("limit must be a positive integer")
        return self.provider.list_task_suggestions(
            user_id, category_id, (query or "").strip(), min(limit, MAX_SUGGESTIONS)
        )

    def list_task_names(
        self,
        user_id: int,
        start,
        end,
        *,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        sort_by: Optional[str] = None,
        search: Optional[str] = None,
        category_name: Optional[str] = None,
    ) -> TaskNamePage:
        start, end = validate_period(start, end)
        request = PageRequest.build(page, page_size, sort_by)
        return self.provider.list_task_names(
            user_id,
            start,
            end,
            request,
            search=(search or "").strip() or None,
            category_name=(category_name or "").strip() or None,
        )

    def rename_task_name(
        self,
        user_id: int,
        old_task_name: str,
        *,
        new_task_name: Optional[str] = None,
        category_id: Optional[int] = None,
    ) -> int:
        old_task_name = _require_text(old_task_name, "oldTaskName")
        if new_task_name is None and category_id is None:
            raise ValidationError("Provide a new task name and/or a new category")
        if new_task_name is not None:
            new_task_name = _require_text(new_task_name, "newTaskName")
        if category_id is not None:
            self._require_category(user_id, category_id)
        if not self.provider.count_time_entries_by_task_names(user_id, [old_task_name]):
            raise NotFoundError("No time entries with this task name", {"task_name": old_task_name})
        updated = self.provider.update_time_entries_by_task_name(
            user_id, old_task_name, task_name=new_task_name, category_id=category_id
        )
        logger.info("Renamed task %r for user %s (%d entries)", old_task_name, user_id, updated)
        return updated

    def merge_task_names(
        self,
        user_id: int,
        source_task_names: Iterable[str],
        target_task_name: str,
        category_id: Optional[int] = None,
    ) -> int:
        sources = []
        for name in source_task_names or ():
            name = _clean_task_name(name)
            if name and name not in sources:
                sources.append(name)
        if not sources:
            raise ValidationError("sourceTaskNames must contain at least one task name")
        target_task_name = _require_text(target_task_name, "targetTaskName")
        if category_id is not None:
            self._require_category(user_id, category_id)
        if not self.provider.count_time_entries_by_task_names(user_id, sources):
            raise NotFoundError("No time entries match the source task names")
        updated = self.provider.update_time_entries_for_merge(
            user_id, sources, target_task_name, category_id
        )
        logger.info(
            "Merged %d task names into %r for user %s (%d entries)",
            len(sources),
            target_task_name,
            user_id,
            updated,
        )
        return updated

    def bulk_update_task_name(
        self,
        user_id: int,
        old_task_name: str,
        old_category_id: int,
        new_task_name: str,
        new_category_id: int,
    ) -> int:
        old_task_name = _require_text(old_task_name, "oldTaskName")
        new_task_name = _require_text(new_task_name, "newTaskName")
        _require_id(old_category_id, "oldCategoryId")
        self._require_category(user_id, new_category_id)
        matched = self.provider.count_time_entries_by_task_name_and_category(
            user_id, old_task_name, old_category_id
        )
        if not matched:
            raise NotFoundError(
                "No time entries match this task name and category",
                {"task_name": old_task_name, "category_id": old_category_id},
            )
        return self.provider.update_time_entries_for_bulk_update(
            user_id, old_task_name, old_category_id, new_task_name, new_category_id
        )

    # Analytics

    def get_analytics(
        self, user_id: int, start, end, timezone_offset: int = 0
    ) -> AnalyticsReport:
        start, end = validate_period(start, end)
        validate_timezone_offset(timezone_offset)
        aggregates = self.provider.get_analytics_summary(
            user_id, start, end, timezone_offset
        )
        return build_report(start, end, aggregates)

    def get_category_drilldown(
        self,
        user_id: int,
        category_name: str,
        start,
        end,
        *,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        sort_by: Optional[str] = None,
    ) -> CategoryDrilldown:
        category_name = _require_text(category_name, "category name")
        start, end = validate_period(start, end)
        request = PageRequest.build(page, page_size, sort_by)
        return self.provider.get_category_drilldown(
            user_id, category_name, start, end, request
        )

    # Export and settings

    def export_rows(self, user_id: int) -> List[ExportRow]:
        return self.provider.list_export_rows(user_id)

    def get_settings(self, user_id: int) -> dict:
        settings = self.provider.get_user_settings(user_id)
        return {"timezone": settings.timezone if settings else DEFAULT_TIMEZONE}

    def update_settings(self, user_id: int, timezone: Optional[str]) -> UserSettings:
        timezone = (timezone or "").strip() or DEFAULT_TIMEZONE
        try:
            ZoneInfo(timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError("Invalid timezone", {"timezone": timezone}) from exc
        self._require_user(user_id)
        return self.provider.upsert_user_settings(user_id, timezone)

    def reset_user_data(self, user_id: int) -> int:
        """Drop every entry and category, then restore the default categories."""
        self._require_user(user_id)
        removed = self.provider.delete_time_entries_for_user(user_id)
        self.provider.delete_categories_for_user(user_id)
        self.provider.create_default_categories(user_id)
        logger.info("Reset data for user %s (%d entries removed)", user_id, removed)
        return removed
