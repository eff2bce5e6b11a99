"""
Backend-agnostic storage contract.

Every operation is scoped by ``user_id`` and never reads or mutates another
user's rows. Implementations signal failures with the typed errors from
``timetracker.errors``: ``NotFoundError`` for rows that are absent or not
owned, ``ConflictError`` for uniqueness violations and forbidden state
transitions, ``ValidationError`` for malformed arguments and
``InternalError`` for storage I/O failures.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence

from timetracker.analytics import (
    AnalyticsAggregates,
    CategoryDrilldown,
    PageRequest,
    TaskNamePage,
)
from timetracker.entities import (
    Category,
    ExportRow,
    PasswordResetToken,
    RefreshToken,
    TaskSuggestion,
    TimeEntry,
    TimeEntryCreate,
    TimeEntryUpdate,
    User,
    UserSettings,
)


class StorageProvider(Protocol):
    """Interface every storage backend implements."""

    def init(self) -> None:
        ...

    def shutdown(self) -> None:
        ...

    # Users

    def find_user_by_email(self, email: str) -> Optional[User]:
        ...

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        ...

    def find_user_by_username(self, username: str) -> Optional[User]:
        ...

    def find_user_by_email_excluding_id(
        self, email: str, exclude_id: int
    ) -> Optional[User]:
        ...

    def create_user(self, email: str, username: str, password_hash: str) -> User:
        ...

    def update_user(
        self,
        user_id: int,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> User:
        ...

    def delete_user(self, user_id: int) -> None:
        """Remove the user with its categories, entries, tokens and settings."""
        ...

    def find_anonymous_user_by_session(self, session_id: str) -> Optional[User]:
        ...

    def create_anonymous_user(
        self, session_id: str, username: Optional[str] = None
    ) -> User:
        """``username`` defaults to ``Guest_<first 8 chars of session_id>``."""
        ...

    # Refresh / password reset tokens

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: str
    ) -> RefreshToken:
        ...

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        ...

    def delete_refresh_token_by_id(self, token_id: int) -> None:
        ...

    def delete_refresh_token(self, token: str) -> None:
        ...

    def delete_refresh_tokens_for_user(self, user_id: int) -> None:
        ...

    def upsert_password_reset_token(
        self, user_id: int, token: str, expires_at: str
    ) -> PasswordResetToken:
        """Replace any reset token the user already has."""
        ...

    def find_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        ...

    def delete_password_reset_token(self, token: str) -> None:
        ...

    def delete_password_reset_tokens_for_user(self, user_id: int) -> None:
        ...

    # Categories

    def list_categories(self, user_id: int) -> List[Category]:
        ...

    def find_category_by_id(self, user_id: int, category_id: int) -> Optional[Category]:
        ...

    def find_category_by_name(self, user_id: int, name: str) -> Optional[Category]:
        ...

    def create_category(
        self, user_id: int, name: str, color: Optional[str]
    ) -> Category:
        ...

    def update_category(
        self, user_id: int, category_id: int, name: str, color: Optional[str]
    ) -> Category:
        ...

    def delete_category(
        self,
        user_id: int,
        category_id: int,
        replacement_category_id: Optional[int] = None,
    ) -> int:
        """
        Reassign linked entries to the replacement (when given) and delete the
        category as one unit of work. Raises ``ConflictError`` if entries
        would be left behind. Returns the number of reassigned entries.
        """
        ...

    def count_categories(self, user_id: int) -> int:
        ...

    def delete_categories_for_user(self, user_id: int) -> int:
        ...

    # Time entries

    def list_time_entries(
        self,
        user_id: int,
        *,
        limit: int = 100,
        offset: int = 0,
        start_date: Optional[str] = None,
        end_date: Optional[str] = None,
        category_id: Optional[int] = None,
        search: Optional[str] = None,
    ) -> List[TimeEntry]:
        ...

    def get_active_time_entry(self, user_id: int) -> Optional[TimeEntry]:
        ...

    def find_time_entry_by_id(self, user_id: int, entry_id: int) -> Optional[TimeEntry]:
        ...

    def create_time_entry(self, data: TimeEntryCreate) -> TimeEntry:
        """
        Insert an entry. When ``data.end_time`` is None the new entry becomes
        the active one and any previously active entry is finalized in the
        same unit of work.
        """
        ...

    def stop_time_entry(
        self, user_id: int, entry_id: int, end_time: str
    ) -> Optional[TimeEntry]:
        """Finalize the entry only if it is still active; None otherwise."""
        ...

    def update_time_entry(
        self, user_id: int, entry_id: int, update: TimeEntryUpdate
    ) -> TimeEntry:
        ...

    def delete_time_entry(self, user_id: int, entry_id: int) -> None:
        ...

    def delete_time_entries_by_date(
        self, user_id: int, start_of_day: str, end_of_day: str
    ) -> int:
        ...

    def delete_time_entries_for_user(self, user_id: int) -> int:
        ...

    def delete_time_entries_by_category(self, user_id: int, category_id: int) -> int:
        ...

    def reassign_time_entries_category(
        self, user_id: int, from_category_id: int, to_category_id: int
    ) -> int:
        ...

    def count_time_entries_for_category(self, user_id: int, category_id: int) -> int:
        ...

    def find_equivalent_time_entry(
        self,
        user_id: int,
        category_id: int,
        start_time: str,
        task_name: Optional[str],
    ) -> Optional[TimeEntry]:
        ...

    # Task names

    def list_task_suggestions(
        self, user_id: int, category_id: Optional[int], query: str, limit: int
    ) -> List[TaskSuggestion]:
        ...

    def list_task_names(
        self,
        user_id: int,
        start: str,
        end: str,
        page: PageRequest,
        *,
        search: Optional[str] = None,
        category_name: Optional[str] = None,
    ) -> TaskNamePage:
        ...

    def update_time_entries_by_task_name(
        self,
        user_id: int,
        old_task_name: str,
        *,
        task_name: Optional[str] = None,
        category_id: Optional[int] = None,
    ) -> int:
        ...

    def update_time_entries_for_merge(
        self,
        user_id: int,
        source_task_names: Sequence[str],
        task_name: str,
        category_id: Optional[int] = None,
    ) -> int:
        ...

    def update_time_entries_for_bulk_update(
        self,
        user_id: int,
        old_task_name: str,
        old_category_id: int,
        task_name: str,
        category_id: int,
    ) -> int:
        ...

    def count_time_entries_by_task_names(
        self, user_id: int, task_names: Sequence[str]
    ) -> int:
        ...

    def count_time_entries_by_task_name_and_category(
        self, user_id: int, task_name: str, category_id: int
    ) -> int:
        ...

    # Analytics

    def get_analytics_summary(
        self, user_id: int, start: str, end: str, timezone_offset: int
    ) -> AnalyticsAggregates:
        ...

    def get_category_drilldown(
        self,
        user_id: int,
        category_name: str,
        start: str,
        end: str,
        page: PageRequest,
    ) -> CategoryDrilldown:
        ...

    # Export, settings, maintenance

    def list_export_rows(self, user_id: int) -> List[ExportRow]:
        ...

    def get_user_settings(self, user_id: int) -> Optional[UserSettings]:
        ...

    def upsert_user_settings(self, user_id: int, timezone: str) -> UserSettings:
        ...

    def create_default_categories(self, user_id: int) -> int:
        ...

    # Migration helpers

    def list_users_for_migration(self) -> List[User]:
        ...

    def list_categories_for_migration(self, user_id: int) -> List[Category]:
        ...

    def list_time_entries_for_migration(self, user_id: int) -> List[TimeEntry]:
        ...

    def get_user_settings_for_migration(self, user_id: int) -> Optional[UserSettings]:
        ...
