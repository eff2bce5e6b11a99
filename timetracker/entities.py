"""
Value types shared by every storage backend.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from typing import Iterator, Optional

ANONYMOUS_EMAIL_TEMPLATE = "anon_{session_id}@local"
ANONYMOUS_PASSWORD_HASH = "anonymous-no-password"
DEFAULT_CATEGORY_COLOR = "#6b7280"
DEFAULT_TIMEZONE = "UTC"

DEFAULT_CATEGORIES = (
    ("Meetings", "#6366f1"),
    ("Deep Work", "#10b981"),
    ("Email & Communication", "#f59e0b"),
    ("Planning", "#8b5cf6"),
    ("Break", "#64748b"),
)


def anonymous_email(session_id: str) -> str:
    return ANONYMOUS_EMAIL_TEMPLATE.format(session_id=session_id)


def anonymous_username(session_id: str) -> str:
    return f"Guest_{session_id[:8]}"


def anonymous_username_candidates(session_id: str) -> Iterator[str]:
    """
    Usernames to try for a session, shortest first. Sessions sharing a
    prefix fall back to the full id and then a numeric suffix.
    """
    yield anonymous_username(session_id)
    if len(session_id) > 8:
        yield f"Guest_{session_id}"
    suffix = 2
    while True:
        yield f"Guest_{session_id}_{suffix}"
        suffix += 1


@dataclass
class User:
    id: int
    email: str
    username: str
    password_hash: str
    created_at: str
    updated_at: str

    @property
    def is_anonymous(self) -> bool:
        return self.email.startswith("anon_") and self.email.endswith("@local")

    def as_dict(self) -> dict:
        payload = asdict(self)
        payload.pop("password_hash")
        return payload


@dataclass
class Category:
    id: int
    user_id: int
    name: str
    color: Optional[str]
    created_at: str

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class TimeEntry:
    id: int
    user_id: int
    category_id: int
    task_name: Optional[str]
    start_time: str
    end_time: Optional[str]
    scheduled_end_time: Optional[str]
    duration_minutes: Optional[int]
    created_at: str
    # Populated when the entry is read together with its category.
    category_name: Optional[str] = None
    category_color: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.end_time is None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class RefreshToken:
    id: int
    user_id: int
    token: str
    expires_at: str
    created_at: str


@dataclass
class PasswordResetToken:
    id: int
    user_id: int
    token: str
    expires_at: str
    created_at: str


@dataclass
class UserSettings:
    id: int
    user_id: int
    timezone: str
    created_at: str
    updated_at: str

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class TimeEntryCreate:
    user_id: int
    category_id: int
    start_time: str
    task_name: Optional[str] = None
    end_time: Optional[str] = None
    scheduled_end_time: Optional[str] = None
    duration_minutes: Optional[int] = None


UNSET = object()


@dataclass
class TimeEntryUpdate:
    """
    Partial update. Fields left at ``UNSET`` keep their stored value; an
    explicit ``None`` clears nullable columns.
    """

    category_id: object = UNSET
    task_name: object = UNSET
    start_time: object = UNSET
    end_time: object = UNSET
    scheduled_end_time: object = UNSET

    def changes(self) -> dict:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }

    @property
    def touches_times(self) -> bool:
        return self.start_time is not UNSET or self.end_time is not UNSET


@dataclass
class TaskSuggestion:
    task_name: str
    category_id: int
    count: int
    total_minutes: int
    last_used: str

    def as_dict(self) -> dict:
        return {
            "task_name": self.task_name,
            "categoryId": self.category_id,
            "count": self.count,
            "totalMinutes": self.total_minutes,
            "lastUsed": self.last_used,
        }


@dataclass
class ExportRow:
    category_name: str
    category_color: Optional[str]
    task_name: Optional[str]
    start_time: str
    end_time: Optional[str]

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class MigrationStats:
    users_created: int = 0
    users_existing: int = 0
    categories_created: int = 0
    categories_existing: int = 0
    entries_created: int = 0
    entries_existing: int = 0
    entries_skipped: int = 0
    settings_copied: int = 0

    def as_dict(self) -> dict:
        return asdict(self)
