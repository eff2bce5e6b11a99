"""
Relational StorageProvider over an embedded SQLite engine.

The working dataset lives in an in-memory database behind a single
SQLAlchemy connection. It is loaded from ``db_path`` on ``init()`` and copied
back with the sqlite3 online backup API by a ``PeriodicFlusher``: writes only
mark the store dirty, the flusher persists on its interval, at startup and on
shutdown.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Iterator, List, Optional, Sequence

from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from timetracker.analytics import (
    AnalyticsAggregates,
    CategoryDrilldown,
    CategorySummary,
    DailySummary,
    PageRequest,
    TaskNamePage,
    TaskNameStats,
    TOP_TASKS_LIMIT,
    category_color,
    previous_period,
)
from timetracker.entities import (
    ANONYMOUS_PASSWORD_HASH,
    DEFAULT_CATEGORIES,
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
    anonymous_email,
    anonymous_username,
)
from timetracker.errors import (
    ConflictError,
    InternalError,
    NotFoundError,
    TimeTrackerError,
    ValidationError,
)
from timetracker.persistence import PeriodicFlusher
from timetracker.timeutil import (
    duration_minutes,
    sqlite_offset_modifier,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


def _now() -> str:
    return to_iso(utc_now())


class SqliteStorageProvider:
    """
    SQLAlchemy-backed implementation. ``db_path=None`` keeps the store purely
    in memory (tests, scratch runs); ``autosave=False`` loads ``db_path`` but
    never writes it back.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        autosave_interval: float = 5.0,
        autosave: bool = True,
    ):
        self.db_path = db_path
        self.engine = create_engine(
            "sqlite+pysqlite://",
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
        event.listen(self.engine, "connect", _enable_foreign_keys)
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        # One in-memory connection is shared by every thread; units of work
        # and backups are serialized on this lock.
        self._lock = threading.RLock()
        self.flusher: Optional[PeriodicFlusher] = None
        if db_path and autosave:
            self.flusher = PeriodicFlusher(
                self._write_to_file, autosave_interval, name="sqlite-autosave"
            )
        Base.metadata.create_all(self.engine)

    # Lifecycle and persistence

    def init(self) -> None:
        if self.db_path and os.path.exists(self.db_path):
            logger.info("Loading SQLite database from %s", self.db_path)
            self._read_from_file()
        elif self.db_path:
            logger.info("Creating new SQLite database at %s", self.db_path)
        Base.metadata.create_all(self.engine)
        if self.flusher is not None:
            self.flusher.start()
            self.flusher.flush_now()

    def shutdown(self) -> None:
        if self.flusher is not None:
            self.flusher.stop(flush=True)

    def flush(self) -> None:
        """Persist immediately (no-op for a purely in-memory store)."""
        if self.flusher is not None:
            self.flusher.flush_now()

    @contextmanager
    def _driver_connection(self) -> Iterator[sqlite3.Connection]:
        proxied = self.engine.raw_connection()
        try:
            yield proxied.driver_connection
        finally:
            proxied.close()

    def _read_from_file(self) -> None:
        source = sqlite3.connect(self.db_path)
        try:
            with self._lock, self._driver_connection() as target:
                source.backup(target)
        except sqlite3.Error as exc:
            raise InternalError(f"Failed to load database from {self.db_path}") from exc
        finally:
            source.close()

    def _write_to_file(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.db_path}.tmp"
        with self._lock:
            target = sqlite3.connect(tmp_path)
            try:
                with self._driver_connection() as source:
                    source.backup(target)
            finally:
                target.close()
        os.replace(tmp_path, self.db_path)
        logger.debug("Database saved to %s", self.db_path)

    @contextmanager
    def _session(self, write: bool = False) -> Iterator[Session]:
        """One unit of work: a transaction under the provider lock."""
        with self._lock:
            session = self.Session()
            try:
                yield session
                if write:
                    session.commit()
                    if self.flusher is not None:
                        self.flusher.mark_dirty()
            except TimeTrackerError:
                session.rollback()
                raise
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError(
                    "Constraint violation", {"detail": str(exc.orig)}
                ) from exc
            except (SQLAlchemyError, sqlite3.Error) as exc:
                session.rollback()
                logger.exception("SQLite operation failed")
                raise InternalError("SQLite storage failure") from exc
            finally:
                session.close()

    # Row mapping

    @staticmethod
    def _to_user(row: "UserRow") -> User:
        return User(
            id=row.id,
            email=row.email,
            username=row.username,
            password_hash=row.password_hash,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_category(row: "CategoryRow") -> Category:
        return Category(
            id=row.id,
            user_id=row.user_id,
            name=row.name,
            color=row.color,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_entry(
        row: "TimeEntryRow",
        category_name: Optional[str] = None,
        category_color: Optional[str] = None,
    ) -> TimeEntry:
        return TimeEntry(
            id=row.id,
            user_id=row.user_id,
            category_id=row.category_id,
            task_name=row.task_name,
            start_time=row.start_time,
            end_time=row.end_time,
            scheduled_end_time=row.scheduled_end_time,
            duration_minutes=row.duration_minutes,
            created_at=row.created_at,
            category_name=category_name,
            category_color=category_color,
        )

    @staticmethod
    def _to_settings(row: "UserSettingsRow") -> UserSettings:
        return UserSettings(
            id=row.id,
            user_id=row.user_id,
            timezone=row.timezone,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def _to_token(row, cls):
        return cls(
            id=row.id,
            user_id=row.user_id,
            token=row.token,
            expires_at=row.expires_at,
            created_at=row.created_at,
        )

    def _entries_with_category(self, session: Session, *conditions):
        stmt = (
            select(TimeEntryRow, CategoryRow.name, CategoryRow.color)
            .join(CategoryRow, TimeEntryRow.category_id == CategoryRow.id)
            .where(*conditions)
        )
        return stmt

    def _require_category(
        self, session: Session, user_id: int, category_id: int
    ) -> "CategoryRow":
        row = session.execute(
            select(CategoryRow).where(
                CategoryRow.id == category_id, CategoryRow.user_id == user_id
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Category not found", {"category_id": category_id})
        return row

    def _require_entry(
        self, session: Session, user_id: int, entry_id: int
    ) -> "TimeEntryRow":
        row = session.execute(
            select(TimeEntryRow).where(
                TimeEntryRow.id == entry_id, TimeEntryRow.user_id == user_id
            )
        ).scalar_one_or_none()
        if row is None:
            raise NotFoundError("Time entry not found", {"entry_id": entry_id})
        return row

    def _load_entry(self, session: Session, user_id: int, entry_id: int) -> TimeEntry:
        result = session.execute(
            self._entries_with_category(
                session, TimeEntryRow.id == entry_id, TimeEntryRow.user_id == user_id
            )
        ).first()
        if result is None:
            raise NotFoundError("Time entry not found", {"entry_id": entry_id})
        row, name, color = result
        return self._to_entry(row, name, color)

    # Users

    def _find_user(self, *conditions) -> Optional[User]:
        with self._session() as session:
            row = session.execute(select(UserRow).where(*conditions)).scalar_one_or_none()
            return self._to_user(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user(UserRow.email == email)

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        return self._find_user(UserRow.id == user_id)

    def find_user_by_username(self, username: str) -> Optional[User]:
        return self._find_user(UserRow.username == username)

    def find_user_by_email_excluding_id(
        self, email: str, exclude_id: int
    ) -> Optional[User]:
        return self._find_user(UserRow.email == email, UserRow.id != exclude_id)

    def create_user(self, email: str, username: str, password_hash: str) -> User:
        now = _now()
        with self._session(write=True) as session:
            row = UserRow(
                email=email,
                username=username,
                password_hash=password_hash,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("Email or username already in use") from exc
            return self._to_user(row)

    def update_user(
        self,
        user_id: int,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> User:
        with self._session(write=True) as session:
            row = session.get(UserRow, user_id)
            if row is None:
                raise NotFoundError("User not found", {"user_id": user_id})
            if email:
                row.email = email
            if username:
                row.username = username
            if password_hash:
                row.password_hash = password_hash
            row.updated_at = _now()
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("Email or username already in use") from exc
            return self._to_user(row)

    def delete_user(self, user_id: int) -> None:
        with self._session(write=True) as session:
            for model in (
                TimeEntryRow,
                CategoryRow,
                RefreshTokenRow,
                PasswordResetTokenRow,
                UserSettingsRow,
            ):
                session.query(model).filter(model.user_id == user_id).delete(
                    synchronize_session=False
                )
            session.query(UserRow).filter(UserRow.id == user_id).delete(
                synchronize_session=False
            )

    def find_anonymous_user_by_session(self, session_id: str) -> Optional[User]:
        return self.find_user_by_email(anonymous_email(session_id))

    def create_anonymous_user(
        self, session_id: str, username: Optional[str] = None
    ) -> User:
        return self.create_user(
            email=anonymous_email(session_id),
            username=username or anonymous_username(session_id),
            password_hash=ANONYMOUS_PASSWORD_HASH,
        )

    # Tokens

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: str
    ) -> RefreshToken:
        with self._session(write=True) as session:
            row = RefreshTokenRow(
                user_id=user_id, token=token, expires_at=expires_at, created_at=_now()
            )
            session.add(row)
            session.flush()
            return self._to_token(row, RefreshToken)

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._session() as session:
            row = session.execute(
                select(RefreshTokenRow).where(RefreshTokenRow.token == token)
            ).scalar_one_or_none()
            return self._to_token(row, RefreshToken) if row else None

    def delete_refresh_token_by_id(self, token_id: int) -> None:
        with self._session(write=True) as session:
            session.query(RefreshTokenRow).filter(RefreshTokenRow.id == token_id).delete(
                synchronize_session=False
            )

    def delete_refresh_token(self, token: str) -> None:
        with self._session(write=True) as session:
            session.query(RefreshTokenRow).filter(RefreshTokenRow.token == token).delete(
                synchronize_session=False
            )

    def delete_refresh_tokens_for_user(self, user_id: int) -> None:
        with self._session(write=True) as session:
            session.query(RefreshTokenRow).filter(
                RefreshTokenRow.user_id == user_id
            ).delete(synchronize_session=False)

    def upsert_password_reset_token(
        self, user_id: int, token: str, expires_at: str
    ) -> PasswordResetToken:
        with self._session(write=True) as session:
            session.query(PasswordResetTokenRow).filter(
                PasswordResetTokenRow.user_id == user_id
            ).delete(synchronize_session=False)
            row = PasswordResetTokenRow(
                user_id=user_id, token=token, expires_at=expires_at, created_at=_now()
            )
            session.add(row)
            session.flush()
            return self._to_token(row, PasswordResetToken)

    def find_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._session() as session:
            row = session.execute(
                select(PasswordResetTokenRow).where(PasswordResetTokenRow.token == token)
            ).scalar_one_or_none()
            return self._to_token(row, PasswordResetToken) if row else None

    def delete_password_reset_token(self, token: str) -> None:
        with self._session(write=True) as session:
            session.query(PasswordResetTokenRow).filter(
                PasswordResetTokenRow.token == token
            ).delete(synchronize_session=False)

    def delete_password_reset_tokens_for_user(self, user_id: int) -> None:
        with self._session(write=True) as session:
            session.query(PasswordResetTokenRow).filter(
                PasswordResetTokenRow.user_id == user_id
            ).delete(synchronize_session=False)

    # Categories

    def list_categories(self, user_id: int) -> List[Category]:
        with self._session() as session:
            rows = session.execute(
                select(CategoryRow)
                .where(CategoryRow.user_id == user_id)
                .order_by(CategoryRow.name.asc())
            ).scalars()
            return [self._to_category(row) for row in rows]

    def find_category_by_id(self, user_id: int, category_id: int) -> Optional[Category]:
        with self._session() as session:
            row = session.execute(
                select(CategoryRow).where(
                    CategoryRow.id == category_id, CategoryRow.user_id == user_id
                )
            ).scalar_one_or_none()
            return self._to_category(row) if row else None

    def find_category_by_name(self, user_id: int, name: str) -> Optional[Category]:
        with self._session() as session:
            row = session.execute(
                select(CategoryRow).where(
                    CategoryRow.user_id == user_id, CategoryRow.name == name
                )
            ).scalar_one_or_none()
            return self._to_category(row) if row else None

    def create_category(
        self, user_id: int, name: str, color: Optional[str]
    ) -> Category:
        with self._session(write=True) as session:
            row = CategoryRow(user_id=user_id, name=name, color=color, created_at=_now())
            session.add(row)
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("Category already exists", {"name": name}) from exc
            return self._to_category(row)

    def update_category(
        self, user_id: int, category_id: int, name: str, color: Optional[str]
    ) -> Category:
        with self._session(write=True) as session:
            row = self._require_category(session, user_id, category_id)
            row.name = name
            row.color = color
            try:
                session.flush()
            except IntegrityError as exc:
                raise ConflictError("Category already exists", {"name": name}) from exc
            return self._to_category(row)

    def delete_category(
        self,
        user_id: int,
        category_id: int,
        replacement_category_id: Optional[int] = None,
    ) -> int:
        with self._session(write=True) as session:
            row = self._require_category(session, user_id, category_id)
            reassigned = 0
            if replacement_category_id is not None:
                if replacement_category_id == category_id:
                    raise ValidationError(
                        "Replacement category must differ from the deleted category"
                    )
                self._require_category(session, user_id, replacement_category_id)
                reassigned = (
                    session.query(TimeEntryRow)
                    .filter(
                        TimeEntryRow.user_id == user_id,
                        TimeEntryRow.category_id == category_id,
                    )
                    .update(
                        {TimeEntryRow.category_id: replacement_category_id},
                        synchronize_session=False,
                    )
                )
            remaining = session.execute(
                select(func.count(TimeEntryRow.id)).where(
                    TimeEntryRow.category_id == category_id
                )
            ).scalar_one()
            if remaining:
                raise ConflictError(
                    "Category has linked time entries",
                    {"category_id": category_id, "count": remaining},
                )
            session.delete(row)
            return reassigned or 0

    def count_categories(self, user_id: int) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count(CategoryRow.id)).where(CategoryRow.user_id == user_id)
            ).scalar_one()

    def delete_categories_for_user(self, user_id: int) -> int:
        with self._session(write=True) as session:
            linked = session.execute(
                select(func.count(TimeEntryRow.id)).where(TimeEntryRow.user_id == user_id)
            ).scalar_one()
            if linked:
                raise ConflictError(
                    "Delete the user's time entries before their categories",
                    {"count": linked},
                )
            return session.query(CategoryRow).filter(
                CategoryRow.user_id == user_id
            ).delete(synchronize_session=False)

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
        conditions = [TimeEntryRow.user_id == user_id]
        if start_date:
            conditions.append(TimeEntryRow.start_time >= start_date)
        if end_date:
            conditions.append(TimeEntryRow.start_time <= end_date)
        if category_id:
            conditions.append(TimeEntryRow.category_id == category_id)
        if search:
            needle = search.lower()
            conditions.append(
                _lower(TimeEntryRow.task_name).contains(needle, autoescape=True)
                | _lower(CategoryRow.name).contains(needle, autoescape=True)
            )
        with self._session() as session:
            stmt = (
                self._entries_with_category(session, *conditions)
                .order_by(TimeEntryRow.start_time.desc(), TimeEntryRow.id.desc())
                .limit(limit)
                .offset(offset)
            )
            return [
                self._to_entry(row, name, color)
                for row, name, color in session.execute(stmt)
            ]

    def get_active_time_entry(self, user_id: int) -> Optional[TimeEntry]:
        with self._session() as session:
            result = session.execute(
                self._entries_with_category(
                    session,
                    TimeEntryRow.user_id == user_id,
                    TimeEntryRow.end_time.is_(None),
                ).limit(1)
            ).first()
            if result is None:
                return None
            row, name, color = result
            return self._to_entry(row, name, color)

    def find_time_entry_by_id(self, user_id: int, entry_id: int) -> Optional[TimeEntry]:
        with self._session() as session:
            result = session.execute(
                self._entries_with_category(
                    session, TimeEntryRow.id == entry_id, TimeEntryRow.user_id == user_id
                )
            ).first()
            if result is None:
                return None
            row, name, color = result
            return self._to_entry(row, name, color)

    def _finalize_active(self, session: Session, user_id: int, end_time: str) -> None:
        active = session.execute(
            select(TimeEntryRow).where(
                TimeEntryRow.user_id == user_id, TimeEntryRow.end_time.is_(None)
            )
        ).scalars().all()
        for row in active:
            finished = max(end_time, row.start_time)
            row.end_time = finished
            row.duration_minutes = duration_minutes(row.start_time, finished)
            logger.info(
                "Finalized active time entry %s for user %s", row.id, user_id
            )
        if active:
            # The partial unique index must see the update before the insert.
            session.flush()

    def create_time_entry(self, data: TimeEntryCreate) -> TimeEntry:
        with self._session(write=True) as session:
            self._require_category(session, data.user_id, data.category_id)
            if data.end_time is None:
                self._finalize_active(session, data.user_id, data.start_time)
                minutes = None
            elif data.duration_minutes is not None:
                minutes = data.duration_minutes
            else:
                minutes = duration_minutes(data.start_time, data.end_time)
            row = TimeEntryRow(
                user_id=data.user_id,
                category_id=data.category_id,
                task_name=data.task_name,
                start_time=data.start_time,
                end_time=data.end_time,
                scheduled_end_time=data.scheduled_end_time,
                duration_minutes=minutes,
                created_at=_now(),
            )
            session.add(row)
            session.flush()
            return self._load_entry(session, data.user_id, row.id)

    def stop_time_entry(
        self, user_id: int, entry_id: int, end_time: str
    ) -> Optional[TimeEntry]:
        with self._session(write=True) as session:
            row = session.execute(
                select(TimeEntryRow).where(
                    TimeEntryRow.id == entry_id,
                    TimeEntryRow.user_id == user_id,
                    TimeEntryRow.end_time.is_(None),
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            row.end_time = max(end_time, row.start_time)
            row.duration_minutes = duration_minutes(row.start_time, row.end_time)
            session.flush()
            return self._load_entry(session, user_id, entry_id)

    def update_time_entry(
        self, user_id: int, entry_id: int, update: TimeEntryUpdate
    ) -> TimeEntry:
        changes = update.changes()
        with self._session(write=True) as session:
            row = self._require_entry(session, user_id, entry_id)
            if "category_id" in changes:
                self._require_category(session, user_id, changes["category_id"])
            if changes.get("end_time", row.end_time) is None and row.end_time is not None:
                other = session.execute(
                    select(func.count(TimeEntryRow.id)).where(
                        TimeEntryRow.user_id == user_id,
                        TimeEntryRow.end_time.is_(None),
                        TimeEntryRow.id != entry_id,
                    )
                ).scalar_one()
                if other:
                    raise ConflictError("Another time entry is already active")
            for name, value in changes.items():
                setattr(row, name, value)
            if update.touches_times:
                row.duration_minutes = (
                    duration_minutes(row.start_time, row.end_time)
                    if row.end_time
                    else None
                )
            session.flush()
            return self._load_entry(session, user_id, entry_id)

    def delete_time_entry(self, user_id: int, entry_id: int) -> None:
        with self._session(write=True) as session:
            deleted = session.query(TimeEntryRow).filter(
                TimeEntryRow.id == entry_id, TimeEntryRow.user_id == user_id
            ).delete(synchronize_session=False)
            if not deleted:
                raise NotFoundError("Time entry not found", {"entry_id": entry_id})

    def delete_time_entries_by_date(
        self, user_id: int, start_of_day: str, end_of_day: str
    ) -> int:
        with self._session(write=True) as session:
            return session.query(TimeEntryRow).filter(
                TimeEntryRow.user_id == user_id,
                TimeEntryRow.start_time >= start_of_day,
                TimeEntryRow.start_time <= end_of_day,
                TimeEntryRow.end_time.isnot(None),
            ).delete(synchronize_session=False)

    def delete_time_entries_for_user(self, user_id: int) -> int:
        with self._session(write=True) as session:
            return session.query(TimeEntryRow).filter(
                TimeEntryRow.user_id == user_id
            ).delete(synchronize_session=False)

    def delete_time_entries_by_category(self, user_id: int, category_id: int) -> int:
        with self._session(write=True) as session:
            return session.query(TimeEntryRow).filter(
                TimeEntryRow.user_id == user_id,
                TimeEntryRow.category_id == category_id,
            ).delete(synchronize_session=False)

    def reassign_time_entries_category(
        self, user_id: int, from_category_id: int, to_category_id: int
    ) -> int:
        with self._session(write=True) as session:
            self._require_category(session, user_id, to_category_id)
            return session.query(TimeEntryRow).filter(
                TimeEntryRow.user_id == user_id,
                TimeEntryRow.category_id == from_category_id,
            ).update(
                {TimeEntryRow.category_id: to_category_id}, synchronize_session=False
            )

    def count_time_entries_for_category(self, user_id: int, category_id: int) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count(TimeEntryRow.id)).where(
                    TimeEntryRow.user_id == user_id,
                    TimeEntryRow.category_id == category_id,
                )
            ).scalar_one()

    def find_equivalent_time_entry(
        self,
        user_id: int,
        category_id: int,
        start_time: str,
        task_name: Optional[str],
    ) -> Optional[TimeEntry]:
        task_condition = (
            TimeEntryRow.task_name.is_(None)
            if task_name is None
            else TimeEntryRow.task_name == task_name
        )
        with self._session() as session:
            result = session.execute(
                self._entries_with_category(
                    session,
                    TimeEntryRow.user_id == user_id,
                    TimeEntryRow.category_id == category_id,
                    TimeEntryRow.start_time == start_time,
                    task_condition,
                ).limit(1)
            ).first()
            if result is None:
                return None
            row, name, color = result
            return self._to_entry(row, name, color)

    # Task names

    def list_task_suggestions(
        self, user_id: int, category_id: Optional[int], query: str, limit: int
    ) -> List[TaskSuggestion]:
        count = func.count(TimeEntryRow.id).label("entries")
        minutes = func.coalesce(func.sum(TimeEntryRow.duration_minutes), 0).label(
            "total_minutes"
        )
        last_used = func.max(TimeEntryRow.start_time).label("last_used")
        conditions = [TimeEntryRow.user_id == user_id, *_named_task()]
        if category_id:
            conditions.append(TimeEntryRow.category_id == category_id)
        if query:
            conditions.append(
                _lower(TimeEntryRow.task_name).contains(query.lower(), autoescape=True)
            )
        stmt = (
            select(TimeEntryRow.task_name, TimeEntryRow.category_id, count, minutes, last_used)
            .where(*conditions)
            .group_by(TimeEntryRow.task_name, TimeEntryRow.category_id)
            .order_by(
                count.desc(),
                minutes.desc(),
                last_used.desc(),
                TimeEntryRow.task_name.asc(),
                TimeEntryRow.category_id.asc(),
            )
            .limit(limit)
        )
        with self._session() as session:
            return [
                TaskSuggestion(
                    task_name=row.task_name,
                    category_id=row.category_id,
                    count=row.entries,
                    total_minutes=row.total_minutes,
                    last_used=row.last_used,
                )
                for row in session.execute(stmt)
            ]

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
        conditions = [
            TimeEntryRow.user_id == user_id,
            TimeEntryRow.start_time >= start,
            TimeEntryRow.start_time < end,
            *_named_task(),
        ]
        if search:
            conditions.append(
                _lower(TimeEntryRow.task_name).contains(search.lower(), autoescape=True)
            )
        if category_name:
            conditions.append(CategoryRow.name == category_name)

        count = func.count(TimeEntryRow.id).label("entries")
        minutes = func.coalesce(func.sum(TimeEntryRow.duration_minutes), 0).label(
            "total_minutes"
        )
        last_used = func.max(TimeEntryRow.start_time).label("last_used")
        grouped = (
            select(
                TimeEntryRow.task_name,
                count,
                minutes,
                last_used,
                CategoryRow.name.label("category_name"),
                CategoryRow.color.label("category_color"),
            )
            .join(CategoryRow, TimeEntryRow.category_id == CategoryRow.id)
            .where(*conditions)
            .group_by(TimeEntryRow.task_name, CategoryRow.id)
        )
        tie_break = (TimeEntryRow.task_name.asc(), CategoryRow.name.asc())
        stmt = grouped.order_by(
            *_task_order(page.sort_by, count, minutes, last_used), *tie_break
        )
        with self._session() as session:
            total = session.execute(
                select(func.count()).select_from(grouped.subquery())
            ).scalar_one()
            rows = session.execute(stmt.limit(page.page_size).offset(page.offset))
            task_names = [
                TaskNameStats(
                    task_name=row.task_name,
                    count=row.entries,
                    total_minutes=row.total_minutes,
                    last_used=row.last_used,
                    category_name=row.category_name,
                    category_color=row.category_color,
                )
                for row in rows
            ]
        return TaskNamePage(task_names=task_names, total_count=total, page=page)

    def update_time_entries_by_task_name(
        self,
        user_id: int,
        old_task_name: str,
        *,
        task_name: Optional[str] = None,
        category_id: Optional[int] = None,
    ) -> int:
        values = {}
        if task_name is not None:
            values[TimeEntryRow.task_name] = task_name
        if category_id is not None:
            values[TimeEntryRow.category_id] = category_id
        if not values:
            return 0
        with self._session(write=True) as session:
            if category_id is not None:
                self._require_category(session, user_id, category_id)
            return session.query(TimeEntryRow).filter(
                TimeEntryRow.user_id == user_id,
                TimeEntryRow.task_name == old_task_name,
            ).update(values, synchronize_session=False)

    def update_time_entries_for_merge(
        self,
        user_id: int,
        source_task_names: Sequence[str],
        task_name: str,
        category_id: Optional[int] = None,
    ) -> int:
        if not source_task_names:
            return 0
        values = {TimeEntryRow.task_name: task_name}
        if category_id is not None:
            values[TimeEntryRow.category_id] = category_id
        with self._session(write=True) as session:
            if category_id is not None:
                self._require_category(session, user_id, category_id)
            return session.query(TimeEntryRow).filter(
                TimeEntryRow.user_id == user_id,
                TimeEntryRow.task_name.in_(list(source_task_names)),
            ).update(values, synchronize_session=False)

    def update_time_entries_for_bulk_update(
        self,
        user_id: int,
        old_task_name: str,
        old_category_id: int,
        task_name: str,
        category_id: int,
    ) -> int:
        with self._session(write=True) as session:
            self._require_category(session, user_id, category_id)
            return session.query(TimeEntryRow).filter(
                TimeEntryRow.user_id == user_id,
                TimeEntryRow.task_name == old_task_name,
                TimeEntryRow.category_id == old_category_id,
            ).update(
                {TimeEntryRow.task_name: task_name, TimeEntryRow.category_id: category_id},
                synchronize_session=False,
            )

    def count_time_entries_by_task_names(
        self, user_id: int, task_names: Sequence[str]
    ) -> int:
        if not task_names:
            return 0
        with self._session() as session:
            return session.execute(
                select(func.count(TimeEntryRow.id)).where(
                    TimeEntryRow.user_id == user_id,
                    TimeEntryRow.task_name.in_(list(task_names)),
                )
            ).scalar_one()

    def count_time_entries_by_task_name_and_category(
        self, user_id: int, task_name: str, category_id: int
    ) -> int:
        with self._session() as session:
            return session.execute(
                select(func.count(TimeEntryRow.id)).where(
                    TimeEntryRow.user_id == user_id,
                    TimeEntryRow.task_name == task_name,
                    TimeEntryRow.category_id == category_id,
                )
            ).scalar_one()

    # Analytics

    def get_analytics_summary(
        self, user_id: int, start: str, end: str, timezone_offset: int
    ) -> AnalyticsAggregates:
        in_window = (
            TimeEntryRow.user_id == user_id,
            TimeEntryRow.start_time >= start,
            TimeEntryRow.start_time < end,
        )
        minutes = func.coalesce(func.sum(TimeEntryRow.duration_minutes), 0)
        by_category_stmt = (
            select(
                CategoryRow.name,
                CategoryRow.color,
                minutes.label("minutes"),
                func.count(TimeEntryRow.id).label("entries"),
            )
            .outerjoin(
                TimeEntryRow,
                and_(TimeEntryRow.category_id == CategoryRow.id, *in_window),
            )
            .where(CategoryRow.user_id == user_id)
            .group_by(CategoryRow.id)
        )
        day = func.date(TimeEntryRow.start_time, sqlite_offset_modifier(timezone_offset))
        daily_stmt = (
            select(day.label("day"), CategoryRow.name, minutes.label("minutes"))
            .join(CategoryRow, TimeEntryRow.category_id == CategoryRow.id)
            .where(*in_window)
            .group_by(day, CategoryRow.name)
            .order_by(day)
        )
        task_count = func.count(TimeEntryRow.id).label("entries")
        top_tasks_stmt = (
            select(TimeEntryRow.task_name, task_count, minutes.label("total_minutes"))
            .where(*in_window, *_named_task())
            .group_by(TimeEntryRow.task_name)
            .order_by(task_count.desc())
            .limit(TOP_TASKS_LIMIT)
        )
        prev_start, prev_end = previous_period(start, end)
        previous_stmt = select(minutes).where(
            TimeEntryRow.user_id == user_id,
            TimeEntryRow.start_time >= prev_start,
            TimeEntryRow.start_time < prev_end,
        )

        with self._session() as session:
            by_category = [
                CategorySummary(
                    name=row.name,
                    color=category_color(row.color),
                    minutes=row.minutes,
                    count=row.entries,
                )
                for row in session.execute(by_category_stmt)
            ]
            daily: List[DailySummary] = []
            for row in session.execute(daily_stmt):
                if not daily or daily[-1].date != row.day:
                    daily.append(DailySummary(date=row.day, minutes=0))
                daily[-1].minutes += row.minutes
                daily[-1].by_category[row.name] = row.minutes
            top_tasks = [
                TaskNameStats(
                    task_name=row.task_name,
                    count=row.entries,
                    total_minutes=row.total_minutes,
                )
                for row in session.execute(top_tasks_stmt)
            ]
            previous_total = session.execute(previous_stmt).scalar_one()

        return AnalyticsAggregates(
            by_category=by_category,
            daily=daily,
            top_tasks=top_tasks,
            previous_total=previous_total or 0,
        )

    def get_category_drilldown(
        self,
        user_id: int,
        category_name: str,
        start: str,
        end: str,
        page: PageRequest,
    ) -> CategoryDrilldown:
        with self._session() as session:
            category = session.execute(
                select(CategoryRow).where(
                    CategoryRow.user_id == user_id, CategoryRow.name == category_name
                )
            ).scalar_one_or_none()
            if category is None:
                raise NotFoundError("Category not found", {"name": category_name})
            in_window = (
                TimeEntryRow.user_id == user_id,
                TimeEntryRow.category_id == category.id,
                TimeEntryRow.start_time >= start,
                TimeEntryRow.start_time < end,
            )
            minutes = func.coalesce(func.sum(TimeEntryRow.duration_minutes), 0)
            summary = session.execute(
                select(minutes, func.count(TimeEntryRow.id)).where(*in_window)
            ).one()

            count = func.count(TimeEntryRow.id).label("entries")
            total_minutes = minutes.label("total_minutes")
            last_used = func.max(TimeEntryRow.start_time).label("last_used")
            grouped = (
                select(TimeEntryRow.task_name, count, total_minutes, last_used)
                .where(*in_window, *_named_task())
                .group_by(TimeEntryRow.task_name)
            )
            total = session.execute(
                select(func.count()).select_from(grouped.subquery())
            ).scalar_one()
            stmt = (
                grouped.order_by(
                    *_task_order(page.sort_by, count, total_minutes, last_used),
                    TimeEntryRow.task_name.asc(),
                )
                .limit(page.page_size)
                .offset(page.offset)
            )
            task_names = [
                TaskNameStats(
                    task_name=row.task_name,
                    count=row.entries,
                    total_minutes=row.total_minutes,
                    last_used=row.last_used,
                )
                for row in session.execute(stmt)
            ]
            return CategoryDrilldown(
                category=CategorySummary(
                    name=category.name,
                    color=category_color(category.color),
                    minutes=summary[0] or 0,
                    count=summary[1],
                ),
                task_names=task_names,
                total_count=total,
                page=page,
            )

    # Export, settings, maintenance

    def list_export_rows(self, user_id: int) -> List[ExportRow]:
        stmt = (
            select(
                CategoryRow.name,
                CategoryRow.color,
                TimeEntryRow.task_name,
                TimeEntryRow.start_time,
                TimeEntryRow.end_time,
            )
            .join(CategoryRow, TimeEntryRow.category_id == CategoryRow.id)
            .where(TimeEntryRow.user_id == user_id)
            .order_by(TimeEntryRow.start_time.desc(), TimeEntryRow.id.desc())
        )
        with self._session() as session:
            return [
                ExportRow(
                    category_name=row[0],
                    category_color=row[1],
                    task_name=row[2],
                    start_time=row[3],
                    end_time=row[4],
                )
                for row in session.execute(stmt)
            ]

    def get_user_settings(self, user_id: int) -> Optional[UserSettings]:
        with self._session() as session:
            row = session.execute(
                select(UserSettingsRow).where(UserSettingsRow.user_id == user_id)
            ).scalar_one_or_none()
            return self._to_settings(row) if row else None

    def upsert_user_settings(self, user_id: int, timezone: str) -> UserSettings:
        now = _now()
        with self._session(write=True) as session:
            row = session.execute(
                select(UserSettingsRow).where(UserSettingsRow.user_id == user_id)
            ).scalar_one_or_none()
            if row is None:
                row = UserSettingsRow(
                    user_id=user_id, timezone=timezone, created_at=now, updated_at=now
                )
                session.add(row)
            else:
                row.timezone = timezone
                row.updated_at = now
            session.flush()
            return self._to_settings(row)

    def create_default_categories(self, user_id: int) -> int:
        created = 0
        with self._session(write=True) as session:
            existing = set(
                session.execute(
                    select(CategoryRow.name).where(CategoryRow.user_id == user_id)
                ).scalars()
            )
            for name, color in DEFAULT_CATEGORIES:
                if name in existing:
                    continue
                session.add(
                    CategoryRow(user_id=user_id, name=name, color=color, created_at=_now())
                )
                created += 1
        logger.info("Created %d default categories for user %s", created, user_id)
        return created

    # Migration helpers

    def list_users_for_migration(self) -> List[User]:
        with self._session() as session:
            rows = session.execute(select(UserRow).order_by(UserRow.id)).scalars()
            return [self._to_user(row) for row in rows]

    def list_categories_for_migration(self, user_id: int) -> List[Category]:
        return self.list_categories(user_id)

    def list_time_entries_for_migration(self, user_id: int) -> List[TimeEntry]:
        with self._session() as session:
            rows = session.execute(
                select(TimeEntryRow)
                .where(TimeEntryRow.user_id == user_id)
                .order_by(TimeEntryRow.start_time.asc(), TimeEntryRow.id.asc())
            ).scalars()
            return [self._to_entry(row) for row in rows]

    def get_user_settings_for_migration(self, user_id: int) -> Optional[UserSettings]:
        return self.get_user_settings(user_id)


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _lower(column):
    return func.lower(column, type_=String)


def _named_task():
    return (TimeEntryRow.task_name.isnot(None), TimeEntryRow.task_name != "")


def _task_order(sort_by: str, count, minutes, last_used):
    if sort_by == "alpha":
        return ()
    if sort_by == "count":
        return (count.desc(), minutes.desc())
    if sort_by == "recent":
        return (last_used.desc(), minutes.desc())
    return (minutes.desc(), count.desc())


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, unique=True)
    username = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)


class RefreshTokenRow(Base):
    __tablename__ = "refresh_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token = Column(String, nullable=False, unique=True)
    expires_at = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)


class PasswordResetTokenRow(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token = Column(String, nullable=False, unique=True)
    expires_at = Column(String, nullable=False)
    created_at = Column(String, nullable=False)


class CategoryRow(Base):
    __tablename__ = "categories"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_categories_user_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = Column(String, nullable=False)
    color = Column(String, nullable=True)
    created_at = Column(String, nullable=False)


class TimeEntryRow(Base):
    __tablename__ = "time_entries"
    __table_args__ = (
        Index("idx_time_entries_user_start", "user_id", "start_time"),
        Index("idx_time_entries_user_end", "user_id", "end_time"),
        Index("idx_time_entries_user_task", "user_id", "task_name"),
        # At most one active entry per user.
        Index(
            "uq_time_entries_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("end_time IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    task_name = Column(String, nullable=True)
    start_time = Column(String, nullable=False)
    end_time = Column(String, nullable=True)
    scheduled_end_time = Column(String, nullable=True)
    duration_minutes = Column(Integer, nullable=True)
    created_at = Column(String, nullable=False)


class UserSettingsRow(Base):
    __tablename__ = "user_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    timezone = Column(String, nullable=False, default="UTC")
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
