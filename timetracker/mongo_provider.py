"""
Document StorageProvider over MongoDB.

Integer ids come from a ``counters`` collection so both backends expose the
same identifiers. Uniqueness is enforced with unique indexes; a pre-check
plus ``DuplicateKeyError`` mapping covers the race between two concurrent
inserts. A partial unique index on running entries keeps at most one active
entry per user; a start that loses the race finalizes again and retries once.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from dacite import Config, from_dict
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from timetracker.analytics import (
    AnalyticsAggregates,
    CategoryDrilldown,
    CategorySummary,
    PageRequest,
    TaskNamePage,
    TaskNameStats,
    TOP_TASKS_LIMIT,
    bucket_daily,
    category_color,
    previous_period,
    sort_task_stats,
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
    ValidationError,
)
from timetracker.timeutil import duration_minutes, to_iso, utc_now

logger = logging.getLogger(__name__)

NO_ID = {"_id": 0}
NAMED_TASK = {"$nin": [None, ""]}
MINUTES = {"$sum": {"$ifNull": ["$duration_minutes", 0]}}


def _now() -> str:
    return to_iso(utc_now())


def _contains(text: str) -> dict:
    return {"$regex": re.escape(text), "$options": "i"}


class MongoStorageProvider:
    """
    pymongo implementation. Pass ``client`` to reuse an existing client
    (tests hand in a ``mongomock.MongoClient``).
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        db_name: str = "timetracker",
        client: Optional[MongoClient] = None,
    ):
        self._owns_client = client is None
        self.client = client if client is not None else MongoClient(uri)
        self.db = self.client[db_name]
        self.db_name = db_name

    def init(self) -> None:
        logger.info("Connecting to MongoDB database %s", self.db_name)
        with self._errors("ensure indexes"):
            self._ensure_indexes()

    def shutdown(self) -> None:
        if self._owns_client:
            self.client.close()
            logger.info("MongoDB connection closed")

    def _ensure_indexes(self) -> None:
        db = self.db
        db.users.create_index([("id", ASCENDING)], unique=True)
        db.users.create_index([("email", ASCENDING)], unique=True)
        db.users.create_index([("username", ASCENDING)], unique=True)
        db.refresh_tokens.create_index([("token", ASCENDING)], unique=True)
        db.refresh_tokens.create_index([("user_id", ASCENDING)])
        db.refresh_tokens.create_index([("expires_at", ASCENDING)])
        db.password_reset_tokens.create_index([("token", ASCENDING)], unique=True)
        db.password_reset_tokens.create_index([("user_id", ASCENDING)])
        db.categories.create_index(
            [("user_id", ASCENDING), ("name", ASCENDING)], unique=True
        )
        db.categories.create_index([("id", ASCENDING)], unique=True)
        db.time_entries.create_index([("id", ASCENDING)], unique=True)
        db.time_entries.create_index([("user_id", ASCENDING), ("start_time", DESCENDING)])
        db.time_entries.create_index(
            [("user_id", ASCENDING), ("end_time", ASCENDING)],
            unique=True,
            partialFilterExpression={"end_time": None},
            name="uq_time_entries_active_user",
        )
        db.time_entries.create_index(
            [("user_id", ASCENDING), ("category_id", ASCENDING)]
        )
        db.time_entries.create_index([("user_id", ASCENDING), ("task_name", ASCENDING)])
        db.user_settings.create_index([("user_id", ASCENDING)], unique=True)

    @contextmanager
    def _errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except DuplicateKeyError as exc:
            raise ConflictError(f"Duplicate value on {action}") from exc
        except PyMongoError as exc:
            logger.exception("MongoDB failure during %s", action)
            raise InternalError(f"MongoDB storage failure during {action}") from exc

    def _next_id(self, name: str) -> int:
        counter = self.db.counters.find_one_and_update(
            {"_id": name},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return counter["seq"]

    @staticmethod
    def _to(cls, doc: Optional[dict]):
        if doc is None:
            return None
        return from_dict(data_class=cls, data=doc, config=Config(check_types=False))

    def _category_map(self, user_id: int) -> Dict[int, Tuple[str, Optional[str]]]:
        return {
            doc["id"]: (doc["name"], doc.get("color"))
            for doc in self.db.categories.find({"user_id": user_id}, NO_ID)
        }

    def _to_entry(
        self, doc: dict, categories: Dict[int, Tuple[str, Optional[str]]]
    ) -> TimeEntry:
        entry = self._to(TimeEntry, doc)
        if entry.category_id in categories:
            entry.category_name, entry.category_color = categories[entry.category_id]
        return entry

    def _require_category(self, user_id: int, category_id: int) -> dict:
        doc = self.db.categories.find_one({"id": category_id, "user_id": user_id}, NO_ID)
        if doc is None:
            raise NotFoundError("Category not found", {"category_id": category_id})
        return doc

    def _load_entry(self, user_id: int, entry_id: int) -> TimeEntry:
        doc = self.db.time_entries.find_one({"id": entry_id, "user_id": user_id}, NO_ID)
        if doc is None:
            raise NotFoundError("Time entry not found", {"entry_id": entry_id})
        return self._to_entry(doc, self._category_map(user_id))

    # Users

    def _find_user(self, query: dict) -> Optional[User]:
        with self._errors("find user"):
            return self._to(User, self.db.users.find_one(query, NO_ID))

    def find_user_by_email(self, email: str) -> Optional[User]:
        return self._find_user({"email": email})

    def find_user_by_id(self, user_id: int) -> Optional[User]:
        return self._find_user({"id": user_id})

    def find_user_by_username(self, username: str) -> Optional[User]:
        return self._find_user({"username": username})

    def find_user_by_email_excluding_id(
        self, email: str, exclude_id: int
    ) -> Optional[User]:
        return self._find_user({"email": email, "id": {"$ne": exclude_id}})

    def create_user(self, email: str, username: str, password_hash: str) -> User:
        with self._errors("create user"):
            clash = self.db.users.find_one(
                {"$or": [{"email": email}, {"username": username}]}, NO_ID
            )
            if clash is not None:
                raise ConflictError("Email or username already in use")
            now = _now()
            doc = {
                "id": self._next_id("users"),
                "email": email,
                "username": username,
                "password_hash": password_hash,
                "created_at": now,
                "updated_at": now,
            }
            self.db.users.insert_one(dict(doc))
            return self._to(User, doc)

    def update_user(
        self,
        user_id: int,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> User:
        changes = {"updated_at": _now()}
        if email:
            changes["email"] = email
        if username:
            changes["username"] = username
        if password_hash:
            changes["password_hash"] = password_hash
        with self._errors("update user"):
            doc = self.db.users.find_one_and_update(
                {"id": user_id},
                {"$set": changes},
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise NotFoundError("User not found", {"user_id": user_id})
        return self._to(User, doc)

    def delete_user(self, user_id: int) -> None:
        with self._errors("delete user"):
            for name in (
                "time_entries",
                "categories",
                "refresh_tokens",
                "password_reset_tokens",
                "user_settings",
            ):
                self.db[name].delete_many({"user_id": user_id})
            self.db.users.delete_one({"id": user_id})

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

    def _insert_token(self, collection: str, cls, user_id: int, token: str, expires_at: str):
        doc = {
            "id": self._next_id(collection),
            "user_id": user_id,
            "token": token,
            "expires_at": expires_at,
            "created_at": _now(),
        }
        self.db[collection].insert_one(dict(doc))
        return self._to(cls, doc)

    def create_refresh_token(
        self, user_id: int, token: str, expires_at: str
    ) -> RefreshToken:
        with self._errors("create refresh token"):
            return self._insert_token(
                "refresh_tokens", RefreshToken, user_id, token, expires_at
            )

    def find_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._errors("find refresh token"):
            return self._to(
                RefreshToken, self.db.refresh_tokens.find_one({"token": token}, NO_ID)
            )

    def delete_refresh_token_by_id(self, token_id: int) -> None:
        with self._errors("delete refresh token"):
            self.db.refresh_tokens.delete_one({"id": token_id})

    def delete_refresh_token(self, token: str) -> None:
        with self._errors("delete refresh token"):
            self.db.refresh_tokens.delete_one({"token": token})

    def delete_refresh_tokens_for_user(self, user_id: int) -> None:
        with self._errors("delete refresh tokens"):
            self.db.refresh_tokens.delete_many({"user_id": user_id})

    def upsert_password_reset_token(
        self, user_id: int, token: str, expires_at: str
    ) -> PasswordResetToken:
        with self._errors("store password reset token"):
            self.db.password_reset_tokens.delete_many({"user_id": user_id})
            return self._insert_token(
                "password_reset_tokens", PasswordResetToken, user_id, token, expires_at
            )

    def find_password_reset_token(self, token: str) -> Optional[PasswordResetToken]:
        with self._errors("find password reset token"):
            return self._to(
                PasswordResetToken,
                self.db.password_reset_tokens.find_one({"token": token}, NO_ID),
            )

    def delete_password_reset_token(self, token: str) -> None:
        with self._errors("delete password reset token"):
            self.db.password_reset_tokens.delete_one({"token": token})

    def delete_password_reset_tokens_for_user(self, user_id: int) -> None:
        with self._errors("delete password reset tokens"):
            self.db.password_reset_tokens.delete_many({"user_id": user_id})

    # Categories

    def list_categories(self, user_id: int) -> List[Category]:
        with self._errors("list categories"):
            cursor = self.db.categories.find({"user_id": user_id}, NO_ID).sort(
                "name", ASCENDING
            )
            return [self._to(Category, doc) for doc in cursor]

    def find_category_by_id(self, user_id: int, category_id: int) -> Optional[Category]:
        with self._errors("find category"):
            return self._to(
                Category,
                self.db.categories.find_one({"id": category_id, "user_id": user_id}, NO_ID),
            )

    def find_category_by_name(self, user_id: int, name: str) -> Optional[Category]:
        with self._errors("find category"):
            return self._to(
                Category,
                self.db.categories.find_one({"user_id": user_id, "name": name}, NO_ID),
            )

    def create_category(
        self, user_id: int, name: str, color: Optional[str]
    ) -> Category:
        with self._errors("create category"):
            if self.db.categories.find_one({"user_id": user_id, "name": name}):
                raise ConflictError("Category already exists", {"name": name})
            doc = {
                "id": self._next_id("categories"),
                "user_id": user_id,
                "name": name,
                "color": color,
                "created_at": _now(),
            }
            self.db.categories.insert_one(dict(doc))
            return self._to(Category, doc)

    def update_category(
        self, user_id: int, category_id: int, name: str, color: Optional[str]
    ) -> Category:
        with self._errors("update category"):
            self._require_category(user_id, category_id)
            clash = self.db.categories.find_one(
                {"user_id": user_id, "name": name, "id": {"$ne": category_id}}
            )
            if clash is not None:
                raise ConflictError("Category already exists", {"name": name})
            doc = self.db.categories.find_one_and_update(
                {"id": category_id, "user_id": user_id},
                {"$set": {"name": name, "color": color}},
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )
            return self._to(Category, doc)

    def delete_category(
        self,
        user_id: int,
        category_id: int,
        replacement_category_id: Optional[int] = None,
    ) -> int:
        with self._errors("delete category"):
            self._require_category(user_id, category_id)
            reassigned = 0
            if replacement_category_id is not None:
                if replacement_category_id == category_id:
                    raise ValidationError(
                        "Replacement category must differ from the deleted category"
                    )
                self._require_category(user_id, replacement_category_id)
                result = self.db.time_entries.update_many(
                    {"user_id": user_id, "category_id": category_id},
                    {"$set": {"category_id": replacement_category_id}},
                )
                reassigned = result.matched_count
            remaining = self.db.time_entries.count_documents({"category_id": category_id})
            if remaining:
                raise ConflictError(
                    "Category has linked time entries",
                    {"category_id": category_id, "count": remaining},
                )
            self.db.categories.delete_one({"id": category_id, "user_id": user_id})
            return reassigned

    def count_categories(self, user_id: int) -> int:
        with self._errors("count categories"):
            return self.db.categories.count_documents({"user_id": user_id})

    def delete_categories_for_user(self, user_id: int) -> int:
        with self._errors("delete categories"):
            linked = self.db.time_entries.count_documents({"user_id": user_id})
            if linked:
                raise ConflictError(
                    "Delete the user's time entries before their categories",
                    {"count": linked},
                )
            return self.db.categories.delete_many({"user_id": user_id}).deleted_count

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
        with self._errors("list time entries"):
            categories = self._category_map(user_id)
            query: dict = {"user_id": user_id}
            window = {}
            if start_date:
                window["$gte"] = start_date
            if end_date:
                window["$lte"] = end_date
            if window:
                query["start_time"] = window
            if category_id:
                query["category_id"] = category_id
            if search:
                needle = search.lower()
                matching = [
                    cid for cid, (name, _) in categories.items() if needle in name.lower()
                ]
                query["$or"] = [
                    {"task_name": _contains(search)},
                    {"category_id": {"$in": matching}},
                ]
            cursor = (
                self.db.time_entries.find(query, NO_ID)
                .sort([("start_time", DESCENDING), ("id", DESCENDING)])
                .skip(offset)
                .limit(limit)
            )
            return [self._to_entry(doc, categories) for doc in cursor]

    def get_active_time_entry(self, user_id: int) -> Optional[TimeEntry]:
        with self._errors("get active time entry"):
            doc = self.db.time_entries.find_one(
                {"user_id": user_id, "end_time": None}, NO_ID
            )
            if doc is None:
                return None
            return self._to_entry(doc, self._category_map(user_id))

    def find_time_entry_by_id(self, user_id: int, entry_id: int) -> Optional[TimeEntry]:
        with self._errors("find time entry"):
            doc = self.db.time_entries.find_one({"id": entry_id, "user_id": user_id}, NO_ID)
            if doc is None:
                return None
            return self._to_entry(doc, self._category_map(user_id))

    def _finalize_active(self, user_id: int, end_time: str) -> None:
        while True:
            active = self.db.time_entries.find_one(
                {"user_id": user_id, "end_time": None}, NO_ID
            )
            if active is None:
                return
            finished = max(end_time, active["start_time"])
            self.db.time_entries.find_one_and_update(
                {"id": active["id"], "user_id": user_id, "end_time": None},
                {
                    "$set": {
                        "end_time": finished,
                        "duration_minutes": duration_minutes(
                            active["start_time"], finished
                        ),
                    }
                },
            )
            logger.info(
                "Finalized active time entry %s for user %s", active["id"], user_id
            )

    def create_time_entry(self, data: TimeEntryCreate) -> TimeEntry:
        with self._errors("create time entry"):
            self._require_category(data.user_id, data.category_id)
            if data.end_time is None:
                self._finalize_active(data.user_id, data.start_time)
                minutes = None
            elif data.duration_minutes is not None:
                minutes = data.duration_minutes
            else:
                minutes = duration_minutes(data.start_time, data.end_time)
            doc = {
                "id": self._next_id("time_entries"),
                "user_id": data.user_id,
                "category_id": data.category_id,
                "task_name": data.task_name,
                "start_time": data.start_time,
                "end_time": data.end_time,
                "scheduled_end_time": data.scheduled_end_time,
                "duration_minutes": minutes,
                "created_at": _now(),
            }
            try:
                self.db.time_entries.insert_one(dict(doc))
            except DuplicateKeyError:
                if data.end_time is not None:
                    raise
                # another start won the race; its entry is now the active one
                self._finalize_active(data.user_id, data.start_time)
                self.db.time_entries.insert_one(dict(doc))
            return self._to_entry(doc, self._category_map(data.user_id))

    def stop_time_entry(
        self, user_id: int, entry_id: int, end_time: str
    ) -> Optional[TimeEntry]:
        with self._errors("stop time entry"):
            doc = self.db.time_entries.find_one(
                {"id": entry_id, "user_id": user_id, "end_time": None}, NO_ID
            )
            if doc is None:
                return None
            finished = max(end_time, doc["start_time"])
            result = self.db.time_entries.update_one(
                {"id": entry_id, "user_id": user_id, "end_time": None},
                {
                    "$set": {
                        "end_time": finished,
                        "duration_minutes": duration_minutes(doc["start_time"], finished),
                    }
                },
            )
            if result.matched_count == 0:
                return None
            return self._load_entry(user_id, entry_id)

    def update_time_entry(
        self, user_id: int, entry_id: int, update: TimeEntryUpdate
    ) -> TimeEntry:
        changes = update.changes()
        with self._errors("update time entry"):
            doc = self.db.time_entries.find_one({"id": entry_id, "user_id": user_id}, NO_ID)
            if doc is None:
                raise NotFoundError("Time entry not found", {"entry_id": entry_id})
            if "category_id" in changes:
                self._require_category(user_id, changes["category_id"])
            if changes.get("end_time", doc["end_time"]) is None and doc["end_time"] is not None:
                other = self.db.time_entries.count_documents(
                    {"user_id": user_id, "end_time": None, "id": {"$ne": entry_id}}
                )
                if other:
                    raise ConflictError("Another time entry is already active")
            merged = {**doc, **changes}
            if update.touches_times:
                changes["duration_minutes"] = (
                    duration_minutes(merged["start_time"], merged["end_time"])
                    if merged["end_time"]
                    else None
                )
            if changes:
                self.db.time_entries.update_one(
                    {"id": entry_id, "user_id": user_id}, {"$set": changes}
                )
            return self._load_entry(user_id, entry_id)

    def delete_time_entry(self, user_id: int, entry_id: int) -> None:
        with self._errors("delete time entry"):
            result = self.db.time_entries.delete_one({"id": entry_id, "user_id": user_id})
        if not result.deleted_count:
            raise NotFoundError("Time entry not found", {"entry_id": entry_id})

    def delete_time_entries_by_date(
        self, user_id: int, start_of_day: str, end_of_day: str
    ) -> int:
        with self._errors("delete time entries"):
            return self.db.time_entries.delete_many(
                {
                    "user_id": user_id,
                    "start_time": {"$gte": start_of_day, "$lte": end_of_day},
                    "end_time": {"$ne": None},
                }
            ).deleted_count

    def delete_time_entries_for_user(self, user_id: int) -> int:
        with self._errors("delete time entries"):
            return self.db.time_entries.delete_many({"user_id": user_id}).deleted_count

    def delete_time_entries_by_category(self, user_id: int, category_id: int) -> int:
        with self._errors("delete time entries"):
            return self.db.time_entries.delete_many(
                {"user_id": user_id, "category_id": category_id}
            ).deleted_count

    def reassign_time_entries_category(
        self, user_id: int, from_category_id: int, to_category_id: int
    ) -> int:
        with self._errors("reassign time entries"):
            self._require_category(user_id, to_category_id)
            return self.db.time_entries.update_many(
                {"user_id": user_id, "category_id": from_category_id},
                {"$set": {"category_id": to_category_id}},
            ).matched_count

    def count_time_entries_for_category(self, user_id: int, category_id: int) -> int:
        with self._errors("count time entries"):
            return self.db.time_entries.count_documents(
                {"user_id": user_id, "category_id": category_id}
            )

    def find_equivalent_time_entry(
        self,
        user_id: int,
        category_id: int,
        start_time: str,
        task_name: Optional[str],
    ) -> Optional[TimeEntry]:
        with self._errors("find time entry"):
            doc = self.db.time_entries.find_one(
                {
                    "user_id": user_id,
                    "category_id": category_id,
                    "start_time": start_time,
                    "task_name": task_name,
                },
                NO_ID,
            )
            if doc is None:
                return None
            return self._to_entry(doc, self._category_map(user_id))

    # Task names

    def _group(self, match: dict, key) -> List[dict]:
        pipeline = [
            {"$match": match},
            {
                "$group": {
                    "_id": key,
                    "count": {"$sum": 1},
                    "total_minutes": MINUTES,
                    "last_used": {"$max": "$start_time"},
                }
            },
        ]
        return list(self.db.time_entries.aggregate(pipeline))

    def list_task_suggestions(
        self, user_id: int, category_id: Optional[int], query: str, limit: int
    ) -> List[TaskSuggestion]:
        task_filter = dict(NAMED_TASK)
        if query:
            task_filter.update(_contains(query))
        match = {"user_id": user_id, "task_name": task_filter}
        if category_id:
            match["category_id"] = category_id
        with self._errors("list task suggestions"):
            groups = self._group(
                match, {"task_name": "$task_name", "category_id": "$category_id"}
            )
        suggestions = [
            TaskSuggestion(
                task_name=group["_id"]["task_name"],
                category_id=group["_id"]["category_id"],
                count=group["count"],
                total_minutes=group["total_minutes"],
                last_used=group["last_used"],
            )
            for group in groups
        ]
        suggestions.sort(key=lambda s: (s.task_name, s.category_id))
        suggestions.sort(
            key=lambda s: (s.count, s.total_minutes, s.last_used), reverse=True
        )
        return suggestions[:limit]

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
        task_filter = dict(NAMED_TASK)
        if search:
            task_filter.update(_contains(search))
        match = {
            "user_id": user_id,
            "start_time": {"$gte": start, "$lt": end},
            "task_name": task_filter,
        }
        with self._errors("list task names"):
            categories = self._category_map(user_id)
            if category_name:
                ids = [cid for cid, (name, _) in categories.items() if name == category_name]
                if not ids:
                    return TaskNamePage(task_names=[], total_count=0, page=page)
                match["category_id"] = ids[0]
            groups = self._group(
                match, {"task_name": "$task_name", "category_id": "$category_id"}
            )
        stats = []
        for group in groups:
            name, color = categories.get(group["_id"]["category_id"], (None, None))
            if name is None:
                continue
            stats.append(
                TaskNameStats(
                    task_name=group["_id"]["task_name"],
                    count=group["count"],
                    total_minutes=group["total_minutes"],
                    last_used=group["last_used"],
                    category_name=name,
                    category_color=color,
                )
            )
        ordered = sort_task_stats(stats, page.sort_by)
        return TaskNamePage(
            task_names=page.slice(ordered), total_count=len(ordered), page=page
        )

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
            values["task_name"] = task_name
        if category_id is not None:
            values["category_id"] = category_id
        if not values:
            return 0
        with self._errors("rename task"):
            if category_id is not None:
                self._require_category(user_id, category_id)
            return self.db.time_entries.update_many(
                {"user_id": user_id, "task_name": old_task_name}, {"$set": values}
            ).matched_count

    def update_time_entries_for_merge(
        self,
        user_id: int,
        source_task_names: Sequence[str],
        task_name: str,
        category_id: Optional[int] = None,
    ) -> int:
        if not source_task_names:
            return 0
        values = {"task_name": task_name}
        if category_id is not None:
            values["category_id"] = category_id
        with self._errors("merge tasks"):
            if category_id is not None:
                self._require_category(user_id, category_id)
            return self.db.time_entries.update_many(
                {"user_id": user_id, "task_name": {"$in": list(source_task_names)}},
                {"$set": values},
            ).matched_count

    def update_time_entries_for_bulk_update(
        self,
        user_id: int,
        old_task_name: str,
        old_category_id: int,
        task_name: str,
        category_id: int,
    ) -> int:
        with self._errors("bulk update tasks"):
            self._require_category(user_id, category_id)
            return self.db.time_entries.update_many(
                {
                    "user_id": user_id,
                    "task_name": old_task_name,
                    "category_id": old_category_id,
                },
                {"$set": {"task_name": task_name, "category_id": category_id}},
            ).matched_count

    def count_time_entries_by_task_names(
        self, user_id: int, task_names: Sequence[str]
    ) -> int:
        if not task_names:
            return 0
        with self._errors("count time entries"):
            return self.db.time_entries.count_documents(
                {"user_id": user_id, "task_name": {"$in": list(task_names)}}
            )

    def count_time_entries_by_task_name_and_category(
        self, user_id: int, task_name: str, category_id: int
    ) -> int:
        with self._errors("count time entries"):
            return self.db.time_entries.count_documents(
                {"user_id": user_id, "task_name": task_name, "category_id": category_id}
            )

    # Analytics

    def _window_total(self, user_id: int, start: str, end: str) -> int:
        pipeline = [
            {"$match": {"user_id": user_id, "start_time": {"$gte": start, "$lt": end}}},
            {"$group": {"_id": None, "minutes": MINUTES}},
        ]
        result = list(self.db.time_entries.aggregate(pipeline))
        return result[0]["minutes"] if result else 0

    def get_analytics_summary(
        self, user_id: int, start: str, end: str, timezone_offset: int
    ) -> AnalyticsAggregates:
        window = {"user_id": user_id, "start_time": {"$gte": start, "$lt": end}}
        with self._errors("analytics"):
            categories = self._category_map(user_id)
            per_category = {
                group["_id"]: group
                for group in self._group(window, "$category_id")
            }
            by_category = []
            for category_id, (name, color) in categories.items():
                group = per_category.get(category_id, {})
                by_category.append(
                    CategorySummary(
                        name=name,
                        color=category_color(color),
                        minutes=group.get("total_minutes", 0),
                        count=group.get("count", 0),
                    )
                )
            rows = [
                (
                    doc["start_time"],
                    doc.get("duration_minutes"),
                    categories[doc["category_id"]][0],
                )
                for doc in self.db.time_entries.find(
                    window,
                    {"_id": 0, "start_time": 1, "duration_minutes": 1, "category_id": 1},
                )
                if doc["category_id"] in categories
            ]
            tasks = self._group({**window, "task_name": NAMED_TASK}, "$task_name")
            prev_start, prev_end = previous_period(start, end)
            previous_total = self._window_total(user_id, prev_start, prev_end)

        tasks.sort(key=lambda group: group["count"], reverse=True)
        top_tasks = [
            TaskNameStats(
                task_name=group["_id"],
                count=group["count"],
                total_minutes=group["total_minutes"],
            )
            for group in tasks[:TOP_TASKS_LIMIT]
        ]
        return AnalyticsAggregates(
            by_category=by_category,
            daily=bucket_daily(rows, timezone_offset),
            top_tasks=top_tasks,
            previous_total=previous_total,
        )

    def get_category_drilldown(
        self,
        user_id: int,
        category_name: str,
        start: str,
        end: str,
        page: PageRequest,
    ) -> CategoryDrilldown:
        with self._errors("category drilldown"):
            category = self.db.categories.find_one(
                {"user_id": user_id, "name": category_name}, NO_ID
            )
            if category is None:
                raise NotFoundError("Category not found", {"name": category_name})
            window = {
                "user_id": user_id,
                "category_id": category["id"],
                "start_time": {"$gte": start, "$lt": end},
            }
            totals = self._group(window, None)
            groups = self._group({**window, "task_name": NAMED_TASK}, "$task_name")
        stats = [
            TaskNameStats(
                task_name=group["_id"],
                count=group["count"],
                total_minutes=group["total_minutes"],
                last_used=group["last_used"],
            )
            for group in groups
        ]
        ordered = sort_task_stats(stats, page.sort_by)
        summary = totals[0] if totals else {"total_minutes": 0, "count": 0}
        return CategoryDrilldown(
            category=CategorySummary(
                name=category["name"],
                color=category_color(category.get("color")),
                minutes=summary["total_minutes"],
                count=summary["count"],
            ),
            task_names=page.slice(ordered),
            total_count=len(ordered),
            page=page,
        )

    # Export, settings, maintenance

    def list_export_rows(self, user_id: int) -> List[ExportRow]:
        with self._errors("export"):
            categories = self._category_map(user_id)
            cursor = self.db.time_entries.find({"user_id": user_id}, NO_ID).sort(
                [("start_time", DESCENDING), ("id", DESCENDING)]
            )
            rows = []
            for doc in cursor:
                if doc["category_id"] not in categories:
                    continue
                name, color = categories[doc["category_id"]]
                rows.append(
                    ExportRow(
                        category_name=name,
                        category_color=color,
                        task_name=doc.get("task_name"),
                        start_time=doc["start_time"],
                        end_time=doc.get("end_time"),
                    )
                )
            return rows

    def get_user_settings(self, user_id: int) -> Optional[UserSettings]:
        with self._errors("get settings"):
            return self._to(
                UserSettings, self.db.user_settings.find_one({"user_id": user_id}, NO_ID)
            )

    def upsert_user_settings(self, user_id: int, timezone: str) -> UserSettings:
        now = _now()
        with self._errors("update settings"):
            doc = self.db.user_settings.find_one_and_update(
                {"user_id": user_id},
                {"$set": {"timezone": timezone, "updated_at": now}},
                projection=NO_ID,
                return_document=ReturnDocument.AFTER,
            )
            if doc is not None:
                return self._to(UserSettings, doc)
            doc = {
                "id": self._next_id("user_settings"),
                "user_id": user_id,
                "timezone": timezone,
                "created_at": now,
                "updated_at": now,
            }
            try:
                self.db.user_settings.insert_one(dict(doc))
            except DuplicateKeyError:
                # Lost the race against a concurrent insert; apply on top of it.
                doc = self.db.user_settings.find_one_and_update(
                    {"user_id": user_id},
                    {"$set": {"timezone": timezone, "updated_at": now}},
                    projection=NO_ID,
                    return_document=ReturnDocument.AFTER,
                )
            return self._to(UserSettings, doc)

    def create_default_categories(self, user_id: int) -> int:
        created = 0
        with self._errors("create default categories"):
            existing = {
                doc["name"]
                for doc in self.db.categories.find({"user_id": user_id}, {"name": 1})
            }
            for name, color in DEFAULT_CATEGORIES:
                if name in existing:
                    continue
                try:
                    self.db.categories.insert_one(
                        {
                            "id": self._next_id("categories"),
                            "user_id": user_id,
                            "name": name,
                            "color": color,
                            "created_at": _now(),
                        }
                    )
                except DuplicateKeyError:
                    continue
                created += 1
        logger.info("Created %d default categories for user %s", created, user_id)
        return created

    # Migration helpers

    def list_users_for_migration(self) -> List[User]:
        with self._errors("list users"):
            cursor = self.db.users.find({}, NO_ID).sort("id", ASCENDING)
            return [self._to(User, doc) for doc in cursor]

    def list_categories_for_migration(self, user_id: int) -> List[Category]:
        return self.list_categories(user_id)

    def list_time_entries_for_migration(self, user_id: int) -> List[TimeEntry]:
        with self._errors("list time entries"):
            cursor = self.db.time_entries.find({"user_id": user_id}, NO_ID).sort(
                [("start_time", ASCENDING), ("id", ASCENDING)]
            )
            return [self._to(TimeEntry, doc) for doc in cursor]

    def get_user_settings_for_migration(self, user_id: int) -> Optional[UserSettings]:
        return self.get_user_settings(user_id)
