"""
Analytics aggregation engine.

Backends compute raw aggregates (per-category totals, per-local-day totals,
top tasks, the previous-period total); everything derived from those numbers
lives here so the SQLite and MongoDB providers cannot drift apart.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from timetracker.entities import DEFAULT_CATEGORY_COLOR
from timetracker.errors import ValidationError
from timetracker.timeutil import (
    TimestampLike,
    local_date,
    parse_timestamp,
    round_half_up,
    to_iso,
)

SORT_OPTIONS = ("time", "alpha", "count", "recent")
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
TOP_TASKS_LIMIT = 10


@dataclass
class PageRequest:
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE
    sort_by: str = "time"

    @classmethod
    def build(
        cls,
        page: Optional[int] = None,
        page_size: Optional[int] = None,
        sort_by: Optional[str] = None,
    ) -> "PageRequest":
        """Validate paging input; page sizes above the cap are clamped."""
        page = 1 if page is None else page
        page_size = DEFAULT_PAGE_SIZE if page_size is None else page_size
        sort_by = sort_by or "time"
        if isinstance(page, bool) or not isinstance(page, int) or page < 1:
            raise ValidationError("page must be a positive integer")
        if (
            isinstance(page_size, bool)
            or not isinstance(page_size, int)
            or page_size < 1
        ):
            raise ValidationError("pageSize must be a positive integer")
        if sort_by not in SORT_OPTIONS:
            raise ValidationError(
                f"sortBy must be one of: {', '.join(SORT_OPTIONS)}"
            )
        return cls(page=page, page_size=min(page_size, MAX_PAGE_SIZE), sort_by=sort_by)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    def slice(self, items: Sequence) -> list:
        return list(items[self.offset : self.offset + self.page_size])

    def pagination(self, total_count: int) -> dict:
        return {
            "page": self.page,
            "pageSize": self.page_size,
            "totalCount": total_count,
            "totalPages": total_pages(total_count, self.page_size),
        }


def total_pages(total_count: int, page_size: int) -> int:
    return math.ceil(total_count / page_size) if page_size else 0


@dataclass
class CategorySummary:
    name: str
    color: str
    minutes: int
    count: int

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "color": self.color,
            "minutes": self.minutes,
            "count": self.count,
        }


@dataclass
class DailySummary:
    date: str
    minutes: int
    by_category: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "date": self.date,
            "minutes": self.minutes,
            "byCategory": dict(self.by_category),
        }


@dataclass
class TaskNameStats:
    task_name: str
    count: int
    total_minutes: int
    last_used: Optional[str] = None
    category_name: Optional[str] = None
    category_color: Optional[str] = None

    def as_dict(self) -> dict:
        payload = {
            "task_name": self.task_name,
            "count": self.count,
            "total_minutes": self.total_minutes,
        }
        if self.last_used is not None:
            payload["last_used"] = self.last_used
        if self.category_name is not None:
            payload["category_name"] = self.category_name
            payload["category_color"] = self.category_color
        return payload


@dataclass
class AnalyticsAggregates:
    """Raw numbers a provider returns for one analytics request."""

    by_category: List[CategorySummary]
    daily: List[DailySummary]
    top_tasks: List[TaskNameStats]
    previous_total: int


@dataclass
class AnalyticsSummary:
    total_minutes: int
    total_entries: int
    avg_minutes_per_day: int
    previous_total: int
    change: int

    def as_dict(self) -> dict:
        return {
            "totalMinutes": self.total_minutes,
            "totalEntries": self.total_entries,
            "avgMinutesPerDay": self.avg_minutes_per_day,
            "previousTotal": self.previous_total,
            "change": self.change,
        }


@dataclass
class AnalyticsReport:
    start: str
    end: str
    summary: AnalyticsSummary
    by_category: List[CategorySummary]
    daily: List[DailySummary]
    top_tasks: List[TaskNameStats]

    def as_dict(self) -> dict:
        return {
            "period": {"start": self.start, "end": self.end},
            "summary": self.summary.as_dict(),
            "byCategory": [item.as_dict() for item in self.by_category],
            "daily": [item.as_dict() for item in self.daily],
            "topTasks": [item.as_dict() for item in self.top_tasks],
        }


@dataclass
class TaskNamePage:
    task_names: List[TaskNameStats]
    total_count: int
    page: PageRequest

    def as_dict(self) -> dict:
        return {
            "taskNames": [item.as_dict() for item in self.task_names],
            "pagination": self.page.pagination(self.total_count),
        }


@dataclass
class CategoryDrilldown:
    category: CategorySummary
    task_names: List[TaskNameStats]
    total_count: int
    page: PageRequest

    def as_dict(self) -> dict:
        return {
            "category": self.category.as_dict(),
            "taskNames": [item.as_dict() for item in self.task_names],
            "pagination": self.page.pagination(self.total_count),
        }


def validate_period(start: TimestampLike, end: TimestampLike) -> Tuple[str, str]:
    """Normalize a half-open [start, end) window; end must follow start."""
    start_dt = parse_timestamp(start, "start")
    end_dt = parse_timestamp(end, "end")
    if end_dt <= start_dt:
        raise ValidationError("end must be after start")
    return to_iso(start_dt), to_iso(end_dt)


def previous_period(start: TimestampLike, end: TimestampLike) -> Tuple[str, str]:
    """The window of identical length immediately preceding [start, end)."""
    start_dt = parse_timestamp(start, "start")
    length: timedelta = parse_timestamp(end, "end") - start_dt
    return to_iso(start_dt - length), to_iso(start_dt)


def sort_category_summaries(items: Iterable[CategorySummary]) -> List[CategorySummary]:
    return sorted(items, key=lambda item: (-item.minutes, item.name))


def category_color(color: Optional[str]) -> str:
    return color or DEFAULT_CATEGORY_COLOR


def bucket_daily(
    rows: Iterable[Tuple[str, Optional[int], str]], timezone_offset: int
) -> List[DailySummary]:
    """
    Group ``(start_time, duration_minutes, category_name)`` rows into sparse
    per-local-day totals, ascending by date.
    """
    buckets: Dict[str, DailySummary] = {}
    for start_time, minutes, category_name in rows:
        day = local_date(start_time, timezone_offset)
        bucket = buckets.setdefault(day, DailySummary(date=day, minutes=0))
        minutes = minutes or 0
        bucket.minutes += minutes
        bucket.by_category[category_name] = (
            bucket.by_category.get(category_name, 0) + minutes
        )
    return [buckets[day] for day in sorted(buckets)]


def sort_task_stats(items: Iterable[TaskNameStats], sort_by: str) -> List[TaskNameStats]:
    """
    Order task-name groups for paging. Names (then category names) break
    ties so both backends page identically.
    """
    ordered = sorted(items, key=lambda s: (s.task_name, s.category_name or ""))
    if sort_by == "alpha":
        return ordered
    if sort_by == "count":
        ordered.sort(key=lambda s: (s.count, s.total_minutes), reverse=True)
    elif sort_by == "recent":
        ordered.sort(key=lambda s: (s.last_used or "", s.total_minutes), reverse=True)
    else:
        ordered.sort(key=lambda s: (s.total_minutes, s.count), reverse=True)
    return ordered


def build_summary(aggregates: AnalyticsAggregates) -> AnalyticsSummary:
    total_minutes = sum(item.minutes for item in aggregates.by_category)
    total_entries = sum(item.count for item in aggregates.by_category)
    active_days = len(aggregates.daily)
    previous_total = aggregates.previous_total or 0
    change = 0
    if previous_total > 0:
        change = round_half_up((total_minutes - previous_total) / previous_total * 100)
    return AnalyticsSummary(
        total_minutes=total_minutes,
        total_entries=total_entries,
        avg_minutes_per_day=round_half_up(total_minutes / max(1, active_days)),
        previous_total=previous_total,
        change=change,
    )


def build_report(start: str, end: str, aggregates: AnalyticsAggregates) -> AnalyticsReport:
    return AnalyticsReport(
        start=start,
        end=end,
        summary=build_summary(aggregates),
        by_category=sort_category_summaries(aggregates.by_category),
        daily=aggregates.daily,
        top_tasks=aggregates.top_tasks[:TOP_TASKS_LIMIT],
    )
