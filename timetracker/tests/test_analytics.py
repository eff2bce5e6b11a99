import unittest

from timetracker.analytics import (
    AnalyticsAggregates,
    CategorySummary,
    DailySummary,
    PageRequest,
    TaskNameStats,
    bucket_daily,
    build_report,
    build_summary,
    previous_period,
    sort_task_stats,
    validate_period,
)
from timetracker.errors import ValidationError


def aggregates(by_category, days=1, previous_total=0, top_tasks=None):
    return AnalyticsAggregates(
        by_category=by_category,
        daily=[DailySummary(date=f"2024-03-0{i + 1}", minutes=0) for i in range(days)],
        top_tasks=top_tasks or [],
        previous_total=previous_total,
    )


class PageRequestTests(unittest.TestCase):
    def test_defaults(self):
        request = PageRequest.build()
        self.assertEqual((request.page, request.page_size, request.sort_by), (1, 20, "time"))

    def test_page_size_clamped(self):
        self.assertEqual(PageRequest.build(page_size=250).page_size, 100)

    def test_rejects_bad_input(self):
        for kwargs in ({"page": 0}, {"page_size": 0}, {"page": True}, {"sort_by": "size"}):
            with self.assertRaises(ValidationError):
                PageRequest.build(**kwargs)

    def test_slice_and_pagination(self):
        request = PageRequest.build(page=2, page_size=3)
        self.assertEqual(request.slice(list(range(8))), [3, 4, 5])
        self.assertEqual(
            request.pagination(8),
            {"page": 2, "pageSize": 3, "totalCount": 8, "totalPages": 3},
        )
        self.assertEqual(PageRequest.build(page=5, page_size=3).slice(list(range(8))), [])
        self.assertEqual(request.pagination(0)["totalPages"], 0)


class PeriodTests(unittest.TestCase):
    def test_validate_period(self):
        self.assertEqual(
            validate_period("2024-03-01", "2024-03-08T00:00:00Z"),
            ("2024-03-01T00:00:00.000Z", "2024-03-08T00:00:00.000Z"),
        )
        with self.assertRaises(ValidationError):
            validate_period("2024-03-08", "2024-03-01")

    def test_previous_period(self):
        self.assertEqual(
            previous_period("2024-03-08T00:00:00Z", "2024-03-15T00:00:00Z"),
            ("2024-03-01T00:00:00.000Z", "2024-03-08T00:00:00.000Z"),
        )


class AggregationTests(unittest.TestCase):
    def test_bucket_daily_is_sparse_and_ascending(self):
        rows = [
            ("2024-03-03T09:00:00.000Z", 30, "Meetings"),
            ("2024-03-01T09:00:00.000Z", 60, "Deep Work"),
            ("2024-03-01T11:00:00.000Z", None, "Deep Work"),
            ("2024-03-01T23:30:00.000Z", 15, "Meetings"),
        ]
        daily = bucket_daily(rows, -60)
        self.assertEqual(
            [item.as_dict() for item in daily],
            [
                {"date": "2024-03-01", "minutes": 60, "byCategory": {"Deep Work": 60}},
                {"date": "2024-03-02", "minutes": 15, "byCategory": {"Meetings": 15}},
                {"date": "2024-03-03", "minutes": 30, "byCategory": {"Meetings": 30}},
            ],
        )

    def test_summary_change(self):
        summary = build_summary(
            aggregates(
                [CategorySummary("A", "#000", 150, 3), CategorySummary("B", "#111", 0, 0)],
                days=2,
                previous_total=100,
            )
        )
        self.assertEqual(summary.total_minutes, 150)
        self.assertEqual(summary.total_entries, 3)
        self.assertEqual(summary.avg_minutes_per_day, 75)
        self.assertEqual(summary.change, 50)

    def test_summary_without_previous_period(self):
        summary = build_summary(aggregates([CategorySummary("A", "#000", 45, 1)], days=0))
        self.assertEqual(summary.change, 0)
        self.assertEqual(summary.avg_minutes_per_day, 45)

    def test_summary_rounds_half_up(self):
        summary = build_summary(
            aggregates([CategorySummary("A", "#000", 5, 1)], days=2, previous_total=8)
        )
        self.assertEqual(summary.avg_minutes_per_day, 3)
        self.assertEqual(summary.change, -37)

    def test_report_orders_categories_and_caps_top_tasks(self):
        tasks = [TaskNameStats(f"t{i}", 20 - i, i) for i in range(12)]
        report = build_report(
            "2024-03-01T00:00:00.000Z",
            "2024-03-08T00:00:00.000Z",
            aggregates(
                [
                    CategorySummary("Zeta", "#000", 10, 1),
                    CategorySummary("Alpha", "#000", 0, 0),
                    CategorySummary("Beta", "#000", 10, 2),
                ],
                top_tasks=tasks,
            ),
        ).as_dict()
        self.assertEqual([c["name"] for c in report["byCategory"]], ["Beta", "Zeta", "Alpha"])
        self.assertEqual(len(report["topTasks"]), 10)
        self.assertEqual(
            report["period"],
            {"start": "2024-03-01T00:00:00.000Z", "end": "2024-03-08T00:00:00.000Z"},
        )

    def test_sort_task_stats(self):
        items = [
            TaskNameStats("b", 1, 50, "2024-03-03", "Work"),
            TaskNameStats("a", 3, 20, "2024-03-01", "Work"),
            TaskNameStats("c", 2, 50, "2024-03-02", "Home"),
        ]

        def order(sort_by):
            return [s.task_name for s in sort_task_stats(items, sort_by)]

        self.assertEqual(order("time"), ["c", "b", "a"])
        self.assertEqual(order("count"), ["a", "c", "b"])
        self.assertEqual(order("recent"), ["b", "c", "a"])
        self.assertEqual(order("alpha"), ["a", "b", "c"])

    def test_task_stats_payload(self):
        stats = TaskNameStats("Dev", 2, 40, "2024-03-01T09:00:00.000Z", "Work", None)
        self.assertEqual(
            stats.as_dict(),
            {
                "task_name": "Dev",
                "count": 2,
                "total_minutes": 40,
                "last_used": "2024-03-01T09:00:00.000Z",
                "category_name": "Work",
                "category_color": None,
            },
        )


if __name__ == "__main__":
    unittest.main()
