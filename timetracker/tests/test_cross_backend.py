"""
Both backends must return identical results for the same dataset.
"""

import unittest

import mongomock

from timetracker.errors import NotFoundError
from timetracker.mongo_provider import MongoStorageProvider
from timetracker.service import TimeTrackingService
from timetracker.sqlite_provider import SqliteStorageProvider
from timetracker.tests.provider_contract import load_sample_week, ts


class CrossBackendTests(unittest.TestCase):
    def setUp(self):
        self.services = []
        for provider in (
            SqliteStorageProvider(),
            MongoStorageProvider(client=mongomock.MongoClient(), db_name="equivalence"),
        ):
            provider.init()
            self.addCleanup(provider.shutdown)
            service = TimeTrackingService(provider)
            user = service.register_user("ada@example.com", "ada", "hash")
            cats = load_sample_week(provider, user.id)
            service.create_manual_entry(user.id, cats["Planning"], ts(2, 23, 30), ts(3, 0, 10), "Dev")
            service.create_manual_entry(user.id, cats["Break"], ts(2, 12), ts(2, 12, 20), None)
            self.services.append((service, user.id))

    def collect(self, call):
        return [call(service, user_id) for service, user_id in self.services]

    def assertSame(self, call):
        sqlite_result, mongo_result = self.collect(call)
        self.assertEqual(sqlite_result, mongo_result)
        return sqlite_result

    def test_analytics_match(self):
        for offset in (0, -120, 300):
            report = self.assertSame(
                lambda s, u: s.get_analytics(u, ts(1, 0), ts(4, 0), offset).as_dict()
            )
            self.assertEqual(report["summary"]["totalEntries"], 8)

    def test_task_names_match(self):
        for sort_by in ("time", "alpha", "count", "recent"):
            for page in (1, 2):
                self.assertSame(
                    lambda s, u: s.list_task_names(
                        u, ts(1, 0), ts(4, 0), page=page, page_size=2, sort_by=sort_by
                    ).as_dict()
                )
        self.assertSame(
            lambda s, u: s.list_task_names(
                u, ts(1, 0), ts(4, 0), search="e", category_name="Deep Work"
            ).as_dict()
        )

    def test_drilldown_matches(self):
        drilldown = self.assertSame(
            lambda s, u: s.get_category_drilldown(u, "Deep Work", ts(1, 0), ts(4, 0)).as_dict()
        )
        self.assertEqual(drilldown["category"]["count"], 4)

    def test_suggestions_and_listing_match(self):
        self.assertSame(
            lambda s, u: [x.as_dict() for x in s.task_suggestions(u, query="", limit=10)]
        )
        self.assertSame(
            lambda s, u: [
                (e.start_time, e.task_name, e.category_name, e.duration_minutes)
                for e in s.list_entries(u, search="de", limit=3, offset=1)
            ]
        )

    def test_unknown_user_is_rejected_by_both(self):
        for service, _ in self.services:
            with self.assertRaises(NotFoundError):
                service.create_category(999, "Reading")
            self.assertEqual(service.list_categories(999), [])

    def test_anonymous_prefix_collisions_match(self):
        self.assertSame(
            lambda s, u: [
                s.get_or_create_anonymous_user(sid).username
                for sid in ("browser-session-1", "browser-session-2", "browser-session-1")
            ]
        )

    def test_export_matches(self):
        self.assertSame(lambda s, u: [row.as_dict() for row in s.export_rows(u)])


if __name__ == "__main__":
    unittest.main()
