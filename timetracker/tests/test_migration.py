import unittest

import mongomock

from timetracker.entities import TimeEntryCreate, TimeEntryUpdate
from timetracker.migration import migrate
from timetracker.mongo_provider import MongoStorageProvider
from timetracker.sqlite_provider import SqliteStorageProvider
from timetracker.tests.provider_contract import load_sample_week, ts


class MigrationTests(unittest.TestCase):
    def setUp(self):
        self.sqlite = SqliteStorageProvider()
        self.mongo = MongoStorageProvider(client=mongomock.MongoClient(), db_name="migration")
        for provider in (self.sqlite, self.mongo):
            provider.init()
            self.addCleanup(provider.shutdown)

        self.ada = self.sqlite.create_user("ada@example.com", "ada", "hash-a")
        self.sqlite.create_default_categories(self.ada.id)
        load_sample_week(self.sqlite, self.ada.id)
        self.sqlite.upsert_user_settings(self.ada.id, "Europe/Berlin")

        self.bob = self.sqlite.create_user("bob@example.com", "bob", "hash-b")
        self.sqlite.create_category(self.bob.id, "Gardening", None)
        self.sqlite.create_time_entry(
            TimeEntryCreate(
                user_id=self.bob.id,
                category_id=self.sqlite.find_category_by_name(self.bob.id, "Gardening").id,
                start_time=ts(5, 8),
            )
        )

    def test_copies_every_user(self):
        stats = migrate(self.sqlite, self.mongo)
        self.assertEqual(
            stats.as_dict(),
            {
                "users_created": 2,
                "users_existing": 0,
                "categories_created": 6,
                "categories_existing": 0,
                "entries_created": 8,
                "entries_existing": 0,
                "entries_skipped": 0,
                "settings_copied": 1,
            },
        )
        ada = self.mongo.find_user_by_email("ada@example.com")
        self.assertEqual(ada.password_hash, "hash-a")
        self.assertEqual(self.mongo.get_user_settings(ada.id).timezone, "Europe/Berlin")
        self.assertEqual(
            [e.as_dict()["start_time"] for e in self.mongo.list_time_entries(ada.id)],
            [e.as_dict()["start_time"] for e in self.sqlite.list_time_entries(self.ada.id)],
        )
        bob = self.mongo.find_user_by_email("bob@example.com")
        active = self.mongo.get_active_time_entry(bob.id)
        self.assertEqual((active.start_time, active.category_name), (ts(5, 8), "Gardening"))

    def test_second_run_creates_nothing(self):
        migrate(self.sqlite, self.mongo)
        stats = migrate(self.sqlite, self.mongo)
        self.assertEqual(stats.users_created, 0)
        self.assertEqual(stats.users_existing, 2)
        self.assertEqual(stats.categories_created, 0)
        self.assertEqual(stats.entries_created, 0)
        self.assertEqual(stats.entries_existing, 8)
        ada = self.mongo.find_user_by_email("ada@example.com")
        self.assertEqual(len(self.mongo.list_time_entries(ada.id)), 7)
        self.assertEqual(self.mongo.count_categories(ada.id), 5)

    def test_entry_fields_are_preserved(self):
        entry = self.sqlite.list_time_entries(self.ada.id)[0]
        self.sqlite.update_time_entry(
            self.ada.id,
            entry.id,
            TimeEntryUpdate(task_name=None, scheduled_end_time=ts(3, 17)),
        )
        migrate(self.sqlite, self.mongo)
        ada = self.mongo.find_user_by_email("ada@example.com")

        def snapshot(provider, user_id):
            return {
                e.start_time: (e.task_name, e.duration_minutes, e.scheduled_end_time)
                for e in provider.list_time_entries(user_id)
            }

        self.assertEqual(snapshot(self.mongo, ada.id), snapshot(self.sqlite, self.ada.id))
        deep_work = self.mongo.find_category_by_name(ada.id, "Deep Work")
        self.assertIsNotNone(
            self.mongo.find_equivalent_time_entry(
                ada.id, deep_work.id, entry.start_time, None
            )
        )

    def test_reverse_direction(self):
        migrate(self.sqlite, self.mongo)
        copy = SqliteStorageProvider()
        copy.init()
        self.addCleanup(copy.shutdown)
        stats = migrate(self.mongo, copy)
        self.assertEqual(stats.entries_created, 8)
        ada = copy.find_user_by_email("ada@example.com")
        self.assertEqual(len(copy.list_time_entries(ada.id)), 7)


if __name__ == "__main__":
    unittest.main()
