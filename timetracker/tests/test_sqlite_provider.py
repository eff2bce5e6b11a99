import unittest

from sqlalchemy import inspect

from timetracker.sqlite_provider import SqliteStorageProvider
from timetracker.tests.provider_contract import ProviderContractMixin, ts


class SqliteStorageProviderTests(ProviderContractMixin, unittest.TestCase):
    """
    Runs the storage contract against a purely in-memory SQLite database.
    """

    def make_provider(self):
        return SqliteStorageProvider()

    def test_schema(self):
        tables = set(inspect(self.provider.engine).get_table_names())
        self.assertEqual(
            tables,
            {
                "users",
                "refresh_tokens",
                "password_reset_tokens",
                "categories",
                "time_entries",
                "user_settings",
            },
        )

    def test_in_memory_store_has_no_flusher(self):
        self.assertIsNone(self.provider.flusher)
        self.provider.create_category(self.user.id, "Reading", None)
        self.provider.flush()

    def test_finalized_end_never_precedes_start(self):
        self.entry("Planning", ts(1, 12))
        self.entry("Meetings", ts(1, 11))
        entries = self.provider.list_time_entries(self.user.id)
        finished = [e for e in entries if not e.is_active][0]
        self.assertEqual(finished.end_time, ts(1, 12))
        self.assertEqual(finished.duration_minutes, 0)


if __name__ == "__main__":
    unittest.main()
