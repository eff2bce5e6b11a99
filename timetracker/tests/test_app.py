import signal
import unittest
from datetime import datetime, timezone

from fastapi.testclient import TestClient

from timetracker.app import create_app
from timetracker.config import Settings
from timetracker.context import AppContext
from timetracker.sqlite_provider import SqliteStorageProvider


class TimeTrackerApiTests(unittest.TestCase):
    def setUp(self):
        self.context = AppContext(
            settings=Settings(db_path="", storage_backend="sqlite"),
            provider=SqliteStorageProvider(),
        )
        self.client = TestClient(create_app(self.context))
        self.client.__enter__()
        self.addCleanup(self.client.__exit__, None, None, None)

        response = self.client.post(
            "/api/session/anonymous", json={"sessionId": "browser-session-1"}
        )
        self.assertEqual(response.status_code, 200)
        self.user = response.json()["user"]
        self.headers = {"X-User-Id": str(self.user["id"])}
        categories = self.client.get("/api/categories", headers=self.headers).json()
        self.cats = {c["name"]: c["id"] for c in categories}

    def test_lifespan_initializes_storage(self):
        self.assertTrue(self.context.started)
        self.assertEqual(self.user["username"], "Guest_browser-")
        self.assertNotIn("password_hash", self.user)

    def test_missing_user_header(self):
        response = self.client.get("/api/categories")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["error"]["code"], "validation_error")
        response = self.client.get("/api/categories", headers={"X-User-Id": "abc"})
        self.assertEqual(response.status_code, 400)

    def test_category_crud(self):
        created = self.client.post(
            "/api/categories",
            json={"name": "Reading", "color": "#123456"},
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201)
        category_id = created.json()["id"]

        duplicate = self.client.post(
            "/api/categories", json={"name": "Reading"}, headers=self.headers
        )
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["error"]["code"], "conflict")

        updated = self.client.put(
            f"/api/categories/{category_id}",
            json={"name": "Books"},
            headers=self.headers,
        )
        self.assertEqual(updated.json()["name"], "Books")

        deleted = self.client.delete(f"/api/categories/{category_id}", headers=self.headers)
        self.assertEqual(deleted.json(), {"deleted": True, "reassignedCount": 0})

    def test_delete_category_with_replacement(self):
        self.client.post(
            "/api/time-entries",
            json={
                "categoryId": self.cats["Meetings"],
                "startTime": "2024-03-01T09:00:00Z",
                "endTime": "2024-03-01T10:00:00Z",
            },
            headers=self.headers,
        )
        conflict = self.client.delete(
            f"/api/categories/{self.cats['Meetings']}", headers=self.headers
        )
        self.assertEqual(conflict.status_code, 409)
        response = self.client.delete(
            f"/api/categories/{self.cats['Meetings']}",
            params={"replacementCategoryId": self.cats["Planning"]},
            headers=self.headers,
        )
        self.assertEqual(response.json(), {"deleted": True, "reassignedCount": 1})

    def test_timer_flow(self):
        idle = self.client.get("/api/time-entries/active", headers=self.headers)
        self.assertIsNone(idle.json())

        started = self.client.post(
            "/api/time-entries/start",
            json={"categoryId": self.cats["Deep Work"], "taskName": "Dev"},
            headers=self.headers,
        )
        self.assertEqual(started.status_code, 201)
        entry = started.json()
        self.assertIsNone(entry["end_time"])
        self.assertEqual(entry["category_name"], "Deep Work")

        active = self.client.get("/api/time-entries/active", headers=self.headers)
        self.assertEqual(active.json()["id"], entry["id"])

        stopped = self.client.post(
            f"/api/time-entries/{entry['id']}/stop", headers=self.headers
        )
        self.assertEqual(stopped.status_code, 200)
        self.assertIsNotNone(stopped.json()["end_time"])

        again = self.client.post(
            f"/api/time-entries/{entry['id']}/stop", headers=self.headers
        )
        self.assertEqual(again.status_code, 404)
        self.assertEqual(again.json()["error"]["message"], "Active entry not found")

    def test_entries_are_isolated_between_users(self):
        other = self.client.post(
            "/api/session/anonymous", json={"sessionId": "browser-session-2"}
        ).json()["user"]
        self.assertEqual(other["username"], "Guest_browser-session-2")
        created = self.client.post(
            "/api/time-entries",
            json={
                "categoryId": self.cats["Planning"],
                "startTime": "2024-03-01T09:00:00Z",
                "endTime": "2024-03-01T10:00:00Z",
            },
            headers=self.headers,
        ).json()
        other_headers = {"X-User-Id": str(other["id"])}
        self.assertEqual(
            self.client.get("/api/time-entries", headers=other_headers).json(), []
        )
        response = self.client.delete(
            f"/api/time-entries/{created['id']}", headers=other_headers
        )
        self.assertEqual(response.status_code, 404)

    def test_manual_entry_update_and_delete(self):
        created = self.client.post(
            "/api/time-entries",
            json={
                "categoryId": self.cats["Planning"],
                "startTime": "2024-03-01T09:00:00Z",
                "endTime": "2024-03-01T10:00:00Z",
                "taskName": "Plan",
            },
            headers=self.headers,
        )
        self.assertEqual(created.status_code, 201)
        entry = created.json()
        self.assertEqual(entry["duration_minutes"], 60)

        invalid = self.client.post(
            "/api/time-entries",
            json={
                "categoryId": self.cats["Planning"],
                "startTime": "2024-03-01T10:00:00Z",
                "endTime": "2024-03-01T09:00:00Z",
            },
            headers=self.headers,
        )
        self.assertEqual(invalid.status_code, 400)

        updated = self.client.put(
            f"/api/time-entries/{entry['id']}",
            json={"endTime": "2024-03-01T10:30:00Z", "taskName": None},
            headers=self.headers,
        )
        self.assertEqual(updated.status_code, 200)
        self.assertEqual(updated.json()["duration_minutes"], 90)
        self.assertIsNone(updated.json()["task_name"])

        listed = self.client.get(
            "/api/time-entries",
            params={"startDate": "2024-03-01", "endDate": "2024-03-02"},
            headers=self.headers,
        )
        self.assertEqual([e["id"] for e in listed.json()], [entry["id"]])

        deleted = self.client.delete(f"/api/time-entries/{entry['id']}", headers=self.headers)
        self.assertEqual(deleted.json(), {"deleted": True})

    def test_delete_by_date(self):
        for start, end in (
            ("2024-03-01T09:00:00Z", "2024-03-01T10:00:00Z"),
            ("2024-03-02T09:00:00Z", "2024-03-02T10:00:00Z"),
        ):
            self.client.post(
                "/api/time-entries",
                json={"categoryId": self.cats["Planning"], "startTime": start, "endTime": end},
                headers=self.headers,
            )
        response = self.client.delete(
            "/api/time-entries/by-date",
            params={"date": "2024-03-01", "timezoneOffset": 0},
            headers=self.headers,
        )
        self.assertEqual(response.json(), {"deletedCount": 1})

    def test_task_name_operations(self):
        for hour in (8, 9, 10):
            self.client.post(
                "/api/time-entries",
                json={
                    "categoryId": self.cats["Deep Work"],
                    "startTime": f"2024-03-01T{hour:02d}:00:00Z",
                    "endTime": f"2024-03-01T{hour:02d}:30:00Z",
                    "taskName": "draft" if hour < 10 else "drafts",
                },
                headers=self.headers,
            )
        suggestions = self.client.get(
            "/api/time-entries/suggestions", params={"q": "draft"}, headers=self.headers
        ).json()
        self.assertEqual(suggestions[0]["task_name"], "draft")
        self.assertEqual(suggestions[0]["count"], 2)

        merged = self.client.post(
            "/api/time-entries/task-names/merge",
            json={"sourceTaskNames": ["draft", "drafts"], "targetTaskName": "Report"},
            headers=self.headers,
        )
        self.assertEqual(merged.json(), {"entriesUpdated": 3})

        renamed = self.client.put(
            "/api/time-entries/task-names/rename",
            json={"oldTaskName": "Report", "newTaskName": "Quarterly report"},
            headers=self.headers,
        )
        self.assertEqual(renamed.json(), {"updatedCount": 3})

        bulk = self.client.put(
            "/api/time-entries/task-names/bulk-update",
            json={
                "oldTaskName": "Quarterly report",
                "oldCategoryId": self.cats["Deep Work"],
                "newTaskName": "Report",
                "newCategoryId": self.cats["Planning"],
            },
            headers=self.headers,
        )
        self.assertEqual(bulk.json(), {"updatedCount": 3})

        missing = self.client.put(
            "/api/time-entries/task-names/rename",
            json={"oldTaskName": "nothing", "newTaskName": "x"},
            headers=self.headers,
        )
        self.assertEqual(missing.status_code, 404)

        names = self.client.get(
            "/api/analytics/task-names",
            params={
                "start": "2024-03-01T00:00:00Z",
                "end": "2024-03-02T00:00:00Z",
                "pageSize": 1,
            },
            headers=self.headers,
        ).json()
        self.assertEqual(names["taskNames"][0]["task_name"], "Report")
        self.assertEqual(names["taskNames"][0]["category_name"], "Planning")
        self.assertEqual(names["pagination"]["totalCount"], 1)

    def test_analytics(self):
        self.client.post(
            "/api/time-entries",
            json={
                "categoryId": self.cats["Deep Work"],
                "startTime": "2024-03-01T23:30:00Z",
                "endTime": "2024-03-02T00:30:00Z",
                "taskName": "Dev",
            },
            headers=self.headers,
        )
        response = self.client.get(
            "/api/analytics",
            params={
                "start": "2024-03-01T00:00:00Z",
                "end": "2024-03-08T00:00:00Z",
                "timezoneOffset": -60,
            },
            headers=self.headers,
        )
        self.assertEqual(response.status_code, 200)
        report = response.json()
        self.assertEqual(report["summary"]["totalMinutes"], 60)
        self.assertEqual(report["daily"][0]["date"], "2024-03-02")
        self.assertEqual(report["byCategory"][0]["name"], "Deep Work")
        self.assertEqual(len(report["byCategory"]), 5)
        self.assertEqual(report["topTasks"][0]["task_name"], "Dev")

        drilldown = self.client.get(
            "/api/analytics/category/Deep Work",
            params={"start": "2024-03-01T00:00:00Z", "end": "2024-03-08T00:00:00Z"},
            headers=self.headers,
        ).json()
        self.assertEqual(drilldown["category"]["minutes"], 60)

        invalid = self.client.get(
            "/api/analytics",
            params={"start": "2024-03-08T00:00:00Z", "end": "2024-03-01T00:00:00Z"},
            headers=self.headers,
        )
        self.assertEqual(invalid.status_code, 400)
        bad_page = self.client.get(
            "/api/analytics/task-names",
            params={"start": "2024-03-01", "end": "2024-03-08", "page": 0},
            headers=self.headers,
        )
        self.assertEqual(bad_page.status_code, 400)

    def test_settings_export_and_reset(self):
        self.assertEqual(
            self.client.get("/api/settings", headers=self.headers).json(),
            {"timezone": "UTC"},
        )
        updated = self.client.put(
            "/api/settings", json={"timezone": "America/New_York"}, headers=self.headers
        )
        self.assertEqual(updated.json(), {"timezone": "America/New_York"})
        invalid = self.client.put(
            "/api/settings", json={"timezone": "Nowhere/Land"}, headers=self.headers
        )
        self.assertEqual(invalid.status_code, 400)

        self.client.post(
            "/api/time-entries/start",
            json={"categoryId": self.cats["Break"]},
            headers=self.headers,
        )
        export = self.client.get("/api/export", headers=self.headers).json()
        self.assertEqual(export["rows"][0]["category_name"], "Break")

        reset = self.client.post("/api/settings/reset", headers=self.headers)
        self.assertEqual(
            reset.json(), {"message": "Data reset successfully", "deletedEntries": 1}
        )

    def test_delete_account(self):
        response = self.client.delete("/api/account", headers=self.headers)
        self.assertEqual(response.json(), {"deleted": True})
        again = self.client.delete("/api/account", headers=self.headers)
        self.assertEqual(again.status_code, 404)

    def test_started_entry_uses_server_clock(self):
        before = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M")
        entry = self.client.post(
            "/api/time-entries/start",
            json={"categoryId": self.cats["Planning"]},
            headers=self.headers,
        ).json()
        self.assertTrue(entry["start_time"].endswith("Z"))
        self.assertGreaterEqual(entry["start_time"][:16], before)


class AppContextTests(unittest.TestCase):
    def test_init_and_shutdown_are_idempotent(self):
        context = AppContext(settings=Settings(db_path=""), provider=SqliteStorageProvider())
        context.init()
        context.init()
        self.assertTrue(context.started)
        context.shutdown()
        context.shutdown()
        self.assertFalse(context.started)

    def test_signal_during_lifecycle_call_does_not_deadlock(self):
        context = AppContext(settings=Settings(db_path=""), provider=SqliteStorageProvider())
        context.init()
        handler = context._make_handler(signal.SIG_IGN)
        with context._lock:
            handler(signal.SIGINT, None)
        self.assertFalse(context.started)

    def test_context_builds_in_memory_sqlite_without_path(self):
        context = AppContext.from_settings(Settings(db_path="", storage_backend="sqlite"))
        self.assertIsInstance(context.provider, SqliteStorageProvider)
        self.assertIsNone(context.provider.db_path)


if __name__ == "__main__":
    unittest.main()
