import unittest
from datetime import datetime, timezone

from timetracker.errors import ValidationError
from timetracker.timeutil import (
    duration_minutes,
    local_date,
    local_day_bounds,
    normalize_optional_timestamp,
    normalize_timestamp,
    round_half_up,
    sqlite_offset_modifier,
    validate_timezone_offset,
)


class TimeutilTests(unittest.TestCase):
    def test_normalize_timestamp(self):
        self.assertEqual(
            normalize_timestamp("2024-03-01T10:00:00Z"), "2024-03-01T10:00:00.000Z"
        )
        self.assertEqual(
            normalize_timestamp("2024-03-01T12:00:00.250+02:00"),
            "2024-03-01T10:00:00.250Z",
        )
        self.assertEqual(
            normalize_timestamp(datetime(2024, 3, 1, 10, tzinfo=timezone.utc)),
            "2024-03-01T10:00:00.000Z",
        )
        self.assertEqual(normalize_timestamp("2024-03-01"), "2024-03-01T00:00:00.000Z")

    def test_invalid_timestamps(self):
        for value in ("", "   ", "tomorrow", None, 42):
            with self.assertRaises(ValidationError):
                normalize_timestamp(value, "start")

    def test_optional_timestamp(self):
        self.assertIsNone(normalize_optional_timestamp(None))
        self.assertIsNone(normalize_optional_timestamp(""))

    def test_round_half_up(self):
        self.assertEqual(round_half_up(2.5), 3)
        self.assertEqual(round_half_up(-2.5), -2)
        self.assertEqual(round_half_up(2.49), 2)

    def test_duration_minutes(self):
        self.assertEqual(
            duration_minutes("2024-03-01T10:00:00Z", "2024-03-01T10:00:30Z"), 1
        )
        self.assertEqual(
            duration_minutes("2024-03-01T10:00:00Z", "2024-03-01T10:00:29Z"), 0
        )
        self.assertEqual(
            duration_minutes("2024-03-01T10:00:00Z", "2024-03-01T12:15:00Z"), 135
        )

    def test_local_date(self):
        stamp = "2024-03-01T23:30:00.000Z"
        self.assertEqual(local_date(stamp, 0), "2024-03-01")
        self.assertEqual(local_date(stamp, -60), "2024-03-02")
        self.assertEqual(local_date("2024-03-01T02:00:00.000Z", 300), "2024-02-29")

    def test_sqlite_offset_modifier(self):
        self.assertEqual(sqlite_offset_modifier(-120), "+120 minutes")
        self.assertEqual(sqlite_offset_modifier(300), "-300 minutes")
        self.assertEqual(sqlite_offset_modifier(0), "+0 minutes")

    def test_local_day_bounds(self):
        self.assertEqual(
            local_day_bounds("2024-03-02", 0),
            ("2024-03-02T00:00:00.000Z", "2024-03-02T23:59:59.999Z"),
        )
        self.assertEqual(
            local_day_bounds("2024-03-02", 300),
            ("2024-03-02T05:00:00.000Z", "2024-03-03T04:59:59.999Z"),
        )
        with self.assertRaises(ValidationError):
            local_day_bounds("2024-13-01", 0)

    def test_validate_timezone_offset(self):
        self.assertEqual(validate_timezone_offset(-840), -840)
        for value in (841, True, "60"):
            with self.assertRaises(ValidationError):
                validate_timezone_offset(value)


if __name__ == "__main__":
    unittest.main()
