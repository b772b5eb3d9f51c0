import datetime as dt
import unittest

from receipt_records import (
    PLACEHOLDER_PREFIX,
    dedupe_receipts,
    format_timestamp,
    latest_receipt,
    normalize_receipt,
    parse_timestamp,
)

UTC = dt.timezone.utc


class TimestampTest(unittest.TestCase):
    def test_parses_zulu_offset_and_naive(self):
        expected = dt.datetime(2024, 3, 1, 12, 30, tzinfo=UTC)
        self.assertEqual(parse_timestamp("2024-03-01T12:30:00.000Z"), expected)
        self.assertEqual(parse_timestamp("2024-03-01T13:30:00+01:00"), expected)
        self.assertEqual(parse_timestamp("2024-03-01 12:30:00"), expected)

    def test_unparseable_is_none(self):
        for value in (None, "", "yesterday", "2024-13-45"):
            self.assertIsNone(parse_timestamp(value))

    def test_format_is_utc_with_milliseconds(self):
        stamp = dt.datetime(2024, 3, 1, 12, 30, 5, 123456, tzinfo=UTC)
        self.assertEqual(format_timestamp(stamp), "2024-03-01T12:30:05.123Z")


class NormalizeReceiptTest(unittest.TestCase):
    def test_erpnext_fields(self):
        rec = normalize_receipt({"name": "SINV-1", "date": "2024-01-01", "customer_name": "Ann",
                                 "store_name": "Main", "grand_total": 9.5, "extra": 1})
        self.assertEqual(rec["id"], "SINV-1")
        self.assertEqual(rec["customer_name"], "Ann")
        self.assertEqual(rec["store_name"], "Main")
        self.assertEqual(rec["total"], 9.5)
        self.assertEqual(rec["extra"], 1)

    def test_camel_case_aliases_and_custom_timestamp(self):
        rec = normalize_receipt({"$id": "abc", "posted": "2024-02-02T00:00:00Z", "customerName": "Bo",
                                 "storeName": "East", "amountPaid": "3"}, timestamp_field="posted")
        self.assertEqual(rec["id"], "abc")
        self.assertEqual(rec["date"], "2024-02-02T00:00:00Z")
        self.assertEqual(rec["customer_name"], "Bo")
        self.assertEqual(rec["total"], "3")

    def test_missing_id_gets_stable_placeholder(self):
        raw = {"date": "2024-01-01T00:00:00Z", "total": 1}
        first = normalize_receipt(raw)["id"]
        second = normalize_receipt(dict(raw))["id"]
        other = normalize_receipt({"date": "2024-01-01T00:00:01Z", "total": 1})["id"]
        self.assertTrue(first.startswith(PLACEHOLDER_PREFIX))
        self.assertEqual(first, second)
        self.assertNotEqual(first, other)


class HelpersTest(unittest.TestCase):
    def test_latest_receipt_scans_everything(self):
        records = [
            {"id": "b", "date": "2024-01-02T00:00:00Z"},
            {"id": "c", "date": "2024-01-03T00:00:00Z"},
            {"id": "x", "date": None},
            {"id": "a", "date": "2024-01-01T00:00:00Z"},
        ]
        self.assertEqual(latest_receipt(records)["id"], "c")
        self.assertIsNone(latest_receipt([]))

    def test_dedupe_keeps_first_and_updates_seen(self):
        seen = {"a"}
        out = dedupe_receipts([{"id": "a"}, {"id": "b"}, {"id": "b"}, {"id": "c"}], seen)
        self.assertEqual([r["id"] for r in out], ["b", "c"])
        self.assertEqual(seen, {"a", "b", "c"})


if __name__ == "__main__":
    unittest.main()
