import os
import sqlite3
import tempfile
import unittest

from receipt_cache import LEGACY_VERSION, SCHEMA_VERSION, ReceiptCache
from sync_errors import NotInitialized, StoreError


class ReceiptCacheTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.tmp.name, "cache.db")

    def tearDown(self):
        self.tmp.cleanup()

    async def test_partition_access_before_open_raises(self):
        cache = ReceiptCache(self.path)
        with self.assertRaises(NotInitialized):
            cache.records
        with self.assertRaises(NotInitialized):
            await cache.run(lambda conn: None)

    async def test_put_get_and_upsert(self):
        async with ReceiptCache(self.path) as cache:
            await cache.records.put({"id": "R1", "total": 1})
            await cache.records.put_many([{"id": "R2", "total": 2}, {"id": "R3", "total": 3}])
            await cache.records.put({"id": "R1", "total": 10})
            self.assertEqual(await cache.records.get("R1"), {"id": "R1", "total": 10})
            self.assertIsNone(await cache.records.get("missing"))
            self.assertEqual([r["id"] for r in await cache.records.get_all()], ["R1", "R2", "R3"])
            self.assertEqual(await cache.records.count(), 3)

    async def test_tuple_keys_and_replace_all(self):
        async with ReceiptCache(self.path) as cache:
            await cache.aggregates.put({"key": ["Ann", "Main"], "n": 1})
            await cache.aggregates.replace_all([{"key": ["Bob", "East"], "n": 2}, {"key": ["Ann", "West"], "n": 3}])
            self.assertIsNone(await cache.aggregates.get(("Ann", "Main")))
            self.assertEqual((await cache.aggregates.get(("Ann", "West")))["n"], 3)
            self.assertEqual([a["n"] for a in await cache.aggregates.get_all()], [2, 3])

    async def test_clear_and_missing_key_field(self):
        async with ReceiptCache(self.path) as cache:
            await cache.metadata.put({"key": "a", "value": 1})
            await cache.metadata.clear()
            self.assertEqual(await cache.metadata.get_all(), [])
            with self.assertRaises(StoreError):
                await cache.records.put({"total": 1})

    async def test_data_survives_reopen(self):
        async with ReceiptCache(self.path) as cache:
            await cache.records.put({"id": "R1"})
        async with ReceiptCache(self.path) as cache:
            self.assertEqual(await cache.records.get_all(), [{"id": "R1"}])
        conn = sqlite3.connect(self.path)
        try:
            self.assertEqual(conn.execute("PRAGMA user_version").fetchone()[0], SCHEMA_VERSION)
        finally:
            conn.close()

    async def test_upgrade_from_legacy_version_clears_data(self):
        conn = sqlite3.connect(self.path)
        conn.execute("CREATE TABLE records (key TEXT PRIMARY KEY, value_json TEXT NOT NULL)")
        conn.execute("INSERT INTO records VALUES ('old', '{\"id\": \"old\"}')")
        conn.execute(f"PRAGMA user_version={LEGACY_VERSION}")
        conn.commit()
        conn.close()
        async with ReceiptCache(self.path) as cache:
            self.assertEqual(await cache.records.get_all(), [])
            self.assertEqual(await cache.metadata.get_all(), [])

    async def test_open_failure_is_store_error(self):
        cache = ReceiptCache(os.path.join(self.tmp.name, "missing-dir", "cache.db"))
        with self.assertRaises(StoreError):
            await cache.open()
        self.assertFalse(cache.is_open)

    async def test_close_is_idempotent(self):
        cache = await ReceiptCache(self.path).open()
        await cache.close()
        await cache.close()
        self.assertFalse(cache.is_open)


if __name__ == "__main__":
    unittest.main()
