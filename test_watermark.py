import os
import tempfile
import unittest

from receipt_cache import ReceiptCache
from watermark import Watermark, WatermarkTracker


class WatermarkTrackerTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.cache = await ReceiptCache(os.path.join(self.tmp.name, "cache.db")).open()
        self.tracker = WatermarkTracker(self.cache)

    async def asyncTearDown(self):
        await self.cache.close()
        self.tmp.cleanup()

    async def test_absent_until_written(self):
        self.assertIsNone(await self.tracker.read())

    async def test_advance_sets_id_and_timestamp(self):
        moved = await self.tracker.advance({"id": "R1", "date": "2024-01-01T10:00:00.000Z"})
        self.assertTrue(moved)
        mark = await self.tracker.read()
        self.assertEqual(mark, Watermark("R1", "2024-01-01T10:00:00.000Z", None))
        self.assertTrue(mark.has_timestamp)

    async def test_advance_never_regresses(self):
        await self.tracker.advance({"id": "R2", "date": "2024-01-02T00:00:00Z"})
        moved = await self.tracker.advance({"id": "R1", "date": "2024-01-01T00:00:00Z"})
        self.assertFalse(moved)
        self.assertEqual((await self.tracker.read()).record_id, "R2")
        self.assertTrue(await self.tracker.advance({"id": "R3", "date": "2024-01-02T00:00:00Z"}))
        self.assertEqual((await self.tracker.read()).record_id, "R3")

    async def test_advance_ignores_records_without_date(self):
        self.assertFalse(await self.tracker.advance({"id": "R1", "date": None}))
        self.assertIsNone(await self.tracker.read())

    async def test_touch_refresh_time_only_updates_refresh(self):
        await self.tracker.advance({"id": "R1", "date": "2024-01-01T00:00:00Z"})
        await self.tracker.touch_refresh_time(1234.5)
        mark = await self.tracker.read()
        self.assertEqual(mark.record_id, "R1")
        self.assertEqual(mark.last_refresh, 1234.5)

    async def test_reset_clears_everything(self):
        await self.tracker.advance({"id": "R1", "date": "2024-01-01T00:00:00Z"})
        await self.tracker.touch_refresh_time(1.0)
        await self.tracker.reset()
        self.assertIsNone(await self.tracker.read())
        self.assertTrue(await self.tracker.advance({"id": "R0", "date": "2023-01-01T00:00:00Z"}))


if __name__ == "__main__":
    unittest.main()
