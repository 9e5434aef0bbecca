import asyncio
import unittest
from unittest.mock import AsyncMock, patch

from grokbridge.errors import CollaboratorTimeout, NoCredentialAvailable
from grokbridge.temp_credential_pool import TempCredentialPool


def _scripted_extractor(results):
    """Extractor returning the scripted values in order (None once exhausted)."""
    queue = list(results)
    calls = {"count": 0}

    async def extractor():
        calls["count"] += 1
        if not queue:
            return None
        value = queue.pop(0)
        if isinstance(value, BaseException):
            raise value
        return value

    return extractor, calls


class TestTempCredentialPool(unittest.IsolatedAsyncioTestCase):
    async def test_ensure_fills_to_target_in_one_round(self):
        extractor, calls = _scripted_extractor(["c1", "c2", "c3", "c4"])
        pool = TempCredentialPool(extractor, target_size=4, backoff_seconds=0)

        await pool.ensure()

        self.assertEqual(sorted(pool.credentials), ["c1", "c2", "c3", "c4"])
        self.assertEqual(calls["count"], 4)
        self.assertFalse(pool.refreshing)

    async def test_partial_round_retries_only_the_deficit(self):
        extractor, calls = _scripted_extractor(["c1", None, RuntimeError("boom"), "c2", "c3"])
        pool = TempCredentialPool(extractor, target_size=3, max_rounds=2, backoff_seconds=0.5)

        with patch("grokbridge.temp_credential_pool.asyncio.sleep", new=AsyncMock()) as sleep_mock:
            await pool.ensure()

        self.assertEqual(sorted(pool.credentials), ["c1", "c2", "c3"])
        self.assertEqual(calls["count"], 5)
        sleep_mock.assert_awaited_once_with(0.5)

    async def test_empty_round_aborts_and_raises_when_pool_empty(self):
        extractor, calls = _scripted_extractor([None, None])
        pool = TempCredentialPool(extractor, target_size=2, max_rounds=3, backoff_seconds=0)

        with self.assertRaises(NoCredentialAvailable):
            await pool.ensure()

        self.assertEqual(calls["count"], 2)
        self.assertFalse(pool.refreshing)

    async def test_below_target_with_some_credentials_only_warns(self):
        extractor, _ = _scripted_extractor(["c1"])
        pool = TempCredentialPool(extractor, target_size=2, max_rounds=2, backoff_seconds=0)

        added = await pool.replenish()

        self.assertEqual(added, 1)
        self.assertEqual(pool.credentials, ["c1"])

    async def test_slow_extraction_counts_as_failure(self):
        async def slow_extractor():
            await asyncio.sleep(1)
            return "late"

        pool = TempCredentialPool(slow_extractor, target_size=1, extraction_timeout_seconds=0.01)

        with self.assertRaises(NoCredentialAvailable) as ctx:
            await pool.ensure()
        self.assertEqual(pool.credentials, [])
        self.assertIsInstance(pool.last_error, CollaboratorTimeout)
        self.assertIs(ctx.exception.__cause__, pool.last_error)

    async def test_concurrent_ensure_is_single_flight(self):
        gate = asyncio.Event()
        calls = {"count": 0}

        async def gated_extractor():
            calls["count"] += 1
            index = calls["count"]
            await gate.wait()
            return f"c{index}"

        pool = TempCredentialPool(gated_extractor, target_size=2)
        first = asyncio.create_task(pool.ensure())
        await asyncio.sleep(0)
        self.assertTrue(pool.refreshing)

        await pool.ensure()  # no-op while the first refresh runs
        gate.set()
        await first
        await pool.wait_idle()

        self.assertEqual(calls["count"], 2)
        self.assertEqual(len(pool), 2)

    async def test_consume_does_not_advance_and_discard_wraps_cursor(self):
        extractor, _ = _scripted_extractor([])
        pool = TempCredentialPool(extractor, target_size=3)
        pool.credentials = ["a", "b", "c"]
        pool.cursor = 2

        self.assertEqual(pool.consume(), "c")
        self.assertEqual(pool.consume(), "c")

        self.assertTrue(pool.discard("c"))
        self.assertEqual(pool.cursor, 0)
        self.assertEqual(pool.consume(), "a")

        self.assertFalse(pool.discard("missing"))
        self.assertTrue(pool.discard())
        self.assertEqual(pool.credentials, ["b"])

        pool.discard()
        self.assertIsNone(pool.consume())
        self.assertEqual(pool.cursor, 0)


if __name__ == "__main__":
    unittest.main()
