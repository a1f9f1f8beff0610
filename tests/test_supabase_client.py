"""Tests for the Supabase-backed store, with the PostgREST client mocked."""

import sys
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

from postgrest.exceptions import APIError

# Ensure project root is on the path
sys.path.insert(0, str(Path(__file__).parent.parent))

import config
from sync.store import ConditionalCheckFailed
from sync.supabase_client import SupabaseStore

SESSIONS = config.FOCUS_SESSIONS_TABLE


def _result(data):
    return MagicMock(data=data)


def _mock_client(*results):
    """Client whose query builder chains to itself and returns results in order."""
    builder = MagicMock()
    for method in ("select", "eq", "limit", "order", "range", "insert", "update"):
        getattr(builder, method).return_value = builder
    builder.execute = AsyncMock(side_effect=list(results))
    client = MagicMock()
    client.table.return_value = builder
    return client, builder


class TestSupabaseStore(unittest.IsolatedAsyncioTestCase):
    """Test reads, inserts and compare-and-set writes."""

    async def test_get(self):
        """get returns the first row or None."""
        client, builder = _mock_client(_result([{"sessionId": "s1"}]), _result([]))
        store = SupabaseStore(client)
        self.assertEqual(await store.get(SESSIONS, "s1"), {"sessionId": "s1"})
        self.assertIsNone(await store.get(SESSIONS, "s2"))
        builder.eq.assert_any_call("sessionId", "s1")

    async def test_put_duplicate(self):
        """A unique violation becomes ConditionalCheckFailed."""
        client, builder = _mock_client()
        builder.execute.side_effect = APIError(
            {"code": "23505", "message": "duplicate key", "details": "", "hint": ""}
        )
        with self.assertRaises(ConditionalCheckFailed):
            await SupabaseStore(client).put(SESSIONS, {"sessionId": "s1"})

    async def test_put_other_error_propagates(self):
        """Other API errors are not masked."""
        client, builder = _mock_client()
        builder.execute.side_effect = APIError(
            {"code": "42P01", "message": "relation does not exist", "details": "", "hint": ""}
        )
        with self.assertRaises(APIError):
            await SupabaseStore(client).put(SESSIONS, {"sessionId": "s1"})

    async def test_update_guard_fails(self):
        """A guard mismatch is rejected without writing."""
        client, builder = _mock_client(_result([{"sessionId": "s1", "status": "completed", "version": 3}]))
        with self.assertRaises(ConditionalCheckFailed):
            await SupabaseStore(client).update(SESSIONS, "s1", {"status": "completed"}, expected={"status": "active"})
        builder.update.assert_not_called()

    async def test_update_version_conflict(self):
        """If the row moved between read and write the update fails."""
        client, builder = _mock_client(
            _result([{"sessionId": "s1", "status": "active", "version": 3}]),
            _result([]),
        )
        with self.assertRaises(ConditionalCheckFailed):
            await SupabaseStore(client).update(SESSIONS, "s1", {"status": "completed"}, expected={"status": "active"})
        builder.eq.assert_any_call("version", 3)

    async def test_increment_retries_lost_race(self):
        """An increment that loses one race re-reads and succeeds."""
        client, builder = _mock_client(
            _result([{"sessionId": "s1", "focusAdjustment": 0, "version": 1}]),
            _result([]),
            _result([{"sessionId": "s1", "focusAdjustment": 10, "version": 2}]),
            _result([{"sessionId": "s1"}]),
        )
        updated = await SupabaseStore(client).increment(SESSIONS, "s1", {"focusAdjustment": -20})
        self.assertEqual(updated["focusAdjustment"], -10)
        self.assertEqual(updated["version"], 3)

    async def test_increment_gives_up(self):
        """Persistent contention surfaces as ConditionalCheckFailed."""
        row = _result([{"sessionId": "s1", "scoreCount": 0, "version": 1}])
        client, _ = _mock_client(row, _result([]), row, _result([]))
        with self.assertRaises(ConditionalCheckFailed):
            await SupabaseStore(client, max_cas_attempts=2).increment(SESSIONS, "s1", {"scoreCount": 1})

    async def test_scan_pages(self):
        """scan keeps reading until a short page."""
        full = _result([{"sessionId": str(i)} for i in range(1000)])
        client, builder = _mock_client(full, _result([{"sessionId": "last"}]))
        rows = await SupabaseStore(client).scan(SESSIONS)
        self.assertEqual(len(rows), 1001)
        builder.range.assert_any_call(1000, 1999)

    async def test_connect_requires_credentials(self):
        """Connecting without credentials is a configuration error."""
        with patch("config.SUPABASE_URL", ""), patch("config.SUPABASE_ANON_KEY", ""):
            with self.assertRaises(ValueError):
                await SupabaseStore.connect()


if __name__ == "__main__":
    unittest.main()
