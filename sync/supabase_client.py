"""
SupabaseStore: FocusStore implementation on Supabase (PostgREST).

Handles:
- Async client creation from config credentials
- Record get / insert / scan / ordered query
- Conditional updates via a version-column compare-and-set
- Atomic increments as a bounded compare-and-set loop

Every table carries an integer ``version`` column. A write only lands if
the row still has the version that was read, so concurrent writers never
overwrite each other's counters.
"""

import logging
from typing import Any, Dict, List, Optional

from postgrest.exceptions import APIError
from supabase import AsyncClient, acreate_client

import config
from sync.store import (
    KEY_FIELDS,
    VERSION_FIELD,
    ConditionalCheckFailed,
    Derive,
    apply_increment,
    check_expected,
)

logger = logging.getLogger(__name__)

# Postgres unique_violation
_DUPLICATE_KEY_CODE = "23505"

# Rows fetched per request when scanning a table
_PAGE_SIZE = 1000


class SupabaseStore:
    """
    Supabase-backed store for sessions, scores, users and groups.

    Use ``SupabaseStore.connect()`` to build one from config, or pass an
    existing ``AsyncClient`` to the constructor.
    """

    def __init__(self, client: AsyncClient, max_cas_attempts: int = 5) -> None:
        """
        Initialise the store.

        Args:
            client: Connected Supabase async client.
            max_cas_attempts: Compare-and-set attempts for increments
                              before giving up with ConditionalCheckFailed.
        """
        self._client = client
        self._max_cas_attempts = max_cas_attempts

    @classmethod
    async def connect(cls, supabase_url: str = "", supabase_key: str = "") -> "SupabaseStore":
        """
        Create a store from credentials (falls back to config).

        Raises:
            ValueError: If credentials are not configured.
        """
        url = supabase_url or config.SUPABASE_URL
        key = supabase_key or config.SUPABASE_ANON_KEY
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY must be set for the supabase store")
        client = await acreate_client(url, key)
        logger.info("Supabase store initialised")
        return cls(client)

    @staticmethod
    def _key_field(table: str) -> str:
        return KEY_FIELDS.get(table, "id")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        result = (
            await self._client.table(table)
            .select("*")
            .eq(self._key_field(table), key)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def query(
        self,
        table: str,
        field_name: str,
        value: Any,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        request = self._client.table(table).select("*").eq(field_name, value)
        if order_by:
            request = request.order(order_by, desc=descending)
        result = await request.execute()
        return list(result.data or [])

    async def scan(self, table: str) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            result = (
                await self._client.table(table)
                .select("*")
                .range(start, start + _PAGE_SIZE - 1)
                .execute()
            )
            page = result.data or []
            rows.extend(page)
            if len(page) < _PAGE_SIZE:
                return rows
            start += _PAGE_SIZE

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put(self, table: str, item: Dict[str, Any]) -> Dict[str, Any]:
        row = dict(item)
        row.setdefault(VERSION_FIELD, 0)
        key = str(row.get(self._key_field(table), ""))
        try:
            result = await self._client.table(table).insert(row).execute()
        except APIError as e:
            if getattr(e, "code", None) == _DUPLICATE_KEY_CODE:
                raise ConditionalCheckFailed(table, key, "record already exists") from e
            raise
        return result.data[0] if result.data else row

    async def _compare_and_set(self, table: str, key: str, current: Dict[str, Any], updated: Dict[str, Any]) -> bool:
        """
        Write ``updated`` only if the row still has ``current``'s version.

        Returns:
            True if the write landed, False if another writer got there first.
        """
        changes = {k: v for k, v in updated.items() if k != self._key_field(table)}
        result = (
            await self._client.table(table)
            .update(changes)
            .eq(self._key_field(table), key)
            .eq(VERSION_FIELD, current.get(VERSION_FIELD) or 0)
            .execute()
        )
        return bool(result.data)

    async def update(
        self,
        table: str,
        key: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        current = await self.get(table, key)
        if not check_expected(current, expected):
            raise ConditionalCheckFailed(
                table, key, "record missing" if current is None else "condition not met"
            )
        updated = apply_increment(current, {}, changes)
        if not await self._compare_and_set(table, key, current, updated):
            # The row moved between read and write, so the guard no longer holds
            raise ConditionalCheckFailed(table, key, "concurrent modification")
        return updated

    async def increment(
        self,
        table: str,
        key: str,
        deltas: Dict[str, int],
        changes: Optional[Dict[str, Any]] = None,
        expected: Optional[Dict[str, Any]] = None,
        derive: Optional[Derive] = None,
    ) -> Dict[str, Any]:
        for attempt in range(self._max_cas_attempts):
            current = await self.get(table, key)
            if not check_expected(current, expected):
                raise ConditionalCheckFailed(
                    table, key, "record missing" if current is None else "condition not met"
                )
            updated = apply_increment(current, deltas, changes, derive)
            if await self._compare_and_set(table, key, current, updated):
                return updated
            logger.debug(f"Increment on {table}/{key} lost a race (attempt {attempt + 1}), retrying")

        raise ConditionalCheckFailed(table, key, "too much contention")
