"""
Backing store protocol and the in-memory implementation.

The store is the only shared mutable resource in FocusFlow. Every
numeric counter it holds is changed through ``increment`` (atomic add)
or ``update`` with an ``expected`` guard (compare-and-set), never through
an unguarded read-then-write in application code.

Each record carries a ``version`` that the store bumps on every write,
so callers can guard a read-modify-write with ``expected={"version": v}``.
"""

import asyncio
import copy
import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

import config

logger = logging.getLogger(__name__)

# Primary key field for each logical table
KEY_FIELDS: Dict[str, str] = {
    config.USERS_TABLE: "userId",
    config.FOCUS_SESSIONS_TABLE: "sessionId",
    config.FOCUS_SCORES_TABLE: "scoreId",
    config.GROUPS_TABLE: "groupId",
    config.GROUP_MEMBERS_TABLE: "membershipId",
}

VERSION_FIELD = "version"

Derive = Callable[[Dict[str, Any]], Dict[str, Any]]


class ConditionalCheckFailed(Exception):
    """A conditional write was rejected (record missing, exists, or changed)."""

    def __init__(self, table: str, key: str, reason: str = "condition not met") -> None:
        super().__init__(f"{table}/{key}: {reason}")
        self.table = table
        self.key = key
        self.reason = reason


def check_expected(record: Optional[Dict[str, Any]], expected: Optional[Dict[str, Any]]) -> bool:
    """
    Check a record against an equality guard.

    Args:
        record: Current stored record (None if missing).
        expected: Field -> required value. None means "must exist".

    Returns:
        True if the record exists and every expected field matches.
    """
    if record is None:
        return False
    for field_name, value in (expected or {}).items():
        if record.get(field_name) != value:
            return False
    return True


def apply_increment(
    record: Dict[str, Any],
    deltas: Dict[str, int],
    changes: Optional[Dict[str, Any]] = None,
    derive: Optional[Derive] = None,
) -> Dict[str, Any]:
    """
    Build the next version of a record for an atomic increment.

    Args:
        record: Current record (not modified).
        deltas: Field -> amount to add (missing fields start at 0).
        changes: Field -> value to set alongside the increment.
        derive: Optional function computing extra fields from the
                incremented record (e.g. an average from sum and count).

    Returns:
        New record with the version bumped.
    """
    updated = dict(record)
    for field_name, delta in deltas.items():
        updated[field_name] = (updated.get(field_name) or 0) + delta
    if changes:
        updated.update(changes)
    if derive is not None:
        updated.update(derive(updated))
    updated[VERSION_FIELD] = (record.get(VERSION_FIELD) or 0) + 1
    return updated


class FocusStore(Protocol):
    """
    Interface every backing store implements.

    All methods are coroutines: each one is an I/O suspension point.
    Returned records are copies; mutating them does not touch the store.
    """

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        """Fetch a record by primary key, or None."""
        ...

    async def put(self, table: str, item: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new record.

        Raises:
            ConditionalCheckFailed: If a record with the same key exists.
        """
        ...

    async def update(
        self,
        table: str,
        key: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Set fields on an existing record if ``expected`` matches.

        Raises:
            ConditionalCheckFailed: If the record is missing or a guard fails.
        """
        ...

    async def increment(
        self,
        table: str,
        key: str,
        deltas: Dict[str, int],
        changes: Optional[Dict[str, Any]] = None,
        expected: Optional[Dict[str, Any]] = None,
        derive: Optional[Derive] = None,
    ) -> Dict[str, Any]:
        """
        Atomically add to numeric fields if ``expected`` matches.

        Raises:
            ConditionalCheckFailed: If the record is missing or a guard fails.
        """
        ...

    async def query(
        self,
        table: str,
        field_name: str,
        value: Any,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        """All records whose ``field_name`` equals ``value``, optionally ordered."""
        ...

    async def scan(self, table: str) -> List[Dict[str, Any]]:
        """Every record in a table."""
        ...


class InMemoryStore:
    """
    Process-local store backed by dictionaries.

    A single asyncio lock serialises writes, which makes ``update`` and
    ``increment`` linearizable within one event loop. Used for
    development, tests and single-process deployments.
    """

    def __init__(self) -> None:
        """Initialise empty tables."""
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    @staticmethod
    def _key_of(table: str, item: Dict[str, Any]) -> str:
        key_field = KEY_FIELDS.get(table, "id")
        key = item.get(key_field)
        if not key:
            raise ValueError(f"Record for table '{table}' is missing key field '{key_field}'")
        return str(key)

    async def get(self, table: str, key: str) -> Optional[Dict[str, Any]]:
        record = self._table(table).get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, table: str, item: Dict[str, Any]) -> Dict[str, Any]:
        key = self._key_of(table, item)
        async with self._lock:
            rows = self._table(table)
            if key in rows:
                raise ConditionalCheckFailed(table, key, "record already exists")
            stored = copy.deepcopy(item)
            stored.setdefault(VERSION_FIELD, 0)
            rows[key] = stored
            return copy.deepcopy(stored)

    async def update(
        self,
        table: str,
        key: str,
        changes: Dict[str, Any],
        expected: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        async with self._lock:
            rows = self._table(table)
            current = rows.get(key)
            if not check_expected(current, expected):
                raise ConditionalCheckFailed(
                    table, key, "record missing" if current is None else "condition not met"
                )
            updated = apply_increment(current, {}, changes)
            rows[key] = updated
            return copy.deepcopy(updated)

    async def increment(
        self,
        table: str,
        key: str,
        deltas: Dict[str, int],
        changes: Optional[Dict[str, Any]] = None,
        expected: Optional[Dict[str, Any]] = None,
        derive: Optional[Derive] = None,
    ) -> Dict[str, Any]:
        async with self._lock:
            rows = self._table(table)
            current = rows.get(key)
            if not check_expected(current, expected):
                raise ConditionalCheckFailed(
                    table, key, "record missing" if current is None else "condition not met"
                )
            updated = apply_increment(current, deltas, changes, derive)
            rows[key] = updated
            return copy.deepcopy(updated)

    async def query(
        self,
        table: str,
        field_name: str,
        value: Any,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> List[Dict[str, Any]]:
        matches = [
            copy.deepcopy(record)
            for record in self._table(table).values()
            if record.get(field_name) == value
        ]
        if order_by:
            matches.sort(key=lambda r: (r.get(order_by) is not None, r.get(order_by) or ""), reverse=descending)
        return matches

    async def scan(self, table: str) -> List[Dict[str, Any]]:
        return [copy.deepcopy(record) for record in self._table(table).values()]
