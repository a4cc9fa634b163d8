"""Table-oriented persistence.

Two interchangeable backends sit behind the same small interface:

* :class:`SupabaseStore` talks to Postgres through the Supabase client.
* :class:`MemoryStore` keeps rows in Python dictionaries. Everything
  resets when the process restarts, which is what local development and
  the test-suite want.

Rows are plain dictionaries. Filters are equality matches; a list or
tuple value means "column is one of". ``gte`` holds lower bounds used
for time windows.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from supabase import Client, create_client

from .config import Settings

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def utcnow_iso() -> str:
    return utcnow().isoformat()


def _matches(row: Row, filters: Optional[Dict[str, Any]], gte: Optional[Dict[str, Any]]) -> bool:
    for key, expected in (filters or {}).items():
        actual = row.get(key)
        if isinstance(expected, (list, tuple, set)):
            if actual not in expected:
                return False
        elif actual != expected:
            return False
    for key, bound in (gte or {}).items():
        actual = row.get(key)
        if actual is None or actual < bound:
            return False
    return True


class MemoryStore:
    """In-memory "database" keyed by table name.

    Each table is a list of row dictionaries. A re-entrant lock guards
    every operation so compound writes such as :meth:`upsert` and
    :meth:`insert_unique` are atomic across request threads. Rows are
    deep-copied on the way out so callers cannot mutate stored state.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, List[Row]] = {}
        self._lock = threading.RLock()

    def _table(self, name: str) -> List[Row]:
        return self.tables.setdefault(name, [])

    def insert(self, table: str, rows: Union[Row, Sequence[Row]]) -> List[Row]:
        """Insert one row or many, filling in ``id`` and ``created_at``."""
        batch = [rows] if isinstance(rows, dict) else list(rows)
        created = []
        with self._lock:
            for row in batch:
                record = dict(row)
                record.setdefault("id", str(uuid.uuid4()))
                record.setdefault("created_at", utcnow_iso())
                self._table(table).append(record)
                created.append(copy.deepcopy(record))
        return created

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        """Return matching rows.

        Parameters
        ----------
        filters : Dict
            Column equality matches. A list, tuple or set value matches
            any of its members and ``None`` matches a missing value.
        gte : Dict
            Inclusive lower bounds, used for time windows.
        order_by, desc :
            Sort column and direction.
        limit, offset :
            Paging applied after filtering and sorting.
        """
        with self._lock:
            rows = [r for r in self._table(table) if _matches(r, filters, gte)]
            if order_by:
                # rows missing the sort column go last regardless of direction
                present = [r for r in rows if r.get(order_by) is not None]
                missing = [r for r in rows if r.get(order_by) is None]
                present.sort(key=lambda r: r[order_by], reverse=desc)
                rows = present + missing
            rows = rows[offset:]
            if limit is not None:
                rows = rows[:limit]
            return copy.deepcopy(rows)

    def select_one(self, table: str, **kwargs: Any) -> Optional[Row]:
        rows = self.select(table, limit=1, **kwargs)
        return rows[0] if rows else None

    def count(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._lock:
            return sum(1 for r in self._table(table) if _matches(r, filters, gte))

    def update(self, table: str, values: Row, filters: Dict[str, Any]) -> List[Row]:
        """Apply ``values`` to every matching row and return the new rows."""
        changes = dict(values)
        changes.setdefault("updated_at", utcnow_iso())
        updated = []
        with self._lock:
            for row in self._table(table):
                if _matches(row, filters, None):
                    row.update(changes)
                    updated.append(copy.deepcopy(row))
        return updated

    def upsert(self, table: str, row: Row, on_conflict: Iterable[str] = ("id",)) -> Row:
        """Update the row sharing the ``on_conflict`` values or insert a new one."""
        keys = list(on_conflict)
        with self._lock:
            for existing in self._table(table):
                if all(k in row and existing.get(k) == row[k] for k in keys):
                    existing.update(row)
                    existing["updated_at"] = utcnow_iso()
                    return copy.deepcopy(existing)
            return self.insert(table, row)[0]

    def insert_unique(self, table: str, row: Row, unique_on: Iterable[str]) -> Optional[Row]:
        """Insert ``row`` unless a row with the same ``unique_on`` values exists.

        Returns the new row, or ``None`` when it was already there.
        """
        keys = list(unique_on)
        with self._lock:
            if self.select_one(table, filters={k: row.get(k) for k in keys}):
                return None
            return self.insert(table, row)[0]

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        with self._lock:
            rows = self._table(table)
            kept = [r for r in rows if not _matches(r, filters, None)]
            removed = len(rows) - len(kept)
            self.tables[table] = kept
        return removed

    def ping(self) -> bool:
        return True


class SupabaseStore:
    """Store backed by Supabase's PostgREST interface.

    Every method builds one PostgREST query through the supabase client
    and executes it synchronously. Conflict handling for
    :meth:`upsert` and :meth:`insert_unique` relies on unique indexes
    existing in the database for the given columns.
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    @staticmethod
    def _apply_filters(query, filters: Optional[Dict[str, Any]], gte: Optional[Dict[str, Any]]):
        for key, value in (filters or {}).items():
            if isinstance(value, (list, tuple, set)):
                query = query.in_(key, list(value))
            elif value is None:
                query = query.is_(key, "null")
            else:
                query = query.eq(key, value)
        for key, value in (gte or {}).items():
            query = query.gte(key, value)
        return query

    def insert(self, table: str, rows: Union[Row, Sequence[Row]]) -> List[Row]:
        payload = rows if isinstance(rows, dict) else list(rows)
        result = self.client.table(table).insert(payload).execute()
        return result.data or []

    def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Row]:
        query = self._apply_filters(self.client.table(table).select("*"), filters, gte)
        if order_by:
            query = query.order(order_by, desc=desc)
        if limit is not None:
            query = query.range(offset, offset + limit - 1)
        elif offset:
            query = query.offset(offset)
        return query.execute().data or []

    def select_one(self, table: str, **kwargs: Any) -> Optional[Row]:
        rows = self.select(table, limit=1, **kwargs)
        return rows[0] if rows else None

    def count(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        gte: Optional[Dict[str, Any]] = None,
    ) -> int:
        query = self._apply_filters(self.client.table(table).select("id", count="exact"), filters, gte)
        return query.execute().count or 0

    def update(self, table: str, values: Row, filters: Dict[str, Any]) -> List[Row]:
        changes = dict(values)
        changes.setdefault("updated_at", utcnow_iso())
        query = self._apply_filters(self.client.table(table).update(changes), filters, None)
        return query.execute().data or []

    def upsert(self, table: str, row: Row, on_conflict: Iterable[str] = ("id",)) -> Row:
        result = self.client.table(table).upsert(row, on_conflict=",".join(on_conflict)).execute()
        return (result.data or [row])[0]

    def insert_unique(self, table: str, row: Row, unique_on: Iterable[str]) -> Optional[Row]:
        # needs a unique index on ``unique_on``; PostgREST returns no row for a skipped duplicate
        result = (
            self.client.table(table)
            .upsert(row, on_conflict=",".join(unique_on), ignore_duplicates=True)
            .execute()
        )
        return result.data[0] if result.data else None

    def delete(self, table: str, filters: Dict[str, Any]) -> int:
        query = self._apply_filters(self.client.table(table).delete(), filters, None)
        return len(query.execute().data or [])

    def ping(self) -> bool:
        self.client.table("customers").select("id").limit(1).execute()
        return True


Store = Union[MemoryStore, SupabaseStore]


def build_store(settings: Settings) -> Store:
    """Return a Supabase-backed store when configured, else an in-memory one.

    A failing client initialisation is logged and the in-memory store is
    used so the API can still come up for local work.
    """
    if settings.supabase_enabled:
        try:
            client = create_client(settings.supabase_url, settings.supabase_service_role_key)
        except Exception:
            logger.exception("Supabase initialisation failed, falling back to in-memory store")
        else:
            logger.info("Using Supabase store at %s", settings.supabase_url)
            return SupabaseStore(client)
    logger.info("Using in-memory store")
    return MemoryStore()
