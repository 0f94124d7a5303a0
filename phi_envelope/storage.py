"""
Record stores for rows produced by RecordCodec.

This module provides:
- RecordStore: Abstract async store interface
- PostgresRecordStore: asyncpg-backed store (tables from sql/schema.sql)
- InMemoryRecordStore: Store for testing, enforcing the same unique indexes

Each row is written with one INSERT, so a field's ciphertext and wrapped key
columns are always persisted together or not at all.
"""

from __future__ import annotations

import asyncio
import itertools
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import asyncpg

from .errors import DuplicateRecordError, StorageError
from .schemas import UNIQUE_INDEXES

_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_]*$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise StorageError(f"Invalid SQL identifier: {name!r}")
    return name


class RecordStore(ABC):
    """Abstract storage interface for encoded rows."""

    @abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> Any:
        """Insert a row and return its id."""
        ...

    @abstractmethod
    async def get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        """Get a row by id."""
        ...

    @abstractmethod
    async def find_by_index(
        self, table: str, column: str, tag: str, **filters: Any
    ) -> Optional[Dict[str, Any]]:
        """Get the first row whose index column equals tag (and filters match)."""
        ...

    @abstractmethod
    async def list_rows(
        self, table: str, order_by: str = "id", descending: bool = True
    ) -> List[Dict[str, Any]]:
        """List all rows of a table."""
        ...


# =============================================================================
# PostgreSQL Storage
# =============================================================================


class PostgresRecordStore(RecordStore):
    """PostgreSQL record store."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    async def insert(self, table: str, row: Mapping[str, Any]) -> Any:
        columns = [_check_identifier(c) for c in row]
        placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
        query = (
            f"INSERT INTO {_check_identifier(table)} ({', '.join(columns)}) "
            f"VALUES ({placeholders}) RETURNING id"
        )
        try:
            return await self._pool.fetchval(query, *row.values())
        except asyncpg.exceptions.UniqueViolationError as e:
            raise DuplicateRecordError(
                f"Duplicate {table} record (constraint {e.constraint_name})"
            ) from e
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to insert into {table}: {type(e).__name__}") from e

    async def get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        query = f"SELECT * FROM {_check_identifier(table)} WHERE id = $1"
        try:
            row = await self._pool.fetchrow(query, record_id)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to get {table} record: {type(e).__name__}") from e
        return dict(row) if row is not None else None

    async def find_by_index(
        self, table: str, column: str, tag: str, **filters: Any
    ) -> Optional[Dict[str, Any]]:
        conditions = [(_check_identifier(column), tag)]
        conditions.extend((_check_identifier(k), v) for k, v in filters.items())
        where = " AND ".join(f"{name} = ${i}" for i, (name, _) in enumerate(conditions, 1))
        query = f"SELECT * FROM {_check_identifier(table)} WHERE {where} LIMIT 1"
        try:
            row = await self._pool.fetchrow(query, *(v for _, v in conditions))
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to query {table}: {type(e).__name__}") from e
        return dict(row) if row is not None else None

    async def list_rows(
        self, table: str, order_by: str = "id", descending: bool = True
    ) -> List[Dict[str, Any]]:
        direction = "DESC" if descending else "ASC"
        query = (
            f"SELECT * FROM {_check_identifier(table)} "
            f"ORDER BY {_check_identifier(order_by)} {direction}"
        )
        try:
            rows = await self._pool.fetch(query)
        except asyncpg.PostgresError as e:
            raise StorageError(f"Failed to list {table}: {type(e).__name__}") from e
        return [dict(row) for row in rows]


# =============================================================================
# In-Memory Storage
# =============================================================================


class InMemoryRecordStore(RecordStore):
    """
    Record store for testing.

    Unique column groups follow SQL semantics: a group containing NULL never
    conflicts.
    """

    def __init__(
        self, unique_indexes: Mapping[str, Sequence[Tuple[str, ...]]] = UNIQUE_INDEXES
    ) -> None:
        self._unique = {t: tuple(groups) for t, groups in unique_indexes.items()}
        self._tables: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def insert(self, table: str, row: Mapping[str, Any]) -> Any:
        _check_identifier(table)
        async with self._lock:
            rows = self._tables.setdefault(table, {})
            for group in self._unique.get(table, ()):
                key = tuple(row.get(c) for c in group)
                if any(v is None for v in key):
                    continue
                if any(tuple(r.get(c) for c in group) == key for r in rows.values()):
                    raise DuplicateRecordError(
                        f"Duplicate {table} record (unique {', '.join(group)})"
                    )
            record_id = next(self._ids)
            rows[record_id] = {**row, "id": record_id}
            return record_id

    async def get(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        row = self._tables.get(table, {}).get(record_id)
        return dict(row) if row is not None else None

    async def find_by_index(
        self, table: str, column: str, tag: str, **filters: Any
    ) -> Optional[Dict[str, Any]]:
        wanted = {column: tag, **filters}
        for row in self._tables.get(table, {}).values():
            if all(row.get(k) == v for k, v in wanted.items()):
                return dict(row)
        return None

    async def list_rows(
        self, table: str, order_by: str = "id", descending: bool = True
    ) -> List[Dict[str, Any]]:
        rows = [dict(r) for r in self._tables.get(table, {}).values()]
        return sorted(rows, key=lambda r: r.get(order_by), reverse=descending)
