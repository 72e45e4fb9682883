"""Relational writer: chunked upserts and key based maintenance statements."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from shopify_sync.connectors.sql import quote_identifier, quote_table
from shopify_sync.core.exceptions import DatabaseWriteError
from shopify_sync.services.expression import to_string

logger = logging.getLogger(__name__)

CONFLICT_MODES = ("update", "skip", "error")


class WriteResult(BaseModel):
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[Dict[str, Any]] = Field(default_factory=list)  # {"row": index, "error": message}


def _bind_value(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return value


def _key_string(value: Any) -> str:
    return to_string(value)


class DatabaseWriter:
    """Writes transformed rows into the target table.

    Values are always bound parameters; only identifiers are interpolated and
    they are quoted for the connector's dialect.
    """

    def __init__(self, connector, chunk_size: int = 100):
        self.connector = connector
        self.chunk_size = chunk_size

    @property
    def dialect(self) -> str:
        return self.connector.dialect

    def _q(self, name: str) -> str:
        return quote_identifier(name, self.dialect)

    def _table(self, name: str) -> str:
        return quote_table(name, self.dialect)

    async def upsert(
        self,
        table: str,
        key_column: str,
        rows: List[Dict[str, Any]],
        on_conflict: str = "update",
        chunk_size: Optional[int] = None,
    ) -> WriteResult:
        """Insert or update rows matched on ``key_column``.

        Inserted/updated counts come from checking which keys already exist
        before each chunk is written, so a repeated run reports only updates.
        """
        if on_conflict not in CONFLICT_MODES:
            raise DatabaseWriteError(f"Unknown conflict mode: {on_conflict}")

        result = WriteResult()
        if not rows:
            return result

        columns = self._collect_columns(rows)
        if key_column not in columns:
            raise DatabaseWriteError(f"Key column '{key_column}' not found in row data")

        unique = self._dedupe(rows, key_column, result)
        size = chunk_size or self.chunk_size

        for start in range(0, len(unique), size):
            chunk = unique[start:start + size]
            try:
                inserted, updated, skipped = await self._upsert_chunk(
                    table, key_column, columns, [row for _, row in chunk], on_conflict
                )
                result.inserted += inserted
                result.updated += updated
                result.skipped += skipped
            except Exception as e:
                logger.error(f"Upsert chunk into {table} failed ({len(chunk)} rows): {e}")
                for index, _ in chunk:
                    result.errors.append({"row": index, "error": str(e)})

        return result

    def _collect_columns(self, rows: Iterable[Dict[str, Any]]) -> List[str]:
        columns: List[str] = []
        seen: Set[str] = set()
        for row in rows:
            for column in row:
                if column not in seen:
                    seen.add(column)
                    columns.append(column)
        return columns

    def _dedupe(
        self,
        rows: List[Dict[str, Any]],
        key_column: str,
        result: WriteResult,
    ) -> List[Tuple[int, Dict[str, Any]]]:
        """Keep the last row per key; earlier duplicates count as skipped."""
        by_key: Dict[str, Tuple[int, Dict[str, Any]]] = {}
        for index, row in enumerate(rows):
            key = row.get(key_column)
            if key is None:
                result.errors.append({"row": index, "error": f"Missing value for key column '{key_column}'"})
                continue
            normalized = _key_string(key)
            if normalized in by_key:
                result.skipped += 1
            by_key[normalized] = (index, row)
        return sorted(by_key.values(), key=lambda item: item[0])

    async def _existing_keys(self, table: str, key_column: str, keys: List[Any]) -> Set[str]:
        params = {f"k{i}": key for i, key in enumerate(keys)}
        placeholders = ", ".join(f":{name}" for name in params)
        rows = await self.connector.query(
            f"SELECT {self._q(key_column)} AS k FROM {self._table(table)} WHERE {self._q(key_column)} IN ({placeholders})",
            params,
        )
        return {_key_string(row["k"]) for row in rows}

    def _values_clause(
        self,
        columns: List[str],
        rows: List[Dict[str, Any]],
    ) -> Tuple[str, Dict[str, Any]]:
        params: Dict[str, Any] = {}
        groups = []
        for r, row in enumerate(rows):
            names = []
            for c, column in enumerate(columns):
                name = f"r{r}_c{c}"
                params[name] = _bind_value(row.get(column))
                names.append(f":{name}")
            groups.append(f"({', '.join(names)})")
        return ", ".join(groups), params

    def build_upsert_sql(
        self,
        table: str,
        key_column: str,
        columns: List[str],
        values_clause: str,
        on_conflict: str,
    ) -> str:
        dialect = self.dialect
        target = self._table(table)
        column_list = ", ".join(self._q(c) for c in columns)
        key = self._q(key_column)
        update_columns = [c for c in columns if c != key_column]

        if on_conflict == "error":
            return f"INSERT INTO {target} ({column_list}) VALUES {values_clause}"

        if dialect in ("postgresql", "sqlite"):
            if on_conflict == "update" and update_columns:
                updates = ", ".join(f"{self._q(c)} = excluded.{self._q(c)}" for c in update_columns)
                conflict = f"ON CONFLICT ({key}) DO UPDATE SET {updates}"
            else:
                conflict = f"ON CONFLICT ({key}) DO NOTHING"
            return f"INSERT INTO {target} ({column_list}) VALUES {values_clause} {conflict}"

        if dialect in ("mysql", "mariadb"):
            if on_conflict == "update" and update_columns:
                updates = ", ".join(f"{self._q(c)} = VALUES({self._q(c)})" for c in update_columns)
                return (
                    f"INSERT INTO {target} ({column_list}) VALUES {values_clause} "
                    f"ON DUPLICATE KEY UPDATE {updates}"
                )
            return f"INSERT IGNORE INTO {target} ({column_list}) VALUES {values_clause}"

        if dialect == "mssql":
            source_columns = ", ".join(f"source.{self._q(c)}" for c in columns)
            matched = ""
            if on_conflict == "update" and update_columns:
                updates = ", ".join(f"target.{self._q(c)} = source.{self._q(c)}" for c in update_columns)
                matched = f" WHEN MATCHED THEN UPDATE SET {updates}"
            return (
                f"MERGE INTO {target} AS target "
                f"USING (VALUES {values_clause}) AS source ({column_list}) "
                f"ON target.{key} = source.{key}"
                f"{matched} "
                f"WHEN NOT MATCHED THEN INSERT ({column_list}) VALUES ({source_columns});"
            )

        raise DatabaseWriteError(f"Unsupported database dialect: {dialect}")

    async def _upsert_chunk(
        self,
        table: str,
        key_column: str,
        columns: List[str],
        rows: List[Dict[str, Any]],
        on_conflict: str,
    ) -> Tuple[int, int, int]:
        existing = await self._existing_keys(table, key_column, [row[key_column] for row in rows])
        values_clause, params = self._values_clause(columns, rows)
        sql = self.build_upsert_sql(table, key_column, columns, values_clause, on_conflict)
        await self.connector.execute(sql, params)

        matched = sum(1 for row in rows if _key_string(row[key_column]) in existing)
        new = len(rows) - matched
        if on_conflict == "update":
            return new, matched, 0
        return new, 0, matched

    async def batch_insert(
        self,
        table: str,
        rows: List[Dict[str, Any]],
        chunk_size: Optional[int] = None,
    ) -> WriteResult:
        """Plain inserts without conflict handling."""
        result = WriteResult()
        if not rows:
            return result

        columns = self._collect_columns(rows)
        column_list = ", ".join(self._q(c) for c in columns)
        size = chunk_size or self.chunk_size

        for start in range(0, len(rows), size):
            chunk = rows[start:start + size]
            values_clause, params = self._values_clause(columns, chunk)
            try:
                await self.connector.execute(
                    f"INSERT INTO {self._table(table)} ({column_list}) VALUES {values_clause}",
                    params,
                )
                result.inserted += len(chunk)
            except Exception as e:
                logger.error(f"Insert chunk into {table} failed: {e}")
                for offset in range(len(chunk)):
                    result.errors.append({"row": start + offset, "error": str(e)})
        return result

    async def delete_stale(self, table: str, key_column: str, valid_keys: Set[Any]) -> int:
        """Delete rows whose key is not in ``valid_keys``; returns the count deleted.

        An empty key set never deletes anything.
        """
        if not valid_keys:
            logger.warning(f"delete_stale called with empty key set for {table} - skipping")
            return 0

        valid = {_key_string(k) for k in valid_keys}
        rows = await self.connector.query(f"SELECT {self._q(key_column)} AS k FROM {self._table(table)}")
        stale = [row["k"] for row in rows if row["k"] is not None and _key_string(row["k"]) not in valid]
        if not stale:
            return 0

        deleted = 0
        for start in range(0, len(stale), self.chunk_size):
            chunk = stale[start:start + self.chunk_size]
            params = {f"k{i}": key for i, key in enumerate(chunk)}
            placeholders = ", ".join(f":{name}" for name in params)
            deleted += await self.connector.execute(
                f"DELETE FROM {self._table(table)} WHERE {self._q(key_column)} IN ({placeholders})",
                params,
            )
        logger.info(f"Deleted {deleted} stale rows from {table}")
        return deleted

    async def delete_by_key(self, table: str, key_column: str, key_value: Any) -> bool:
        count = await self.connector.execute(
            f"DELETE FROM {self._table(table)} WHERE {self._q(key_column)} = :key",
            {"key": key_value},
        )
        return count > 0

    async def update_by_key(
        self,
        table: str,
        key_column: str,
        key_value: Any,
        updates: Dict[str, Any],
    ) -> bool:
        if not updates:
            return False
        params: Dict[str, Any] = {"key": key_value}
        assignments = []
        for i, (column, value) in enumerate(updates.items()):
            params[f"v{i}"] = _bind_value(value)
            assignments.append(f"{self._q(column)} = :v{i}")
        count = await self.connector.execute(
            f"UPDATE {self._table(table)} SET {', '.join(assignments)} WHERE {self._q(key_column)} = :key",
            params,
        )
        return count > 0
