"""Async connector for the target relational database."""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import inspect, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

IDENTIFIER_QUOTES = {
    "mssql": ("[", "]"),
    "mysql": ("`", "`"),
    "mariadb": ("`", "`"),
}

VERSION_QUERIES = {
    "postgresql": "SELECT version() AS version",
    "mysql": "SELECT VERSION() AS version",
    "mssql": "SELECT @@VERSION AS version",
    "sqlite": "SELECT sqlite_version() AS version",
}


def quote_identifier(name: str, dialect: str) -> str:
    """Quote a column or table name for the dialect."""
    opening, closing = IDENTIFIER_QUOTES.get(dialect, ('"', '"'))
    return f"{opening}{name.replace(closing, closing * 2)}{closing}"


def quote_table(name: str, dialect: str) -> str:
    """Quote a possibly schema qualified table name (``dbo.Sku``) per part."""
    return ".".join(quote_identifier(part, dialect) for part in name.split("."))


class SqlConnector:
    """Thin wrapper over a SQLAlchemy async engine.

    Statements are plain SQL with ``:name`` bound parameters. Every call runs
    in its own transaction.
    """

    def __init__(self, database_url: str, engine: Optional[AsyncEngine] = None, **engine_options: Any):
        if engine is None:
            engine_options.setdefault("pool_pre_ping", True)
            engine = create_async_engine(database_url, **engine_options)
        self.engine = engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @property
    def masked_url(self) -> str:
        return self.engine.url.render_as_string(hide_password=True)

    async def query(self, sql: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a statement and return its rows as dicts (empty for DML)."""
        async with self.engine.begin() as conn:
            result = await conn.execute(text(sql), params or {})
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

    async def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> int:
        """Run a statement and return the affected row count."""
        async with self.engine.begin() as conn:
            result = await conn.execute(text(sql), params or {})
            return max(result.rowcount or 0, 0)

    async def test_connection(self) -> Dict[str, Any]:
        try:
            rows = await self.query(VERSION_QUERIES.get(self.dialect, "SELECT 1 AS version"))
            version = rows[0]["version"] if rows else None
            return {"success": True, "message": "Connected", "server_version": version}
        except Exception as e:
            logger.error(f"Database connection test failed for {self.masked_url}: {e}")
            return {"success": False, "message": str(e)}

    async def introspect_schema(self) -> Dict[str, Any]:
        """Tables with their columns and primary keys."""

        def _inspect(sync_conn) -> List[Dict[str, Any]]:
            inspector = inspect(sync_conn)
            tables = []
            for table_name in inspector.get_table_names():
                pk = set(inspector.get_pk_constraint(table_name).get("constrained_columns") or [])
                columns = [
                    {
                        "name": column["name"],
                        "type": str(column["type"]),
                        "nullable": bool(column.get("nullable", True)),
                        "primary_key": column["name"] in pk,
                    }
                    for column in inspector.get_columns(table_name)
                ]
                tables.append({"name": table_name, "columns": columns})
            return tables

        async with self.engine.connect() as conn:
            tables = await conn.run_sync(_inspect)
        return {"dialect": self.dialect, "tables": tables}

    async def close(self):
        await self.engine.dispose()
        logger.info("Closed target database engine")
