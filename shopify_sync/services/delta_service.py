"""Key level comparison between Shopify and a mapping's target table."""

import asyncio
import logging
import time
from typing import Any, Set

from shopify_sync.connectors.sql import quote_identifier, quote_table
from shopify_sync.core.exceptions import MappingNotFoundError
from shopify_sync.models import DeltaResult, MappingConfig
from shopify_sync.utils.records import extract_gid_id

logger = logging.getLogger(__name__)

MAX_KEYS = 10000
SAMPLE_SIZE = 10


def normalize_key(value: Any) -> str:
    """Compare GraphQL gids and plain numeric ids on equal terms."""
    return extract_gid_id(value) or str(value)


class DeltaService:
    """Reports keys that exist on only one side.

    Both sides are capped at ``max_keys`` ids; a capped result is flagged
    ``truncated`` and its counts are approximate.
    """

    def __init__(self, fetcher, connector, mappings, max_keys: int = MAX_KEYS, sample_size: int = SAMPLE_SIZE):
        self.fetcher = fetcher
        self.connector = connector
        self.mappings = mappings
        self.max_keys = max_keys
        self.sample_size = sample_size

    async def calculate_delta(self, mapping_id: str) -> DeltaResult:
        start = time.perf_counter()
        mapping = await self.mappings.get_by_id(mapping_id)
        if mapping is None:
            raise MappingNotFoundError(mapping_id)
        if mapping.key_mapping is None:
            raise ValueError(f"Mapping {mapping.name} has no key mapping configured")

        (shopify_keys, shopify_truncated), database_keys = await asyncio.gather(
            self._shopify_keys(mapping),
            self._database_keys(mapping),
        )
        truncated = shopify_truncated or len(database_keys) >= self.max_keys
        if truncated:
            logger.warning(
                f"Delta for mapping {mapping_id} hit the {self.max_keys} key limit "
                f"(shopify={len(shopify_keys)}, database={len(database_keys)})"
            )

        missing_in_database = sorted(shopify_keys - database_keys)
        missing_in_shopify = sorted(database_keys - shopify_keys)

        result = DeltaResult(
            mapping_id=mapping_id,
            mapping_name=mapping.name,
            shopify_count=len(shopify_keys),
            database_count=len(database_keys),
            missing_in_database=len(missing_in_database),
            missing_in_shopify=len(missing_in_shopify),
            in_sync=len(shopify_keys) - len(missing_in_database),
            sample_missing_in_database=missing_in_database[: self.sample_size],
            sample_missing_in_shopify=missing_in_shopify[: self.sample_size],
            truncated=truncated,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        logger.info(
            f"Delta for mapping {mapping_id}: {result.missing_in_database} to add, "
            f"{result.missing_in_shopify} to remove, {result.in_sync} in sync"
        )
        return result

    async def _shopify_keys(self, mapping: MappingConfig):
        values, truncated = await self.fetcher.fetch_key_values(
            mapping.source_resource, mapping.key_mapping.source_field, self.max_keys
        )
        return {normalize_key(v) for v in values}, truncated

    async def _database_keys(self, mapping: MappingConfig) -> Set[str]:
        dialect = self.connector.dialect
        column = quote_identifier(mapping.key_mapping.target_column, dialect)
        rows = await self.connector.query(f"SELECT {column} AS k FROM {quote_table(mapping.target_table, dialect)}")
        keys: Set[str] = set()
        for row in rows:
            if len(keys) >= self.max_keys:
                break
            if row.get("k") is not None:
                keys.add(normalize_key(row["k"]))
        return keys
