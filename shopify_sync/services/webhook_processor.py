"""Applies a single Shopify webhook to every mapping that reads its resource."""

import logging
import re
import time
from datetime import datetime
from typing import Any, Dict, List

from shopify_sync.models import (
    DeleteStrategy,
    MappingConfig,
    TransformStatus,
    WebhookJob,
    WebhookProcessResult,
)
from shopify_sync.utils.records import extract_gid_id, flatten_record, get_nested_value

logger = logging.getLogger(__name__)

TOPIC_TO_RESOURCE = {
    "products/create": "Product",
    "products/update": "Product",
    "products/delete": "Product",
    "collections/create": "Collection",
    "collections/update": "Collection",
    "collections/delete": "Collection",
    "orders/create": "Order",
    "orders/updated": "Order",
    "orders/cancelled": "Order",
    "customers/create": "Customer",
    "customers/update": "Customer",
    "customers/delete": "Customer",
    "inventory_levels/update": "InventoryLevel",
}

# Webhook (REST) field names that differ from the GraphQL paths used in mappings
FIELD_ALIASES = {
    "admin_graphql_api_id": "id",
    "product_id": "product.id",
    "inventory_item_id": "inventoryItem.id",
    "location_id": "location.id",
}

DEFAULT_SOFT_DELETE_COLUMN = "deletedAt"

_SNAKE_RE = re.compile(r"_([a-z0-9])")


def is_delete_topic(topic: str) -> bool:
    return topic.endswith("/delete") or topic.endswith("/cancelled")


def to_camel(name: str) -> str:
    return _SNAKE_RE.sub(lambda m: m.group(1).upper(), name)


def flatten_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Make a webhook payload addressable with the field paths mappings use.

    Nested objects are also exposed as dot paths, snake_case keys get a
    camelCase twin and known REST names get their GraphQL path. Existing
    keys are never overwritten.
    """
    record: Dict[str, Any] = dict(payload)
    for path, value in flatten_record(payload).items():
        record.setdefault(path, value)

    for key, value in payload.items():
        camel = to_camel(key)
        if camel != key:
            record.setdefault(camel, value)

    for webhook_field, graphql_field in FIELD_ALIASES.items():
        if webhook_field in payload:
            record.setdefault(graphql_field, payload[webhook_field])

    return record


class WebhookProcessor:
    """Turns a webhook job into upserts or deletes on the target tables."""

    def __init__(self, mappings, transform_engine, writer, sync_engine):
        self.mappings = mappings
        self.transform_engine = transform_engine
        self.writer = writer
        self.sync_engine = sync_engine

    async def process(self, job: WebhookJob) -> WebhookProcessResult:
        start = time.perf_counter()
        result = WebhookProcessResult(webhook_id=job.id, topic=job.topic, success=True)

        resource = TOPIC_TO_RESOURCE.get(job.topic)
        if resource is None:
            logger.warning(f"Ignoring webhook with unknown topic: {job.topic}")
            result.processing_ms = int((time.perf_counter() - start) * 1000)
            return result

        mappings = await self.mappings.get_by_source_resource(resource, webhook_enabled_only=True)
        if not mappings:
            logger.info(f"No webhook-enabled mappings for resource {resource}")

        delete = is_delete_topic(job.topic)
        for mapping in mappings:
            if self.sync_engine.is_running(mapping.id):
                logger.info(f"Skipping {job.topic} for mapping {mapping.id}: sync in progress")
                continue
            try:
                if delete:
                    await self._handle_delete(mapping, job.payload)
                else:
                    result.records_written += await self._transform_and_upsert(mapping, job.payload)
                result.mappings_processed.append(mapping.id)
            except Exception as e:
                logger.error(f"Webhook {job.id} failed for mapping {mapping.name}: {e}")
                result.errors.append(f"{mapping.name}: {e}")

        if result.errors and not result.mappings_processed:
            result.success = False

        result.processing_ms = int((time.perf_counter() - start) * 1000)
        return result

    def _key_value(self, mapping: MappingConfig, record: Dict[str, Any], payload: Dict[str, Any]) -> Any:
        source_field = mapping.key_mapping.source_field if mapping.key_mapping else "id"
        value = get_nested_value(record, source_field)
        if value is None:
            value = payload.get("id")
        if value is None and payload.get("admin_graphql_api_id"):
            gid = str(payload["admin_graphql_api_id"])
            value = extract_gid_id(gid) or gid
        return value

    async def _transform_and_upsert(self, mapping: MappingConfig, payload: Dict[str, Any]) -> int:
        record = flatten_payload(payload)
        batch = await self.transform_engine.transform_batch(mapping, [record])

        key_column = mapping.key_mapping.target_column if mapping.key_mapping else "id"
        rows: List[Dict[str, Any]] = []
        for result in batch.results:
            if result.status == TransformStatus.ERROR:
                messages = "; ".join(e.message for e in result.errors)
                raise ValueError(f"Transform failed: {messages}")
            row = result.target_row
            if row.get(key_column) is None:
                row[key_column] = self._key_value(mapping, record, payload)
            rows.append(row)

        if not rows:
            return 0

        write = await self.writer.upsert(mapping.target_table, key_column, rows, on_conflict="update")
        if write.errors:
            raise ValueError(write.errors[0]["error"])
        return write.inserted + write.updated

    async def _handle_delete(self, mapping: MappingConfig, payload: Dict[str, Any]):
        strategy = mapping.delete_strategy
        if strategy == DeleteStrategy.IGNORE:
            logger.info(f"Ignoring delete for mapping {mapping.name}")
            return

        key_value = self._key_value(mapping, flatten_payload(payload), payload)
        if key_value is None:
            raise ValueError("Cannot determine key value for delete operation")

        key_column = mapping.key_mapping.target_column if mapping.key_mapping else "id"
        if strategy == DeleteStrategy.HARD:
            deleted = await self.writer.delete_by_key(mapping.target_table, key_column, key_value)
            logger.info(f"Delete of {key_value} from {mapping.target_table}: {'removed' if deleted else 'not found'}")
        else:
            column = mapping.soft_delete_column or DEFAULT_SOFT_DELETE_COLUMN
            await self.writer.update_by_key(
                mapping.target_table, key_column, key_value, {column: datetime.utcnow()}
            )
