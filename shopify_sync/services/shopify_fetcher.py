"""Shopify data fetching: bulk operations for full syncs, cursor pages for incremental ones."""

import asyncio
import json
import logging
import re
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from shopify_sync.core.cancellation import CancellationToken
from shopify_sync.core.exceptions import (
    BulkOperationError,
    BulkOperationTimeoutError,
    ShopifyAPIError,
    SyncCancelledError,
)
from shopify_sync.utils.records import get_nested_value

logger = logging.getLogger(__name__)

RESOURCE_QUERY_NAMES = {
    "Product": "products",
    "ProductVariant": "productVariants",
    "Order": "orders",
    "Customer": "customers",
    "Collection": "collections",
    "InventoryItem": "inventoryItems",
    "InventoryLevel": "inventoryLevels",
}

BULK_RUN_MUTATION = """
mutation bulkOperationRunQuery($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""

BULK_CANCEL_MUTATION = """
mutation bulkOperationCancel($id: ID!) {
  bulkOperationCancel(id: $id) {
    bulkOperation { id status }
    userErrors { field message }
  }
}
"""

BULK_STATUS_QUERY = """
query bulkOperationStatus($id: ID!) {
  node(id: $id) {
    ... on BulkOperation {
      id
      status
      objectCount
      fileSize
      url
      errorCode
      partialDataUrl
    }
  }
}
"""

_ALIAS_RE = re.compile(r"[^A-Za-z0-9_]")


class BulkOperationResult(BaseModel):
    id: str
    status: str
    object_count: int = Field(default=0, alias="objectCount")
    file_size: Optional[int] = Field(default=None, alias="fileSize")
    url: Optional[str] = None
    error_code: Optional[str] = Field(default=None, alias="errorCode")
    partial_data_url: Optional[str] = Field(default=None, alias="partialDataUrl")

    class Config:
        populate_by_name = True


def get_query_name(resource: str) -> str:
    """GraphQL connection name for a resource type."""
    if resource in RESOURCE_QUERY_NAMES:
        return RESOURCE_QUERY_NAMES[resource]
    if resource in RESOURCE_QUERY_NAMES.values():
        return resource
    return resource.lower() + "s"


def metafield_alias(namespace: str, key: str) -> str:
    return _ALIAS_RE.sub("_", f"metafield_{namespace}_{key}")


def format_fields(fields: List[str]) -> str:
    """Render dotted field paths as a GraphQL selection set.

    ``metafields.<namespace>.<key>`` becomes an aliased
    ``metafield(namespace:, key:) { value }`` selection.
    """
    simple: List[str] = []
    nested: Dict[str, List[str]] = {}

    for field in fields:
        if "." in field:
            parent, child = field.split(".", 1)
            nested.setdefault(parent, [])
            if child and child not in nested[parent]:
                nested[parent].append(child)
        elif field not in simple:
            simple.append(field)

    parts = list(simple)
    for parent, children in nested.items():
        if parent == "metafields":
            for child in children:
                namespace, _, key = child.partition(".")
                parts.append(
                    f'{metafield_alias(namespace, key)}: metafield(namespace: "{namespace}", key: "{key}") {{ value }}'
                )
        elif parent not in simple:
            parts.append(f"{parent} {{ {format_fields(children)} }}")

    return "\n".join(parts)


def build_bulk_query(resource: str, fields: List[str]) -> str:
    """Bulk query for all records of a resource with the given fields (``id`` always included)."""
    unique = list(dict.fromkeys(["id", *fields]))
    return (
        "{\n"
        f"  {get_query_name(resource)} {{\n"
        "    edges {\n"
        "      node {\n"
        f"{format_fields(unique)}\n"
        "      }\n"
        "    }\n"
        "  }\n"
        "}"
    )


def build_page_query(resource: str, fields: List[str], filtered: bool = True) -> str:
    unique = list(dict.fromkeys(["id", *fields]))
    query_name = get_query_name(resource)
    filter_var = ", $query: String" if filtered else ""
    filter_arg = ", query: $query" if filtered else ""
    return (
        f"query fetchPage($first: Int!, $after: String{filter_var}) {{\n"
        f"  {query_name}(first: $first, after: $after{filter_arg}) {{\n"
        "    edges {\n"
        "      cursor\n"
        "      node {\n"
        f"{format_fields(unique)}\n"
        "      }\n"
        "    }\n"
        "    pageInfo { hasNextPage endCursor }\n"
        "  }\n"
        "}"
    )


def normalize_metafields(record: Dict[str, Any], fields: List[str]) -> Dict[str, Any]:
    """Expose aliased metafield selections under their ``metafields.ns.key`` path."""
    for field in fields:
        if not field.startswith("metafields."):
            continue
        namespace, _, key = field[len("metafields."):].partition(".")
        alias = metafield_alias(namespace, key)
        if alias in record:
            value = record.pop(alias)
            record[field] = value.get("value") if isinstance(value, dict) else value
    return record


def _iso_filter(updated_after: datetime) -> str:
    if updated_after.tzinfo is None:
        updated_after = updated_after.replace(tzinfo=timezone.utc)
    return updated_after.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ShopifyFetcher:
    """Fetches Shopify records for syncs.

    Full syncs go through the bulk operations API (rate limit exempt) and
    stream the JSONL result line by line. Incremental syncs page through
    the regular connection with an ``updated_at`` filter.
    """

    def __init__(
        self,
        client,
        poll_interval: float = 3.0,
        max_poll_interval: float = 30.0,
        poll_backoff: float = 1.5,
        page_size: int = 250,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.max_poll_interval = max_poll_interval
        self.poll_backoff = poll_backoff
        self.page_size = page_size

    async def start_bulk_query(self, query: str) -> str:
        data = await self.client.query(BULK_RUN_MUTATION, {"query": query})
        payload = data.get("bulkOperationRunQuery") or {}

        user_errors = payload.get("userErrors") or []
        if user_errors:
            messages = "; ".join(e.get("message", "") for e in user_errors)
            raise BulkOperationError(f"Bulk operation failed: {messages}")

        operation = payload.get("bulkOperation")
        if not operation:
            raise BulkOperationError("No bulk operation returned")

        logger.info(f"Started bulk operation {operation['id']}")
        return operation["id"]

    async def check_bulk_operation(self, operation_id: str) -> BulkOperationResult:
        data = await self.client.query(BULK_STATUS_QUERY, {"id": operation_id})
        node = data.get("node")
        if not node:
            raise BulkOperationError(f"Bulk operation {operation_id} not found")
        return BulkOperationResult.model_validate(node)

    async def cancel_bulk_operation(self, operation_id: str) -> bool:
        """Ask Shopify to cancel a bulk operation. Never raises."""
        try:
            await self.client.query(BULK_CANCEL_MUTATION, {"id": operation_id})
            logger.info(f"Cancelled bulk operation {operation_id}")
            return True
        except Exception as e:
            logger.warning(f"Failed to cancel bulk operation {operation_id}: {e}")
            return False

    async def wait_for_bulk_operation(
        self,
        operation_id: str,
        timeout: float = 600.0,
        token: Optional[CancellationToken] = None,
    ) -> BulkOperationResult:
        """Poll until the operation reaches a terminal state.

        Timeouts and cancellations both cancel the remote operation before
        raising.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        interval = self.poll_interval
        polls = 0

        while True:
            if token is not None and token.cancelled:
                await self.cancel_bulk_operation(operation_id)
                raise SyncCancelledError(token.reason)

            remaining = deadline - loop.time()
            if remaining <= 0:
                await self.cancel_bulk_operation(operation_id)
                raise BulkOperationTimeoutError(f"Bulk operation timed out after {timeout:g}s")

            result = await self.check_bulk_operation(operation_id)
            polls += 1
            logger.debug(f"Bulk poll #{polls}: status={result.status}, objects={result.object_count}")

            if result.status == "COMPLETED":
                logger.info(f"Bulk operation {operation_id} completed with {result.object_count} objects")
                return result
            if result.status == "FAILED":
                raise BulkOperationError(f"Bulk operation failed: {result.error_code or 'Unknown error'}")
            if result.status == "CANCELED":
                raise BulkOperationError("Bulk operation was cancelled")

            wait = min(interval, max(deadline - loop.time(), 0))
            if token is not None:
                await token.sleep(wait)
            else:
                await asyncio.sleep(wait)
            interval = min(interval * self.poll_backoff, self.max_poll_interval)

    async def stream_bulk_results(
        self,
        url: str,
        token: Optional[CancellationToken] = None,
        fields: Optional[List[str]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield records from a JSONL result file without buffering it."""
        count = 0
        line_number = 0
        async for line in self.client.stream_lines(url):
            line_number += 1
            if token is not None:
                token.raise_if_cancelled()
            if not line.strip():
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.error(f"Failed to parse JSONL line {line_number}: {e}")
                continue
            count += 1
            yield normalize_metafields(record, fields or [])

        logger.info(f"Streamed {count} records from bulk results")

    async def run_bulk_query(
        self,
        query: str,
        timeout: float = 600.0,
        token: Optional[CancellationToken] = None,
        fields: Optional[List[str]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Start, wait for and stream a bulk query."""
        operation_id = await self.start_bulk_query(query)
        try:
            result = await self.wait_for_bulk_operation(operation_id, timeout=timeout, token=token)
        except ShopifyAPIError:
            # Polling failed, the operation may still be running
            await self.cancel_bulk_operation(operation_id)
            raise

        if not result.url:
            logger.info("Bulk operation completed without a result URL (no records)")
            return
        async for record in self.stream_bulk_results(result.url, token=token, fields=fields):
            yield record

    async def _fetch_pages(
        self,
        resource: str,
        fields: List[str],
        search: Optional[str],
        page_size: int,
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        query_name = get_query_name(resource)
        query = build_page_query(resource, fields, filtered=search is not None)
        cursor: Optional[str] = None
        pages = 0
        total = 0

        while True:
            if token is not None:
                token.raise_if_cancelled()

            variables: Dict[str, Any] = {"first": page_size, "after": cursor}
            if search is not None:
                variables["query"] = search
            data = await self.client.query(query, variables)

            connection = data.get(query_name)
            if connection is None:
                raise ShopifyAPIError(f"Unexpected response structure for {query_name}")

            pages += 1
            edges = connection.get("edges") or []
            for edge in edges:
                total += 1
                yield normalize_metafields(edge["node"], fields)

            page_info = connection.get("pageInfo") or {}
            logger.debug(f"{query_name} page {pages}: {len(edges)} records (total {total})")
            if not page_info.get("hasNextPage"):
                break
            cursor = page_info.get("endCursor")
            if not cursor:
                break

    async def fetch_incremental(
        self,
        resource: str,
        fields: List[str],
        updated_after: datetime,
        token: Optional[CancellationToken] = None,
        page_size: Optional[int] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Yield records updated after ``updated_after``, one page at a time."""
        search = f"updated_at:>'{_iso_filter(updated_after)}'"
        count = 0
        async for record in self._fetch_pages(resource, fields, search, page_size or self.page_size, token):
            count += 1
            yield record
        logger.info(f"Incremental fetch of {resource} complete: {count} records")

    async def fetch_sample(self, resource: str, fields: List[str], limit: int = 10) -> List[Dict[str, Any]]:
        """First ``limit`` records of a resource (mapping preview)."""
        query_name = get_query_name(resource)
        data = await self.client.query(build_page_query(resource, fields, filtered=False), {"first": limit, "after": None})
        connection = data.get(query_name)
        if connection is None:
            raise ShopifyAPIError(f"Unexpected response structure for {query_name}")
        return [normalize_metafields(edge["node"], fields) for edge in connection.get("edges") or []][:limit]

    async def fetch_key_values(
        self,
        resource: str,
        key_field: str,
        limit: int = 10000,
    ) -> Tuple[List[Any], bool]:
        """Collect key values up to ``limit``; second item is True when truncated."""
        values: List[Any] = []
        async for record in self._fetch_pages(resource, [key_field], None, self.page_size):
            if len(values) >= limit:
                return values, True
            value = get_nested_value(record, key_field)
            if value is not None:
                values.append(value)
        return values, False
