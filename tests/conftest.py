"""Shared fixtures and in-memory stand-ins for Mongo and Redis."""

import copy
import fnmatch
import os
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

os.environ.setdefault("SHOPIFY_STORE_DOMAIN", "test-store.myshopify.com")
os.environ.setdefault("SHOPIFY_ACCESS_TOKEN", "shpat_test")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-secret")
os.environ.setdefault("LOG_FORMAT", "text")

from shopify_sync.models import (  # noqa: E402
    DirectTransform,
    ExpressionTransform,
    FieldMapping,
    FieldTarget,
    KeyMapping,
    MappingConfig,
    SingleSource,
)


# ---------------------------------------------------------------------------
# Mongo
# ---------------------------------------------------------------------------

def _get(doc: Dict[str, Any], field: str) -> Any:
    value: Any = doc
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _matches(doc: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for field, condition in (filters or {}).items():
        value = _get(doc, field)
        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$in" and value not in operand:
                    return False
                if op == "$nin" and value in operand:
                    return False
                if op == "$ne" and value == operand:
                    return False
                if op == "$gte" and (value is None or value < operand):
                    return False
                if op == "$lt" and (value is None or value >= operand):
                    return False
        elif value != condition:
            return False
    return True


def _sort_docs(docs: List[Dict[str, Any]], sort_keys: List) -> List[Dict[str, Any]]:
    for field, direction in reversed(sort_keys):
        docs = sorted(docs, key=lambda d: (_get(d, field) is None, _get(d, field)), reverse=direction < 0)
    return docs


class FakeCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs
        self._sort: List = []
        self._limit: Optional[int] = None

    def sort(self, field, direction: int = 1):
        if isinstance(field, list):
            self._sort.extend(field)
        else:
            self._sort.append((field, direction))
        return self

    def limit(self, n: int):
        self._limit = n
        return self

    def _results(self) -> List[Dict[str, Any]]:
        docs = _sort_docs(list(self._docs), self._sort) if self._sort else list(self._docs)
        if self._limit:
            docs = docs[: self._limit]
        return docs

    def __aiter__(self):
        self._iter = iter(self._results())
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration


class FakeCollection:
    """Enough of a motor collection for the service layer."""

    def __init__(self):
        self.docs: List[Dict[str, Any]] = []

    async def insert_one(self, doc: Dict[str, Any]):
        doc = copy.deepcopy(doc)
        doc.setdefault("_id", uuid.uuid4().hex)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, filters: Optional[Dict[str, Any]] = None, projection=None):
        for doc in self.docs:
            if _matches(doc, filters or {}):
                return copy.deepcopy(doc)
        return None

    def find(self, filters: Optional[Dict[str, Any]] = None, projection=None):
        return FakeCursor([copy.deepcopy(d) for d in self.docs if _matches(d, filters or {})])

    async def count_documents(self, filters: Dict[str, Any]) -> int:
        return sum(1 for d in self.docs if _matches(d, filters))

    async def update_one(self, filters, update, upsert: bool = False):
        for doc in self.docs:
            if _matches(doc, filters):
                doc.update(copy.deepcopy(update.get("$set", {})))
                return SimpleNamespace(matched_count=1, modified_count=1)
        return SimpleNamespace(matched_count=0, modified_count=0)

    async def update_many(self, filters, update):
        count = 0
        for doc in self.docs:
            if _matches(doc, filters):
                doc.update(copy.deepcopy(update.get("$set", {})))
                count += 1
        return SimpleNamespace(matched_count=count, modified_count=count)

    async def replace_one(self, filters, replacement, upsert: bool = False):
        for i, doc in enumerate(self.docs):
            if _matches(doc, filters):
                self.docs[i] = copy.deepcopy(replacement)
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            await self.insert_one(replacement)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=replacement.get("_id"))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def delete_one(self, filters):
        for i, doc in enumerate(self.docs):
            if _matches(doc, filters):
                del self.docs[i]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    async def delete_many(self, filters):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not _matches(d, filters)]
        return SimpleNamespace(deleted_count=before - len(self.docs))

    def aggregate(self, pipeline: List[Dict[str, Any]]):
        docs = [copy.deepcopy(d) for d in self.docs]
        for stage in pipeline:
            if "$match" in stage:
                docs = [d for d in docs if _matches(d, stage["$match"])]
            elif "$sort" in stage:
                docs = _sort_docs(docs, list(stage["$sort"].items()))
            elif "$group" in stage:
                docs = self._group(docs, stage["$group"])
        return FakeCursor(docs)

    @staticmethod
    def _group(docs: List[Dict[str, Any]], stage: Dict[str, Any]) -> List[Dict[str, Any]]:
        def resolve(expr, doc):
            if isinstance(expr, str) and expr.startswith("$"):
                return _get(doc, expr[1:])
            if isinstance(expr, dict):
                return {k: resolve(v, doc) for k, v in expr.items()}
            return expr

        groups: Dict[str, Dict[str, Any]] = {}
        members: Dict[str, List[Dict[str, Any]]] = {}
        for doc in docs:
            key = resolve(stage["_id"], doc)
            marker = repr(key)
            groups.setdefault(marker, {"_id": key})
            members.setdefault(marker, []).append(doc)

        results = []
        for marker, group in groups.items():
            items = members[marker]
            for name, accumulator in stage.items():
                if name == "_id":
                    continue
                (op, expr), = accumulator.items()
                values = [resolve(expr, d) for d in items]
                if op == "$sum":
                    group[name] = sum(v or 0 for v in values)
                elif op == "$first":
                    group[name] = values[0] if values else None
                elif op == "$avg":
                    numbers = [v for v in values if v is not None]
                    group[name] = sum(numbers) / len(numbers) if numbers else None
            results.append(group)
        return results


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def get_collection(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())

    async def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------

class FakeRedis:
    """Strings, hashes and sorted sets, with ``decode_responses`` semantics."""

    def __init__(self):
        self.values: Dict[str, Any] = {}
        self.expiry: Dict[str, int] = {}

    async def ping(self):
        return True

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.values:
            return None
        self.values[key] = str(value)
        if ex:
            self.expiry[key] = ex
        return True

    async def get(self, key):
        return self.values.get(key)

    async def incr(self, key):
        self.values[key] = str(int(self.values.get(key, 0)) + 1)
        return int(self.values[key])

    async def expire(self, key, seconds):
        self.expiry[key] = seconds
        return key in self.values

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.values.pop(key, None) is not None:
                removed += 1
        return removed

    async def keys(self, pattern="*"):
        return [k for k in self.values if fnmatch.fnmatch(k, pattern)]

    async def hset(self, name, key, value):
        self.values.setdefault(name, {})[key] = value
        return 1

    async def hget(self, name, key):
        return self.values.get(name, {}).get(key)

    async def hgetall(self, name):
        return dict(self.values.get(name, {}))

    async def hdel(self, name, *keys):
        bucket = self.values.get(name, {})
        return sum(1 for key in keys if bucket.pop(key, None) is not None)

    async def zremrangebyscore(self, name, minimum, maximum):
        bucket = self.values.setdefault(name, {})
        stale = [m for m, score in bucket.items() if minimum <= score <= maximum]
        for member in stale:
            del bucket[member]
        return len(stale)

    async def zcard(self, name):
        return len(self.values.get(name, {}))

    async def zadd(self, name, mapping):
        self.values.setdefault(name, {}).update(mapping)
        return len(mapping)

    async def aclose(self):
        pass


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def sku_mapping():
    """ProductVariant -> dbo.Sku mapping keyed on the variant id."""
    return MappingConfig(
        id="mapping-1",
        name="Variants to Sku",
        source_resource="ProductVariant",
        target_table="dbo.Sku",
        key_mapping=KeyMapping(source_field="id", target_column="ShopifyId"),
        mappings=[
            FieldMapping(
                id="m-sku",
                source=SingleSource(resource="ProductVariant", field="sku"),
                target=FieldTarget(table="dbo.Sku", column="Sku"),
                transform=DirectTransform(),
            ),
            FieldMapping(
                id="m-price",
                source=SingleSource(resource="ProductVariant", field="price"),
                target=FieldTarget(table="dbo.Sku", column="PriceWithTax"),
                transform=ExpressionTransform(formula="round(price * 1.13, 2)"),
            ),
        ],
    )


def column(name, type_, nullable=True, primary_key=False):
    return {"name": name, "type": type_, "nullable": nullable, "primary_key": primary_key}


@pytest.fixture
def sku_schema():
    """Target schema as returned by ``SqlConnector.introspect_schema`` for the Sku mapping."""
    return {
        "dialect": "mssql",
        "tables": [
            {
                "name": "Sku",
                "columns": [
                    column("ShopifyId", "VARCHAR(64)", nullable=False, primary_key=True),
                    column("Sku", "NVARCHAR(50)"),
                    column("PriceWithTax", "NUMERIC(10, 2)"),
                    column("Quantity", "INTEGER"),
                    column("Status", "VARCHAR(20)", nullable=False),
                    column("UpdatedAt", "DATETIME2"),
                ],
            },
            {
                "name": "Color",
                "columns": [column("Id", "INTEGER", nullable=False, primary_key=True), column("Name", "VARCHAR(50)")],
            },
        ],
    }
