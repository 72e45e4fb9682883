"""Mapping configuration store."""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from shopify_sync.core.config import COLLECTIONS
from shopify_sync.core.database import Database
from shopify_sync.models import MappingConfig

logger = logging.getLogger(__name__)


class MappingService:
    """CRUD over the ``mappings`` collection.

    Stored documents are validated into ``MappingConfig``; a document that
    no longer validates is logged and left out of results.
    """

    def __init__(self, db: Database):
        self.db = db

    @property
    def collection(self):
        return self.db.get_collection(COLLECTIONS["mappings"])

    def _parse(self, doc: Dict[str, Any]) -> Optional[MappingConfig]:
        try:
            return MappingConfig(**doc)
        except ValidationError as e:
            logger.error(f"Invalid mapping document {doc.get('_id')}: {e}")
            return None

    async def _find(self, filters: Dict[str, Any]) -> List[MappingConfig]:
        mappings = []
        async for doc in self.collection.find(filters).sort("name", 1):
            config = self._parse(doc)
            if config is not None:
                mappings.append(config)
        return mappings

    async def get_all(self) -> List[MappingConfig]:
        return await self._find({})

    async def get_by_id(self, mapping_id: str) -> Optional[MappingConfig]:
        doc = await self.collection.find_one({"_id": mapping_id})
        return self._parse(doc) if doc else None

    async def get_by_source_resource(
        self,
        source_resource: str,
        webhook_enabled_only: bool = False,
    ) -> List[MappingConfig]:
        filters: Dict[str, Any] = {"source_resource": source_resource}
        if webhook_enabled_only:
            filters["webhook_enabled"] = True
        return await self._find(filters)

    async def save(self, config: MappingConfig) -> MappingConfig:
        """Insert or replace a mapping."""
        config.updated_at = datetime.utcnow()
        doc = config.model_dump(by_alias=True, mode="json")
        doc["created_at"] = config.created_at
        doc["updated_at"] = config.updated_at
        await self.collection.replace_one({"_id": config.id}, doc, upsert=True)
        logger.info(f"Saved mapping {config.id} ({config.name})")
        return config

    async def delete(self, mapping_id: str) -> bool:
        result = await self.collection.delete_one({"_id": mapping_id})
        if result.deleted_count > 0:
            logger.info(f"Deleted mapping {mapping_id}")
            return True
        return False
