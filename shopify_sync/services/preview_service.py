"""Mapping preview: run a few live records through a mapping without writing."""

import logging
from typing import Optional, Union

from shopify_sync.core.exceptions import MappingNotFoundError
from shopify_sync.models import MappingConfig, PreviewResult, PreviewRow
from shopify_sync.services.filters import passes_filters
from shopify_sync.services.sync_engine import get_required_fields

logger = logging.getLogger(__name__)


class PreviewService:
    def __init__(self, fetcher, transform_engine, mappings, validator=None):
        self.fetcher = fetcher
        self.transform_engine = transform_engine
        self.mappings = mappings
        self.validator = validator

    async def preview(self, mapping: Union[str, MappingConfig], limit: int = 10) -> PreviewResult:
        """Transform up to ``limit`` sample records.

        Accepts a saved mapping id or an unsaved ``MappingConfig`` so a
        mapping can be checked before it is stored. With a validator the
        result also carries the schema validation.
        """
        config = await self._resolve(mapping)
        validation = await self.validator.validate(config) if self.validator is not None else None
        records = await self.fetcher.fetch_sample(config.source_resource, get_required_fields(config), limit)
        passed = [record for record in records if passes_filters(record, config.filters)]

        batch = await self.transform_engine.transform_batch(config, passed, dry_run=True)

        rows = [
            PreviewRow(
                source_id=result.source_id,
                source=record,
                target_row=result.target_row,
                status=result.status,
                applied_transforms=result.applied_transforms,
                errors=[f"{e.field}: {e.message}" for e in result.errors],
                warnings=[f"{w.field}: {w.message}" for w in result.warnings],
            )
            for record, result in zip(passed, batch.results)
        ]

        logger.info(
            f"Preview of mapping {config.id}: {len(records)} fetched, "
            f"{batch.summary.successful} ok, {batch.summary.failed} failed"
        )
        return PreviewResult(
            mapping_id=config.id,
            mapping_name=config.name,
            target_table=config.target_table,
            fetched=len(records),
            filtered_out=len(records) - len(passed),
            rows=rows,
            summary=batch.summary,
            lookup_warnings=batch.lookup_stats.warnings,
            validation=validation,
        )

    async def _resolve(self, mapping: Union[str, MappingConfig]) -> MappingConfig:
        if isinstance(mapping, MappingConfig):
            return mapping
        config: Optional[MappingConfig] = await self.mappings.get_by_id(mapping)
        if config is None:
            raise MappingNotFoundError(mapping)
        return config
