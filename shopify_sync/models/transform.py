"""Transform result models."""

from typing import Optional, Any, Dict, List
from pydantic import BaseModel, Field
from enum import Enum

from .validation import ValidationResult


class TransformStatus(str, Enum):
    SUCCESS = "success"  # no errors
    PARTIAL = "partial"  # some columns failed, row has data
    ERROR = "error"  # nothing usable


class TransformError(BaseModel):
    field: str
    transform: str
    message: str
    source_value: Any = None


class TransformWarning(BaseModel):
    field: str
    message: str


class TransformMetrics(BaseModel):
    transform_time_ms: float = 0
    lookups_performed: int = 0
    expressions_evaluated: int = 0


class TransformResult(BaseModel):
    """One transformed record."""
    source_id: Optional[str] = None
    status: TransformStatus
    target_row: Dict[str, Any] = Field(default_factory=dict)
    applied_transforms: List[str] = Field(default_factory=list)
    errors: List[TransformError] = Field(default_factory=list)
    warnings: List[TransformWarning] = Field(default_factory=list)
    metrics: TransformMetrics = Field(default_factory=TransformMetrics)


class LookupStats(BaseModel):
    tables_loaded: int = 0
    total_rows: int = 0
    load_time_ms: float = 0
    warnings: List[str] = Field(default_factory=list)


class BatchSummary(BaseModel):
    total: int = 0
    successful: int = 0
    partial: int = 0
    failed: int = 0
    total_time_ms: float = 0
    avg_time_per_record_ms: float = 0


class BatchResult(BaseModel):
    results: List[TransformResult] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    lookup_stats: LookupStats = Field(default_factory=LookupStats)


class PreviewRow(BaseModel):
    """Source record next to the row it would produce."""
    source_id: Optional[str] = None
    source: Dict[str, Any] = Field(default_factory=dict)
    target_row: Dict[str, Any] = Field(default_factory=dict)
    status: TransformStatus
    applied_transforms: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class PreviewResult(BaseModel):
    mapping_id: str
    mapping_name: Optional[str] = None
    target_table: str
    fetched: int = 0
    filtered_out: int = 0
    rows: List[PreviewRow] = Field(default_factory=list)
    summary: BatchSummary = Field(default_factory=BatchSummary)
    lookup_warnings: List[str] = Field(default_factory=list)
    validation: Optional[ValidationResult] = None


class DeltaResult(BaseModel):
    """Key level comparison between Shopify and the target table."""
    mapping_id: str
    mapping_name: Optional[str] = None
    shopify_count: int = 0
    database_count: int = 0
    missing_in_database: int = 0
    missing_in_shopify: int = 0
    in_sync: int = 0
    sample_missing_in_database: List[str] = Field(default_factory=list)
    sample_missing_in_shopify: List[str] = Field(default_factory=list)
    truncated: bool = False
    duration_ms: int = 0
