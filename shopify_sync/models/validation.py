"""Mapping validation models."""

from typing import Optional, Any, Dict, List
from pydantic import BaseModel, Field
from enum import Enum


class ValidationErrorType(str, Enum):
    """Problems that stop a mapping from being saved."""
    TARGET_NOT_FOUND = "target_not_found"
    INVALID_EXPRESSION = "invalid_expression"
    INVALID_LOOKUP = "invalid_lookup"
    INVALID_TRANSFORM = "invalid_transform"
    MISSING_KEY_MAPPING = "missing_key_mapping"


class ValidationWarningType(str, Enum):
    TYPE_MISMATCH = "type_mismatch"
    NULLABLE_TO_NONNULL = "nullable_to_nonnull"
    PRECISION_LOSS = "precision_loss"
    STRING_TRUNCATION = "string_truncation"


class ValidationIssue(BaseModel):
    mapping_id: str
    type: str
    message: str
    details: Dict[str, str] = Field(default_factory=dict)
    suggested_transform: Optional[Dict[str, Any]] = None


class ValidationStats(BaseModel):
    total_mappings: int = 0
    enabled_mappings: int = 0
    validated_mappings: int = 0


class ValidationResult(BaseModel):
    """Outcome of checking a mapping against the target schema."""
    valid: bool = True
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    stats: ValidationStats = Field(default_factory=ValidationStats)
