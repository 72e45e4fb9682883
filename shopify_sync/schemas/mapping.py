"""Mapping API schemas."""

from typing import Optional
from pydantic import BaseModel

from shopify_sync.models import MappingConfig, ValidationResult


class MappingSaveResponse(BaseModel):
    """Schema for a stored mapping and the validation it passed."""
    success: bool
    mapping: MappingConfig
    validation: Optional[ValidationResult] = None


class MappingDeleteResponse(BaseModel):
    success: bool
    message: str
    schedule_removed: bool = False
