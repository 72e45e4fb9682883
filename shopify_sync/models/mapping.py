"""Mapping configuration models."""

from datetime import datetime
from typing import Optional, Any, List, Union, Literal, Annotated
from pydantic import BaseModel, Field
from enum import Enum


class SourceField(BaseModel):
    """One field of a multi-source mapping."""
    resource: str
    field: str
    alias: str


class SingleSource(BaseModel):
    """Value read from one field, e.g. ``sku`` or ``metafields.custom.price``."""
    type: Literal["single"] = "single"
    resource: str
    field: str


class MultiSource(BaseModel):
    """Several fields exposed to expressions/templates under their aliases."""
    type: Literal["multi"] = "multi"
    fields: List[SourceField]


FieldSource = Annotated[Union[SingleSource, MultiSource], Field(discriminator="type")]


class DirectTransform(BaseModel):
    type: Literal["direct"] = "direct"


class CoerceTransform(BaseModel):
    type: Literal["coerce"] = "coerce"
    target_type: str  # "int", "decimal(10,2)", "varchar(100)", "datetime"


class ExpressionTransform(BaseModel):
    type: Literal["expression"] = "expression"
    formula: str  # "price * 1.13" or "firstName + ' ' + lastName"


class LookupTransform(BaseModel):
    type: Literal["lookup"] = "lookup"
    table: str
    match_column: str
    return_column: str
    default_value: Any = None

    @property
    def has_default(self) -> bool:
        """True when a default was configured, even an explicit null."""
        return "default_value" in self.model_fields_set


class TemplateTransform(BaseModel):
    type: Literal["template"] = "template"
    template: str  # "SKU-{sku}-{color}"


class DefaultTransform(BaseModel):
    type: Literal["default"] = "default"
    value: Any = None
    only_if_null: bool = True


Transform = Annotated[
    Union[
        DirectTransform,
        CoerceTransform,
        ExpressionTransform,
        LookupTransform,
        TemplateTransform,
        DefaultTransform,
    ],
    Field(discriminator="type"),
]


class FieldTarget(BaseModel):
    table: str  # "dbo.Sku" or "Sku"
    column: str


class FieldMapping(BaseModel):
    """A single source-to-target connection."""
    id: str
    source: FieldSource
    target: FieldTarget
    transform: Optional[Transform] = None
    enabled: bool = True


class FilterOperator(str, Enum):
    """Pre-transform filter operators."""
    EQ = "eq"
    NEQ = "neq"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"
    GT = "gt"
    LT = "lt"
    GTE = "gte"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    REGEX = "regex"


class MappingFilter(BaseModel):
    field: str
    operator: FilterOperator
    value: Any = None


class KeyMapping(BaseModel):
    source_field: str
    target_column: str


class DeleteStrategy(str, Enum):
    """How delete webhooks are applied."""
    HARD = "hard"
    SOFT = "soft"
    IGNORE = "ignore"


class ScheduleType(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class ScheduleOptions(BaseModel):
    lookback_minutes: Optional[int] = None
    delete_stale: bool = False


class ScheduleConfig(BaseModel):
    """Automatic sync schedule for a mapping."""
    enabled: bool = True
    type: ScheduleType
    pattern: str  # "*/15 * * * *"
    timezone: str = "UTC"
    options: ScheduleOptions = Field(default_factory=ScheduleOptions)


class MappingConfig(BaseModel):
    """A named collection of field mappings for one target table."""
    id: str = Field(alias="_id")
    name: str
    description: Optional[str] = None

    source_resource: str  # "ProductVariant", "Product", ...
    target_table: str  # "dbo.Sku"

    key_mapping: Optional[KeyMapping] = None
    filters: List[MappingFilter] = Field(default_factory=list)
    mappings: List[FieldMapping] = Field(default_factory=list)

    # Webhooks
    webhook_enabled: bool = True
    delete_strategy: DeleteStrategy = DeleteStrategy.HARD
    soft_delete_column: Optional[str] = None

    schedule: Optional[ScheduleConfig] = None

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        populate_by_name = True
        json_encoders = {
            datetime: lambda v: v.isoformat()
        }

    @property
    def enabled_mappings(self) -> List[FieldMapping]:
        return [m for m in self.mappings if m.enabled]
