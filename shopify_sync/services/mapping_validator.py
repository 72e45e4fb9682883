"""Mapping validation against the target database schema.

A mapping is checked before it is stored so that a wrong column name, a
formula that does not parse or a lookup against a missing table shows up
when the mapping is saved instead of halfway through a sync. Errors block
the save; warnings (type compatibility, nullability, truncation) are only
reported.
"""

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from shopify_sync.core.exceptions import ExpressionError
from shopify_sync.models import (
    CoerceTransform,
    ExpressionTransform,
    FieldMapping,
    LookupTransform,
    MappingConfig,
    TemplateTransform,
    ValidationErrorType,
    ValidationIssue,
    ValidationResult,
    ValidationStats,
    ValidationWarningType,
)
from shopify_sync.services.expression import ExpressionEvaluator
from shopify_sync.services.transform_engine import TemplateEngine, normalize_target_type

logger = logging.getLogger(__name__)

TableIndex = Dict[str, Dict[str, Dict[str, Any]]]

_LENGTH_RE = re.compile(r"\(\s*(\d+)\s*\)")
_INTEGER_RE = re.compile(r"int(eger)?\b")
_QUOTE_CHARS = '[]"`'

_COERCE_CATEGORIES = {
    "string": "string",
    "int": "number",
    "bigint": "number",
    "float": "number",
    "decimal": "number",
    "boolean": "boolean",
    "date": "datetime",
    "datetime": "datetime",
}


class ColumnType:
    """Broad type category used for compatibility checks."""

    def __init__(self, category: str, max_length: Optional[int] = None, integer: bool = False):
        self.category = category
        self.max_length = max_length
        self.integer = integer


def _max_length(type_name: str) -> Optional[int]:
    match = _LENGTH_RE.search(type_name)
    return int(match.group(1)) if match else None


def parse_column_type(type_name: str) -> ColumnType:
    """Categorize a database column type such as ``VARCHAR(50)`` or ``NUMERIC(10, 2)``."""
    lower = type_name.strip().lower()
    if lower in ("json", "jsonb"):
        return ColumnType("json")
    if "char" in lower or "text" in lower or "string" in lower or "clob" in lower:
        return ColumnType("string", max_length=_max_length(lower))
    if _INTEGER_RE.search(lower):
        return ColumnType("number", integer=True)
    if any(name in lower for name in ("decimal", "numeric", "money", "float", "real", "double")):
        return ColumnType("number")
    if lower in ("bit", "boolean", "bool"):
        return ColumnType("boolean")
    if "date" in lower or "time" in lower:
        return ColumnType("datetime")
    return ColumnType("unknown")


def produced_type(transform) -> Optional[ColumnType]:
    """Type a transform is known to produce; None when it depends on the data."""
    if isinstance(transform, TemplateTransform):
        return ColumnType("string")
    if isinstance(transform, CoerceTransform):
        normalized = normalize_target_type(transform.target_type)
        if normalized is None:
            return None
        return ColumnType(
            _COERCE_CATEGORIES[normalized],
            max_length=_max_length(transform.target_type) if normalized == "string" else None,
            integer=normalized in ("int", "bigint"),
        )
    return None


def check_compatibility(
    source: ColumnType, target: ColumnType
) -> Optional[Tuple[ValidationWarningType, str, Optional[Dict[str, Any]]]]:
    """Warning type, message and suggested transform, or None when compatible."""
    if source.category == target.category:
        if source.category == "string" and target.max_length and (
            not source.max_length or source.max_length > target.max_length
        ):
            return (
                ValidationWarningType.STRING_TRUNCATION,
                f"Source may exceed target max length ({target.max_length})",
                None,
            )
        if source.category == "number" and target.integer and not source.integer:
            return (
                ValidationWarningType.PRECISION_LOSS,
                "Fractional values are truncated by an integer column",
                {"type": "coerce", "target_type": "int"},
            )
        return None

    if source.category == "string" and target.category == "number":
        return (
            ValidationWarningType.TYPE_MISMATCH,
            "String to number conversion required",
            {"type": "coerce", "target_type": "int" if target.integer else "decimal"},
        )
    if source.category in ("number", "datetime", "boolean") and target.category == "string":
        return None
    if source.category == "string" and target.category == "datetime":
        return (
            ValidationWarningType.TYPE_MISMATCH,
            "String to datetime parsing required",
            {"type": "coerce", "target_type": "datetime"},
        )
    if target.category == "unknown":
        return ValidationWarningType.TYPE_MISMATCH, "Type compatibility could not be verified", None
    return (
        ValidationWarningType.TYPE_MISMATCH,
        f"Incompatible types: {source.category} to {target.category}",
        None,
    )


def _bare(name: str) -> str:
    return "".join(ch for ch in name if ch not in _QUOTE_CHARS).strip().lower()


def index_tables(schema: Dict[str, Any]) -> TableIndex:
    """Columns by lower-cased table name, reachable with and without the schema prefix."""
    tables: TableIndex = {}
    for table in schema.get("tables") or []:
        columns = {column["name"].lower(): column for column in table.get("columns") or []}
        name = table["name"].lower()
        tables[name] = columns
        if table.get("schema"):
            tables[f"{table['schema'].lower()}.{name}"] = columns
    return tables


def find_table(tables: TableIndex, name: str) -> Optional[Dict[str, Dict[str, Any]]]:
    """Match ``dbo.Sku``, ``[dbo].[Sku]`` or ``Sku`` against the index."""
    bare = _bare(name)
    if bare in tables:
        return tables[bare]
    return tables.get(bare.rsplit(".", 1)[-1])


class MappingValidator:
    """Checks mapping configurations against the live target schema."""

    def __init__(self, connector, evaluator: Optional[ExpressionEvaluator] = None):
        self.connector = connector
        self.evaluator = evaluator or ExpressionEvaluator()

    async def load_schema(self) -> Optional[Dict[str, Any]]:
        try:
            return await self.connector.introspect_schema()
        except Exception as e:
            logger.warning(f"Target schema unavailable for mapping validation: {e}")
            return None

    async def validate(self, config: MappingConfig, schema: Optional[Dict[str, Any]] = None) -> ValidationResult:
        if schema is None:
            schema = await self.load_schema()
        result = self.validate_against(config, schema)
        logger.info(
            f"Validated mapping {config.id}: {len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        return result

    def validate_against(self, config: MappingConfig, schema: Optional[Dict[str, Any]]) -> ValidationResult:
        """Validate with an already loaded schema; ``None`` means it could not be read.

        Without a schema only the checks that need no database run
        (formulas, templates, coercion types) and the result is invalid.
        """
        errors: List[ValidationIssue] = []
        warnings: List[ValidationIssue] = []
        tables = index_tables(schema) if schema is not None else None

        if tables is None:
            errors.append(ValidationIssue(
                mapping_id=config.id,
                type=ValidationErrorType.TARGET_NOT_FOUND.value,
                message="Database schema not discovered. Cannot validate target columns.",
            ))
        else:
            self._check_target_table(config, tables, errors)

        validated = 0
        for mapping in config.enabled_mappings:
            self._check_field(mapping, config, tables, errors, warnings)
            validated += 1

        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            stats=ValidationStats(
                total_mappings=len(config.mappings),
                enabled_mappings=len(config.enabled_mappings),
                validated_mappings=validated,
            ),
        )

    def _check_target_table(self, config: MappingConfig, tables: TableIndex, errors: List[ValidationIssue]):
        table = find_table(tables, config.target_table)
        if table is None:
            errors.append(ValidationIssue(
                mapping_id=config.id,
                type=ValidationErrorType.TARGET_NOT_FOUND.value,
                message=f'Target table "{config.target_table}" not found in database schema',
                details={"table": config.target_table},
            ))
            return

        if config.key_mapping is None:
            # Rows are keyed on "id" when no key mapping is configured
            if "id" not in table:
                errors.append(ValidationIssue(
                    mapping_id=config.id,
                    type=ValidationErrorType.MISSING_KEY_MAPPING.value,
                    message=f'No key mapping configured and table "{config.target_table}" has no id column',
                    details={"table": config.target_table},
                ))
        elif config.key_mapping.target_column.lower() not in table:
            errors.append(ValidationIssue(
                mapping_id=config.id,
                type=ValidationErrorType.TARGET_NOT_FOUND.value,
                message=(
                    f'Key column "{config.key_mapping.target_column}" not found in table "{config.target_table}"'
                ),
                details={"table": config.target_table, "target_column": config.key_mapping.target_column},
            ))

    def _check_field(
        self,
        mapping: FieldMapping,
        config: MappingConfig,
        tables: Optional[TableIndex],
        errors: List[ValidationIssue],
        warnings: List[ValidationIssue],
    ):
        field_errors: List[ValidationIssue] = []
        target = mapping.target
        column: Optional[Dict[str, Any]] = None

        if tables is not None:
            table = find_table(tables, target.table)
            if table is None:
                field_errors.append(ValidationIssue(
                    mapping_id=mapping.id,
                    type=ValidationErrorType.TARGET_NOT_FOUND.value,
                    message=f'Target table "{target.table}" not found',
                    details={"table": target.table},
                ))
            else:
                column = table.get(target.column.lower())
                if column is None:
                    field_errors.append(ValidationIssue(
                        mapping_id=mapping.id,
                        type=ValidationErrorType.TARGET_NOT_FOUND.value,
                        message=f'Target column "{target.column}" not found in table "{target.table}"',
                        details={"table": target.table, "target_column": target.column},
                    ))

        if mapping.transform is not None:
            field_errors.extend(self._check_transform(mapping.id, mapping.transform, tables))

        if column is not None and not field_errors:
            warnings.extend(self._column_warnings(mapping, config, column))

        errors.extend(field_errors)

    def _column_warnings(
        self, mapping: FieldMapping, config: MappingConfig, column: Dict[str, Any]
    ) -> List[ValidationIssue]:
        warnings: List[ValidationIssue] = []
        source = produced_type(mapping.transform)
        if source is not None:
            compatibility = check_compatibility(source, parse_column_type(str(column.get("type", ""))))
            if compatibility is not None:
                warning_type, message, suggested = compatibility
                warnings.append(ValidationIssue(
                    mapping_id=mapping.id,
                    type=warning_type.value,
                    message=message,
                    details={"target_column": mapping.target.column, "column_type": str(column.get("type", ""))},
                    suggested_transform=suggested,
                ))

        key_column = config.key_mapping.target_column if config.key_mapping else "id"
        transform_type = mapping.transform.type if mapping.transform is not None else "direct"
        if (
            not column.get("nullable", True)
            and transform_type != "default"
            and mapping.target.column.lower() != key_column.lower()
        ):
            warnings.append(ValidationIssue(
                mapping_id=mapping.id,
                type=ValidationWarningType.NULLABLE_TO_NONNULL.value,
                message="Target column is not nullable. Consider adding a default value transform.",
                details={"target_column": mapping.target.column},
                suggested_transform={"type": "default", "value": None, "only_if_null": True},
            ))
        return warnings

    def _check_transform(self, mapping_id: str, transform, tables: Optional[TableIndex]) -> List[ValidationIssue]:
        errors: List[ValidationIssue] = []

        if isinstance(transform, ExpressionTransform):
            try:
                self.evaluator.compile(transform.formula)
            except ExpressionError as e:
                errors.append(ValidationIssue(
                    mapping_id=mapping_id,
                    type=ValidationErrorType.INVALID_EXPRESSION.value,
                    message=f"Invalid expression formula: {transform.formula} ({e})",
                ))

        elif isinstance(transform, TemplateTransform):
            if not TemplateEngine.placeholder_re.search(transform.template):
                errors.append(ValidationIssue(
                    mapping_id=mapping_id,
                    type=ValidationErrorType.INVALID_EXPRESSION.value,
                    message="Template has no placeholders. Use {fieldName} syntax.",
                ))

        elif isinstance(transform, CoerceTransform):
            if normalize_target_type(transform.target_type) is None:
                errors.append(ValidationIssue(
                    mapping_id=mapping_id,
                    type=ValidationErrorType.INVALID_TRANSFORM.value,
                    message=f"Unknown coercion target type: {transform.target_type}",
                ))

        elif isinstance(transform, LookupTransform) and tables is not None:
            table = find_table(tables, transform.table)
            if table is None:
                errors.append(ValidationIssue(
                    mapping_id=mapping_id,
                    type=ValidationErrorType.INVALID_LOOKUP.value,
                    message=f'Lookup table "{transform.table}" not found',
                    details={"table": transform.table},
                ))
                return errors
            for role, column in (("match", transform.match_column), ("return", transform.return_column)):
                if column.lower() not in table:
                    errors.append(ValidationIssue(
                        mapping_id=mapping_id,
                        type=ValidationErrorType.INVALID_LOOKUP.value,
                        message=f'Lookup {role} column "{column}" not found in table "{transform.table}"',
                        details={"table": transform.table, "target_column": column},
                    ))

        return errors
