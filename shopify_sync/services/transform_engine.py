"""Transform engine: turns fetched Shopify records into target table rows.

Each enabled field mapping reads a source value (single field or several
aliased fields), applies at most one transform and writes the result into
the target column. Per batch, lookup tables are loaded once and formulas are
compiled once; both are released when the batch ends, however it ends.
"""

import json
import logging
import math
import re
import time
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, AsyncIterable, AsyncIterator, Callable, Dict, List, Optional, Tuple

from shopify_sync.connectors.sql import quote_identifier, quote_table
from shopify_sync.core.exceptions import ExpressionError
from shopify_sync.models import (
    BatchResult,
    BatchSummary,
    DirectTransform,
    FieldMapping,
    LookupStats,
    LookupTransform,
    MappingConfig,
    MultiSource,
    TransformError,
    TransformMetrics,
    TransformResult,
    TransformStatus,
    TransformWarning,
)
from shopify_sync.services.expression import CompiledExpression, ExpressionEvaluator, to_string
from shopify_sync.utils.records import flatten_record, get_nested_value, resolve_path

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, Optional[int]], None]


# ---------------------------------------------------------------------------
# Type coercion
# ---------------------------------------------------------------------------

COERCION_TARGETS = ("string", "int", "float", "boolean", "date", "datetime", "decimal", "bigint")

_TYPE_ALIASES = {
    "string": "string", "varchar": "string", "nvarchar": "string", "char": "string",
    "nchar": "string", "text": "string", "ntext": "string",
    "int": "int", "integer": "int", "smallint": "int", "tinyint": "int",
    "bigint": "bigint",
    "float": "float", "double": "float", "real": "float", "number": "float",
    "decimal": "decimal", "numeric": "decimal", "money": "decimal",
    "boolean": "boolean", "bool": "boolean", "bit": "boolean",
    "date": "date",
    "datetime": "datetime", "datetime2": "datetime", "datetimeoffset": "datetime",
    "timestamp": "datetime", "timestamptz": "datetime",
}

_TRUE_VALUES = {"true", "1", "yes", "y", "on"}
_FALSE_VALUES = {"false", "0", "no", "n", "off", ""}
_DECIMAL_RE = re.compile(r"^-?\d+(\.\d+)?$")
_INTEGER_RE = re.compile(r"^-?\d+$")
_NUMERIC_RE = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")
_GID_TAIL_RE = re.compile(r"/(\d+)$")


def normalize_target_type(target_type: str) -> Optional[str]:
    """Map ``decimal(10,2)``, ``varchar(100)``, ``bit`` ... to a coercion target."""
    base = target_type.strip().lower().split("(", 1)[0].strip()
    return _TYPE_ALIASES.get(base)


class CoercionResult:
    """Outcome of a coercion."""

    def __init__(self, success: bool, value: Any = None, error: Optional[str] = None):
        self.success = success
        self.value = value
        self.error = error


class TypeCoercer:
    """Converts source values to the type a target column expects."""

    def coerce(self, value: Any, target: str) -> CoercionResult:
        normalized = normalize_target_type(target)
        if normalized is None:
            return CoercionResult(False, error=f"Unknown target type: {target}")
        if value is None:
            return CoercionResult(True, None)
        if normalized not in ("string", "boolean") and isinstance(value, str) and value.strip() == "":
            return CoercionResult(True, None)

        try:
            return getattr(self, f"_to_{normalized}")(value)
        except (TypeError, ValueError, OverflowError, InvalidOperation) as e:
            return CoercionResult(False, error=str(e))

    def _to_string(self, value: Any) -> CoercionResult:
        if isinstance(value, str):
            return CoercionResult(True, value)
        if isinstance(value, (dict, list)):
            return CoercionResult(True, json.dumps(value))
        if isinstance(value, datetime):
            return CoercionResult(True, _iso_utc(value))
        return CoercionResult(True, to_string(value))

    def _to_int(self, value: Any) -> CoercionResult:
        if isinstance(value, bool):
            return CoercionResult(True, int(value))
        if isinstance(value, (int, float, Decimal)):
            if not _is_finite(value):
                return CoercionResult(False, error="Value is not finite")
            return CoercionResult(True, int(value))
        if isinstance(value, str):
            text = value.strip()
            if not _NUMERIC_RE.match(text):
                return CoercionResult(False, error=f'Cannot parse "{value}" as integer')
            number = float(text)
            if not _is_finite(number):
                return CoercionResult(False, error="Value is not finite")
            return CoercionResult(True, int(text) if _INTEGER_RE.match(text) else int(number))
        return CoercionResult(False, error=f"Cannot coerce {type(value).__name__} to int")

    def _to_float(self, value: Any) -> CoercionResult:
        if isinstance(value, bool):
            return CoercionResult(True, 1.0 if value else 0.0)
        if isinstance(value, (int, float, Decimal)):
            if not _is_finite(value):
                return CoercionResult(False, error="Value is not finite")
            return CoercionResult(True, float(value))
        if isinstance(value, str):
            text = value.strip()
            if not _NUMERIC_RE.match(text):
                return CoercionResult(False, error=f'Cannot parse "{value}" as float')
            number = float(text)
            if not _is_finite(number):
                return CoercionResult(False, error="Value is not finite")
            return CoercionResult(True, number)
        return CoercionResult(False, error=f"Cannot coerce {type(value).__name__} to float")

    def _to_boolean(self, value: Any) -> CoercionResult:
        if isinstance(value, bool):
            return CoercionResult(True, value)
        if isinstance(value, (int, float, Decimal)):
            return CoercionResult(True, value != 0)
        if isinstance(value, str):
            lower = value.strip().lower()
            if lower in _TRUE_VALUES:
                return CoercionResult(True, True)
            if lower in _FALSE_VALUES:
                return CoercionResult(True, False)
            return CoercionResult(False, error=f'Cannot parse "{value}" as boolean')
        return CoercionResult(False, error=f"Cannot coerce {type(value).__name__} to boolean")

    def _to_date(self, value: Any) -> CoercionResult:
        if isinstance(value, date) and not isinstance(value, datetime):
            return CoercionResult(True, value.isoformat())
        parsed = _parse_datetime(value)
        if parsed is None:
            return CoercionResult(False, error=f'Cannot parse "{value}" as date')
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc)
        return CoercionResult(True, parsed.date().isoformat())

    def _to_datetime(self, value: Any) -> CoercionResult:
        parsed = _parse_datetime(value)
        if parsed is None:
            return CoercionResult(False, error=f'Cannot parse "{value}" as datetime')
        return CoercionResult(True, _iso_utc(parsed))

    def _to_decimal(self, value: Any) -> CoercionResult:
        if isinstance(value, bool):
            return CoercionResult(False, error="Cannot coerce bool to decimal")
        if isinstance(value, (int, float, Decimal)):
            if not _is_finite(value):
                return CoercionResult(False, error="Value is not finite")
            return CoercionResult(True, to_string(value) if not isinstance(value, Decimal) else str(value))
        if isinstance(value, str):
            text = value.strip()
            if not _DECIMAL_RE.match(text):
                return CoercionResult(False, error=f'Cannot parse "{value}" as decimal')
            return CoercionResult(True, text)
        return CoercionResult(False, error=f"Cannot coerce {type(value).__name__} to decimal")

    def _to_bigint(self, value: Any) -> CoercionResult:
        if isinstance(value, bool):
            return CoercionResult(False, error="Cannot coerce bool to bigint")
        if isinstance(value, int):
            return CoercionResult(True, str(value))
        if isinstance(value, (float, Decimal)):
            if not _is_finite(value) or value != int(value):
                return CoercionResult(False, error="Value must be a finite integer")
            return CoercionResult(True, str(int(value)))
        if isinstance(value, str):
            text = value.strip()
            gid = _GID_TAIL_RE.search(text)
            if gid:
                return CoercionResult(True, gid.group(1))
            if not _INTEGER_RE.match(text):
                return CoercionResult(False, error=f'Cannot parse "{value}" as bigint')
            return CoercionResult(True, text)
        return CoercionResult(False, error=f"Cannot coerce {type(value).__name__} to bigint")


def _is_finite(value: Any) -> bool:
    if isinstance(value, Decimal):
        return value.is_finite()
    if isinstance(value, float):
        return math.isfinite(value)
    return True


def _parse_datetime(value: Any) -> Optional[datetime]:
    """datetime from a datetime/date, ISO string or epoch milliseconds."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            return datetime.fromisoformat(text)
        except ValueError:
            return None
    return None


def _iso_utc(value: datetime) -> str:
    """ISO 8601 in UTC with milliseconds and a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

class TemplateResult:
    def __init__(self, value: str, missing_vars: List[str]):
        self.value = value
        self.missing_vars = missing_vars


class TemplateEngine:
    """Replaces ``{path}`` and ``${path}`` placeholders with record values.

    Missing variables render as an empty string and are reported; null values
    render as an empty string silently.
    """

    placeholder_re = re.compile(r"\$?\{([^{}]+)\}")

    def apply(self, template: str, context: Dict[str, Any]) -> TemplateResult:
        missing: List[str] = []

        def _replace(match: "re.Match[str]") -> str:
            path = match.group(1).strip()
            found, value = resolve_path(context, path)
            if not found:
                missing.append(path)
                return ""
            return to_string(value)

        return TemplateResult(self.placeholder_re.sub(_replace, template), missing)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class LookupRequirement:
    def __init__(self, table: str, match_column: str, return_column: str):
        self.table = table
        self.match_column = match_column
        self.return_column = return_column

    @property
    def key(self) -> str:
        return lookup_key(self.table, self.match_column, self.return_column)


def lookup_key(table: str, match_column: str, return_column: str) -> str:
    return f"{table}|{match_column}|{return_column}"


class LookupCache:
    """Lookup tables loaded for one batch."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Any]] = {}
        self.stats = LookupStats()


class LookupResolver:
    """Loads lookup tables once per batch and resolves values from memory."""

    def __init__(self, connector, max_table_size: int = 10000, case_sensitive: bool = False):
        self.connector = connector
        self.max_table_size = max_table_size
        self.case_sensitive = case_sensitive

    def extract_requirements(self, config: MappingConfig) -> List[LookupRequirement]:
        requirements: Dict[str, LookupRequirement] = {}
        for mapping in config.mappings:
            transform = mapping.transform
            if mapping.enabled and isinstance(transform, LookupTransform):
                req = LookupRequirement(transform.table, transform.match_column, transform.return_column)
                requirements.setdefault(req.key, req)
        return list(requirements.values())

    def _normalize(self, value: Any) -> str:
        key = to_string(value)
        return key if self.case_sensitive else key.lower()

    async def preload(self, requirements: List[LookupRequirement]) -> LookupCache:
        cache = LookupCache()
        if not requirements:
            return cache

        start = time.perf_counter()
        dialect = self.connector.dialect
        for req in requirements:
            table = quote_table(req.table, dialect)
            try:
                count_rows = await self.connector.query(f"SELECT COUNT(*) AS cnt FROM {table}")
                row_count = int(count_rows[0]["cnt"]) if count_rows else 0
                if row_count > self.max_table_size:
                    message = f"Lookup table {req.table} has {row_count} rows (limit: {self.max_table_size})."
                    cache.stats.warnings.append(message)
                    logger.warning(message)

                rows = await self.connector.query(
                    f"SELECT {quote_identifier(req.match_column, dialect)} AS match_value, "
                    f"{quote_identifier(req.return_column, dialect)} AS return_value FROM {table}"
                )
                data: Dict[str, Any] = {}
                for row in rows:
                    if row["match_value"] is not None:
                        data[self._normalize(row["match_value"])] = row["return_value"]

                cache.tables[req.key] = data
                cache.stats.total_rows += len(rows)
            except Exception as e:
                message = f"Failed to load lookup table {req.table}: {e}"
                cache.stats.warnings.append(message)
                logger.error(message)

        cache.stats.tables_loaded = len(cache.tables)
        cache.stats.load_time_ms = (time.perf_counter() - start) * 1000
        logger.debug(
            f"Loaded {cache.stats.tables_loaded} lookup tables ({cache.stats.total_rows} rows)"
        )
        return cache

    def resolve(self, cache: LookupCache, transform: LookupTransform, value: Any) -> Tuple[bool, Any]:
        """Return ``(found, value)``; misses fall back to the configured default."""
        table = cache.tables.get(lookup_key(transform.table, transform.match_column, transform.return_column))
        if table is None or value is None:
            return False, transform.default_value
        key = self._normalize(value)
        if key not in table:
            return False, transform.default_value
        return True, table[key]

    def clear(self, cache: LookupCache) -> None:
        for data in cache.tables.values():
            data.clear()
        cache.tables.clear()


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class _Applied:
    def __init__(self, value: Any, applied: str, error: Optional[str] = None, warning: Optional[str] = None):
        self.value = value
        self.applied = applied
        self.error = error
        self.warning = warning


class TransformEngine:
    """Applies a mapping configuration to records."""

    def __init__(
        self,
        connector,
        evaluator: Optional[ExpressionEvaluator] = None,
        lookup_resolver: Optional[LookupResolver] = None,
        coercer: Optional[TypeCoercer] = None,
        template_engine: Optional[TemplateEngine] = None,
    ):
        self.evaluator = evaluator or ExpressionEvaluator()
        self.lookup_resolver = lookup_resolver or LookupResolver(connector)
        self.coercer = coercer or TypeCoercer()
        self.template_engine = template_engine or TemplateEngine()

    def precompile_expressions(self, config: MappingConfig) -> Dict[str, CompiledExpression]:
        compiled: Dict[str, CompiledExpression] = {}
        for mapping in config.mappings:
            if mapping.enabled and mapping.transform is not None and mapping.transform.type == "expression":
                try:
                    compiled[mapping.id] = self.evaluator.compile(mapping.transform.formula)
                except ExpressionError as e:
                    # Recompiled per record so every row reports the error
                    logger.warning(f"Failed to pre-compile expression for mapping {mapping.id}: {e}")
        return compiled

    async def transform_batch(
        self,
        config: MappingConfig,
        records: List[Dict[str, Any]],
        dry_run: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchResult:
        """Transform a list of records with shared lookups and compiled formulas."""
        start = time.perf_counter()
        cache = LookupCache()
        compiled: Dict[str, CompiledExpression] = {}
        results: List[TransformResult] = []
        summary = BatchSummary(total=len(records))
        try:
            cache = await self.lookup_resolver.preload(self.lookup_resolver.extract_requirements(config))
            compiled = self.precompile_expressions(config)
            for index, record in enumerate(records):
                result = self.transform_record(record, config, cache, compiled)
                results.append(result)
                if result.status == TransformStatus.SUCCESS:
                    summary.successful += 1
                elif result.status == TransformStatus.PARTIAL:
                    summary.partial += 1
                else:
                    summary.failed += 1
                if on_progress:
                    on_progress(index + 1, len(records))
        finally:
            lookup_stats = cache.stats
            self.lookup_resolver.clear(cache)
            compiled.clear()

        summary.total_time_ms = (time.perf_counter() - start) * 1000
        summary.avg_time_per_record_ms = summary.total_time_ms / len(records) if records else 0
        if dry_run:
            logger.debug(f"Dry run transform of {len(records)} records for mapping {config.id}")
        return BatchResult(results=results, summary=summary, lookup_stats=lookup_stats)

    async def transform_batch_stream(
        self,
        config: MappingConfig,
        records: AsyncIterable[Dict[str, Any]],
        dry_run: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AsyncIterator[TransformResult]:
        """Lazily transform records from an async source."""
        cache = LookupCache()
        compiled: Dict[str, CompiledExpression] = {}
        processed = 0
        try:
            cache = await self.lookup_resolver.preload(self.lookup_resolver.extract_requirements(config))
            compiled = self.precompile_expressions(config)
            async for record in records:
                result = self.transform_record(record, config, cache, compiled)
                processed += 1
                if on_progress:
                    on_progress(processed, None)
                yield result
        finally:
            self.lookup_resolver.clear(cache)
            compiled.clear()

    def transform_record(
        self,
        record: Dict[str, Any],
        config: MappingConfig,
        cache: LookupCache,
        compiled: Dict[str, CompiledExpression],
    ) -> TransformResult:
        start = time.perf_counter()
        target_row: Dict[str, Any] = {}
        applied_transforms: List[str] = []
        errors: List[TransformError] = []
        warnings: List[TransformWarning] = []
        metrics = TransformMetrics()
        flat_record: Optional[Dict[str, Any]] = None

        for mapping in config.mappings:
            if not mapping.enabled:
                continue

            column = mapping.target.column
            transform = mapping.transform or DirectTransform()
            value: Any = None
            try:
                value, aliases = self._source_value(mapping, record)

                if transform.type in ("expression", "template"):
                    if flat_record is None:
                        flat_record = flatten_record(record)
                    context = {**flat_record, **aliases}
                else:
                    context = {}

                outcome = self._apply(mapping, transform, value, context, cache, compiled)
            except Exception as e:
                logger.exception(f"Unexpected error transforming column {column}")
                outcome = _Applied(None, transform.type, error=str(e))

            if transform.type == "lookup":
                metrics.lookups_performed += 1
            elif transform.type == "expression":
                metrics.expressions_evaluated += 1

            if outcome.error:
                errors.append(TransformError(
                    field=column,
                    transform=transform.type,
                    message=outcome.error,
                    source_value=value,
                ))
            else:
                target_row[column] = outcome.value
                applied_transforms.append(f"{column}: {outcome.applied}")

            if outcome.warning:
                warnings.append(TransformWarning(field=column, message=outcome.warning))

        if not errors:
            status = TransformStatus.SUCCESS
        elif target_row:
            status = TransformStatus.PARTIAL
        else:
            status = TransformStatus.ERROR

        metrics.transform_time_ms = (time.perf_counter() - start) * 1000
        source_id = record.get("id")
        return TransformResult(
            source_id=str(source_id) if source_id is not None else None,
            status=status,
            target_row=target_row,
            applied_transforms=applied_transforms,
            errors=errors,
            warnings=warnings,
            metrics=metrics,
        )

    def _source_value(self, mapping: FieldMapping, record: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
        source = mapping.source
        if not isinstance(source, MultiSource):
            return get_nested_value(record, source.field), {}

        aliases: Dict[str, Any] = {}
        primary: Any = None
        for index, field in enumerate(source.fields):
            value = get_nested_value(record, field.field)
            aliases[field.alias] = value
            if index == 0:
                primary = value
        return primary, aliases

    def _apply(
        self,
        mapping: FieldMapping,
        transform,
        value: Any,
        context: Dict[str, Any],
        cache: LookupCache,
        compiled: Dict[str, CompiledExpression],
    ) -> _Applied:
        if transform.type == "direct":
            return _Applied(value, "direct")

        if transform.type == "coerce":
            result = self.coercer.coerce(value, transform.target_type)
            if not result.success:
                return _Applied(None, "coerce", error=result.error)
            return _Applied(result.value, f"coerce({transform.target_type})")

        if transform.type == "expression":
            expression = compiled.get(mapping.id)
            if expression is not None:
                result = self.evaluator.evaluate(expression, context)
            else:
                result = self.evaluator.evaluate_formula(transform.formula, context)
            if not result.success:
                return _Applied(None, "expression", error=result.error)
            return _Applied(result.value, f"expression({transform.formula})")

        if transform.type == "lookup":
            found, resolved = self.lookup_resolver.resolve(cache, transform, value)
            warning = None
            if not found and not transform.has_default:
                warning = f"Lookup not found for value: {to_string(value)}"
            return _Applied(
                resolved,
                f"lookup({transform.table}.{transform.return_column})",
                warning=warning,
            )

        if transform.type == "template":
            result = self.template_engine.apply(transform.template, context)
            warning = None
            if result.missing_vars:
                warning = f"Missing template variables: {', '.join(result.missing_vars)}"
            return _Applied(result.value, f"template({transform.template})", warning=warning)

        if transform.type == "default":
            if value is None or not transform.only_if_null:
                return _Applied(transform.value, f"default({to_string(transform.value)})")
            return _Applied(value, "default (not applied)")

        return _Applied(value, "unknown", error=f"Unknown transform type: {transform.type}")
