"""Pre-transform record filters."""

import logging
import re
from typing import Any, Dict, Iterable

from shopify_sync.models import FilterOperator, MappingFilter
from shopify_sync.utils.records import get_nested_value

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return type(left) is type(right) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def evaluate_filter(record: Dict[str, Any], mapping_filter: MappingFilter) -> bool:
    """Evaluate one filter against a record."""
    value = get_nested_value(record, mapping_filter.field)
    expected = mapping_filter.value
    operator = mapping_filter.operator

    if operator == FilterOperator.EQ:
        return _strict_equals(value, expected)
    if operator == FilterOperator.NEQ:
        return not _strict_equals(value, expected)
    if operator == FilterOperator.IN:
        return isinstance(expected, list) and any(_strict_equals(value, item) for item in expected)
    if operator == FilterOperator.NOT_IN:
        return isinstance(expected, list) and not any(_strict_equals(value, item) for item in expected)
    if operator == FilterOperator.EXISTS:
        return value is not None
    if operator == FilterOperator.NOT_EXISTS:
        return value is None
    if operator in (FilterOperator.GT, FilterOperator.LT, FilterOperator.GTE, FilterOperator.LTE):
        if not (_is_number(value) and _is_number(expected)):
            return False
        if operator == FilterOperator.GT:
            return value > expected
        if operator == FilterOperator.LT:
            return value < expected
        if operator == FilterOperator.GTE:
            return value >= expected
        return value <= expected
    if operator == FilterOperator.CONTAINS:
        return isinstance(value, str) and isinstance(expected, str) and expected in value
    if operator == FilterOperator.STARTS_WITH:
        return isinstance(value, str) and isinstance(expected, str) and value.startswith(expected)
    if operator == FilterOperator.REGEX:
        if not isinstance(value, str) or not isinstance(expected, str):
            return False
        try:
            return re.search(expected, value) is not None
        except re.error:
            logger.warning(f"Invalid regex in filter on {mapping_filter.field}: {expected}")
            return False
    return True


def passes_filters(record: Dict[str, Any], filters: Iterable[MappingFilter]) -> bool:
    """True when the record passes every filter (an empty list passes)."""
    return all(evaluate_filter(record, f) for f in filters)
