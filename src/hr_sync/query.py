"""Structural query filters over stored JSON documents.

Filters follow the shape accepted by the remote state store's query API:

- ``{}`` matches every document.
- ``{"EQ": {"employee_id": "E1"}}`` matches documents whose field equals
  the value (several fields in one EQ must all match).
- ``{"IN": {"status": ["active", "on_leave"]}}`` matches any listed value.
- ``{"AND": [f1, f2, ...]}`` / ``{"OR": [f1, f2, ...]}`` combine filters.

Field names may be dotted paths into nested objects.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from hr_sync.models import QueryFilterError

Filter = Mapping[str, Any]
SortSpec = Sequence[Tuple[str, str]]

_OPERATORS = frozenset({"EQ", "IN", "AND", "OR"})
_MISSING = object()


def _normalize(value: Any) -> Any:
    """Bring a filter operand into its JSON-serialized form."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def resolve_path(document: Mapping[str, Any], path: str) -> Any:
    """Look up a dotted path; returns the module's missing sentinel when absent."""
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def validate_filter(query_filter: Filter) -> None:
    """Reject filters that are not well formed.

    Raises:
        QueryFilterError: On unknown operators or malformed operands.
    """
    if not isinstance(query_filter, Mapping):
        raise QueryFilterError(f"Filter must be a mapping, got {type(query_filter).__name__}")
    if not query_filter:
        return
    if len(query_filter) != 1:
        raise QueryFilterError(
            f"Filter must have exactly one operator, got {sorted(query_filter)}"
        )
    (op, operand), = query_filter.items()
    if op not in _OPERATORS:
        raise QueryFilterError(f"Unknown filter operator {op!r}; expected one of {sorted(_OPERATORS)}")
    if op in ("AND", "OR"):
        if not isinstance(operand, (list, tuple)) or not operand:
            raise QueryFilterError(f"{op} requires a non-empty list of filters")
        for sub in operand:
            if not sub:
                raise QueryFilterError(f"{op} operands must be non-empty filters")
            validate_filter(sub)
        return
    if not isinstance(operand, Mapping) or not operand:
        raise QueryFilterError(f"{op} requires a non-empty mapping of field -> value")
    for field, value in operand.items():
        if not isinstance(field, str) or not field:
            raise QueryFilterError(f"{op} field names must be non-empty strings")
        if op == "IN" and not isinstance(value, (list, tuple, set, frozenset)):
            raise QueryFilterError(f"IN operand for {field!r} must be a list")


def matches(document: Mapping[str, Any], query_filter: Filter) -> bool:
    """Evaluate a (validated) filter against one document."""
    if not query_filter:
        return True
    (op, operand), = query_filter.items()
    if op == "AND":
        return all(matches(document, sub) for sub in operand)
    if op == "OR":
        return any(matches(document, sub) for sub in operand)
    if op == "EQ":
        return all(
            resolve_path(document, field) == _normalize(value)
            for field, value in operand.items()
        )
    # IN
    for field, values in operand.items():
        actual = resolve_path(document, field)
        if actual is _MISSING or actual not in [_normalize(v) for v in values]:
            return False
    return True


def _sort_key(document: Mapping[str, Any], field: str) -> Tuple[int, Any]:
    value = resolve_path(document, field)
    if value is _MISSING or value is None:
        return (0, "")
    return (1, value)


def apply_sort(
    documents: List[Dict[str, Any]], sort: Optional[SortSpec]
) -> List[Dict[str, Any]]:
    """Stable multi-key sort; keys are applied last-to-first."""
    if not sort:
        return documents
    result = list(documents)
    for field, order in reversed(list(sort)):
        if order not in ("ASC", "DESC"):
            raise QueryFilterError(f"Sort order must be 'ASC' or 'DESC', got {order!r}")
        result.sort(key=lambda d: _sort_key(d, field), reverse=(order == "DESC"))
    return result
