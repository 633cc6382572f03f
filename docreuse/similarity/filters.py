"""
Metadata filter language shared by every index query.

Accepted forms, per field:
    {"lang": "en"}                      equality
    {"lang": ["en", "de"]}              membership
    {"lang": {"$ne": "fr"}}             operators: $eq, $ne, $in, $nin

Values that are None, blank strings or empty lists are dropped. Filters are
normalised to ``{field: {operator: operand}}`` before translation to Qdrant.
"""

from typing import Any, Dict, Iterable, Optional

from qdrant_client.models import FieldCondition, Filter, MatchAny, MatchValue

from docreuse.shared.observability import get_logger

logger = get_logger(__name__)

OPERATORS = ("$eq", "$ne", "$in", "$nin")

CanonicalFilter = Dict[str, Dict[str, Any]]


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def _as_list(value: Any) -> list:
    if isinstance(value, (list, tuple, set, frozenset)):
        return [v for v in value if not _is_empty(v)]
    return [value]


def normalize_filters(
    filters: Optional[Dict[str, Any]], reserved: Iterable[str] = ()
) -> CanonicalFilter:
    """
    Normalise caller filters to canonical operator form.

    Args:
        filters: Raw filter mapping
        reserved: Field names controlled by the pipeline; caller values are ignored

    Raises:
        ValueError: On an unknown operator or a non-string field name
    """
    reserved = set(reserved)
    canonical: CanonicalFilter = {}

    for key, value in (filters or {}).items():
        if not isinstance(key, str) or not key:
            raise ValueError(f"Filter field names must be non-empty strings, got {key!r}")
        if key in reserved:
            logger.debug("Ignoring reserved filter field", field=key)
            continue
        if _is_empty(value):
            continue

        if isinstance(value, dict):
            ops: Dict[str, Any] = {}
            for op, operand in value.items():
                if op not in OPERATORS:
                    raise ValueError(
                        f"Unsupported filter operator {op!r} for field {key!r}; "
                        f"expected one of {', '.join(OPERATORS)}"
                    )
                if _is_empty(operand):
                    continue
                if op in ("$in", "$nin"):
                    operand = _as_list(operand)
                    if not operand:
                        continue
                ops[op] = operand
            if ops:
                canonical[key] = ops
        elif isinstance(value, (list, tuple, set, frozenset)):
            members = _as_list(value)
            if members:
                canonical[key] = {"$in": members}
        else:
            canonical[key] = {"$eq": value}

    return canonical


def to_qdrant_filter(filters: CanonicalFilter) -> Optional[Filter]:
    """Translate a canonical filter to a Qdrant ``Filter`` (None when empty)."""
    must = []
    must_not = []

    for key, ops in filters.items():
        for op, operand in ops.items():
            if op == "$eq":
                must.append(FieldCondition(key=key, match=MatchValue(value=operand)))
            elif op == "$ne":
                must_not.append(FieldCondition(key=key, match=MatchValue(value=operand)))
            elif op == "$in":
                must.append(FieldCondition(key=key, match=MatchAny(any=list(operand))))
            elif op == "$nin":
                must_not.append(
                    FieldCondition(key=key, match=MatchAny(any=list(operand)))
                )

    if not must and not must_not:
        return None
    return Filter(must=must or None, must_not=must_not or None)
