"""
List/Search composition engine.

Backend-agnostic filtering, ranking and pagination over a candidate set.
Every adapter routes list() and search() through here, which is what keeps
filter and ranking semantics identical across backends:

1. type filter (set membership)
2. prefix filter on id
3. where: (path, expected) equality predicates over data, all must match
4. scoring (search only), zero-score candidates dropped
5. stable sort by the requested key, id as final tiebreak
6. slice [offset, offset + limit)
7. total (pre-slice) and has_more
"""

import json
from collections.abc import Iterable
from typing import Any

from docstore.core.types import (
    DocumentRecord,
    ListFilter,
    ListResult,
    ScoredRecord,
    SearchQuery,
    SearchResult,
)

CONTENT_WEIGHT = 1.0
FIELD_WEIGHT = 2.0
TITLE_WEIGHT = 3.0
TITLE_FIELDS = frozenset({"title", "name", "headline", "label"})

_MISSING = object()


# ============================================
# Predicates
# ============================================

def resolve_path(data: dict[str, Any], path: str) -> Any:
    """
    Resolve a dotted path ("author.name", "tags.0") inside a data payload.

    Returns the _MISSING sentinel when any segment is absent.
    """
    current: Any = data
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return _MISSING
            current = current[segment]
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def normalize_where(where: dict[str, Any] | None) -> list[tuple[str, Any]]:
    """Flatten a where mapping into a sorted list of (path, expected) predicates."""
    if not where:
        return []
    return sorted(where.items(), key=lambda item: item[0])


def matches_where(record: DocumentRecord, predicates: list[tuple[str, Any]]) -> bool:
    for path, expected in predicates:
        value = resolve_path(record.data, path)
        if value is _MISSING or value != expected:
            return False
        # Guard against True == 1 style cross-type equality
        if isinstance(value, bool) != isinstance(expected, bool):
            return False
    return True


def normalize_types(type_filter: str | list[str] | None) -> set[str] | None:
    if type_filter is None:
        return None
    if isinstance(type_filter, str):
        return {type_filter}
    return set(type_filter)


def filter_candidates(
    candidates: Iterable[DocumentRecord],
    type_filter: str | list[str] | None = None,
    prefix: str | None = None,
    where: dict[str, Any] | None = None,
) -> list[DocumentRecord]:
    """Apply the type, prefix and where filters, preserving candidate order."""
    types = normalize_types(type_filter)
    predicates = normalize_where(where)

    results = []
    for record in candidates:
        if not record.is_live:
            continue
        if types is not None and record.type not in types:
            continue
        if prefix and not record.id.startswith(prefix):
            continue
        if predicates and not matches_where(record, predicates):
            continue
        results.append(record)
    return results


# ============================================
# Scoring
# ============================================

def tokenize(query: str) -> list[str]:
    """Split a query into lowercase terms, dropping duplicates."""
    seen: dict[str, None] = {}
    for term in query.lower().split():
        seen.setdefault(term, None)
    return list(seen)


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, default=str)


def score_record(record: DocumentRecord, terms: list[str], fields: list[str] | None = None) -> float:
    """
    Weighted term frequency of the query terms in a record.

    Each case-insensitive occurrence counts CONTENT_WEIGHT in the body,
    FIELD_WEIGHT in a searched data field and TITLE_WEIGHT in a title-like
    data field.
    """
    if not terms:
        return 0.0

    field_names = fields if fields is not None else list(record.data.keys())
    content = record.content.lower()

    score = 0.0
    for term in terms:
        score += content.count(term) * CONTENT_WEIGHT
        for name in field_names:
            if name == "content":
                continue
            value = resolve_path(record.data, name)
            if value is _MISSING or value is None:
                continue
            weight = TITLE_WEIGHT if name.rsplit(".", 1)[-1] in TITLE_FIELDS else FIELD_WEIGHT
            score += _as_text(value).lower().count(term) * weight
    return score


# ============================================
# Sorting & pagination
# ============================================

def _sort_value(record: DocumentRecord, sort_by: str) -> Any:
    if sort_by == "id":
        return record.id
    return resolve_path(record.data, sort_by)


def _rank(value: Any) -> tuple[int, Any]:
    """Comparable key across mixed value types: numbers, then strings, then the rest."""
    if isinstance(value, bool):
        return (2, _as_text(value))
    if isinstance(value, (int, float)):
        return (0, value)
    if isinstance(value, str):
        return (1, value)
    return (2, _as_text(value))


def sort_records(
    records: list[DocumentRecord],
    sort_by: str | None,
    sort_order: str = "asc",
) -> list[DocumentRecord]:
    """
    Stable sort by sort_by with id as final tiebreak.

    Records missing the sort key are placed last in either direction.
    With no sort_by the backend's insertion order is kept.
    """
    if not sort_by:
        return list(records)

    by_id = sorted(records, key=lambda r: r.id)
    present = [r for r in by_id if _sort_value(r, sort_by) not in (_MISSING, None)]
    missing = [r for r in by_id if _sort_value(r, sort_by) in (_MISSING, None)]

    present.sort(key=lambda r: _rank(_sort_value(r, sort_by)), reverse=(sort_order == "desc"))
    return present + missing


def paginate(records: list, offset: int, limit: int) -> tuple[list, int, bool]:
    total = len(records)
    page = records[offset:offset + limit]
    return page, total, (offset + limit) < total


# ============================================
# Entry points
# ============================================

def apply_list(candidates: Iterable[DocumentRecord], flt: ListFilter | None = None) -> ListResult:
    """Run the list pipeline over candidates in backend insertion order."""
    flt = flt or ListFilter()
    filtered = filter_candidates(candidates, flt.type, flt.prefix, flt.where)
    ordered = sort_records(filtered, flt.sort_by, flt.sort_order)
    page, total, has_more = paginate(ordered, flt.offset, flt.limit)
    return ListResult(documents=page, total=total, has_more=has_more)


def apply_search(candidates: Iterable[DocumentRecord], query: SearchQuery) -> SearchResult:
    """Run the search pipeline: filter, score, rank by score desc then id asc."""
    terms = tokenize(query.query)
    filtered = filter_candidates(candidates, query.type, query.prefix, query.where)

    scored: list[ScoredRecord] = []
    for record in filtered:
        score = score_record(record, terms, query.fields)
        if score > 0:
            scored.append(ScoredRecord(**record.model_dump(), score=score))

    scored.sort(key=lambda r: (-r.score, r.id))
    page, total, has_more = paginate(scored, query.offset, query.limit)
    return SearchResult(documents=page, total=total, has_more=has_more)
