"""
Ordered queries with a full-scan fallback.

An ordered multi-field query needs a compound index. Until that index exists
(fresh deployments build them asynchronously) the store rejects the query
with ``IndexNotReadyError``; we then scan the whole collection and apply the
same predicates and ordering in memory. Any other store failure propagates.
"""
import logging
from datetime import datetime
from functools import cmp_to_key
from typing import Any, Dict, List, Optional, Sequence

from pymongo import DESCENDING

from database import DocumentStore, OrderBy, Where, get_path
from errors import IndexNotReadyError
from schemas import to_datetime

logger = logging.getLogger(__name__)

NEWEST_FIRST: OrderBy = (("createdAt", DESCENDING), ("id", DESCENDING))


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_datetime(value)
    return value


def _compare(a: Any, b: Any) -> int:
    # missing values sort lowest, like the store does
    if a is None and b is None:
        return 0
    if a is None:
        return -1
    if b is None:
        return 1
    a, b = _normalize(a), _normalize(b)
    try:
        return (a > b) - (a < b)
    except TypeError:
        return (str(a) > str(b)) - (str(a) < str(b))


def sort_records(records: List[Dict[str, Any]], order: OrderBy) -> List[Dict[str, Any]]:
    def cmp(left: Dict[str, Any], right: Dict[str, Any]) -> int:
        for name, direction in order:
            result = _compare(get_path(left, name), get_path(right, name))
            if result:
                return -result if direction == DESCENDING else result
        return 0

    return sorted(records, key=cmp_to_key(cmp))


def filter_records(records: List[Dict[str, Any]], where: Sequence[Where]) -> List[Dict[str, Any]]:
    return [r for r in records if all(w.matches(r) for w in where)]


async def scan(
    store: DocumentStore,
    collection: str,
    where: Sequence[Where] = (),
    order: OrderBy = NEWEST_FIRST,
) -> List[Dict[str, Any]]:
    records = await store.query(collection)
    return sort_records(filter_records(records, where), order)


async def query_with_fallback(
    store: DocumentStore,
    collection: str,
    where: Sequence[Where],
    order: OrderBy = NEWEST_FIRST,
    index: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    try:
        return await store.query(collection, where, order, limit=limit, index=index)
    except IndexNotReadyError as exc:
        logger.warning("Index %s not ready, scanning %s instead: %s", exc.index, collection, exc)
    records = await scan(store, collection, where, order)
    return records[:limit] if limit else records
