"""
Document store access for the projects, tasks, invitations, users and
notifications collections.

``DocumentStore`` is the typed contract the services depend on;
``MongoDocumentStore`` implements it on top of pymongo's asyncio client.
Records come back as plain dicts with ``_id`` exposed as ``id``. Temporal
values are returned exactly as stored.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.errors import DuplicateKeyError, OperationFailure, PyMongoError

from errors import (
    DocumentNotFoundError,
    DuplicateDocumentError,
    IndexNotReadyError,
    PreconditionFailedError,
    StoreError,
)

logger = logging.getLogger(__name__)

USERS = "users"
PROJECTS = "projects"
TASKS = "tasks"
INVITATIONS = "invitations"
NOTIFICATIONS = "notifications"


class _Sentinel:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name


# Placeholders understood by every DocumentStore implementation.
SERVER_TIMESTAMP = _Sentinel("SERVER_TIMESTAMP")
DELETE_FIELD = _Sentinel("DELETE_FIELD")

OrderBy = Sequence[Tuple[str, int]]

_OPS = {"==", "!=", "<", "<=", ">", ">=", "in", "array_contains", "exists"}
_MONGO_OPS = {"==": "$eq", "!=": "$ne", "<": "$lt", "<=": "$lte", ">": "$gt", ">=": "$gte", "in": "$in"}


def get_path(record: Dict[str, Any], path: str) -> Any:
    value: Any = record
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _comparable(left: Any, right: Any) -> Tuple[Any, Any]:
    # pymongo hands back naive UTC datetimes
    if isinstance(left, datetime) and left.tzinfo is None:
        left = left.replace(tzinfo=timezone.utc)
    if isinstance(right, datetime) and right.tzinfo is None:
        right = right.replace(tzinfo=timezone.utc)
    return left, right


@dataclass(frozen=True)
class Where:
    """A single field predicate, e.g. ``Where("status", "==", "pending")``."""

    field: str
    op: str
    value: Any = None

    def __post_init__(self):
        if self.op not in _OPS:
            raise ValueError(f"unsupported operator: {self.op}")

    def matches(self, record: Dict[str, Any]) -> bool:
        actual = get_path(record, self.field)
        if self.op == "exists":
            return actual is not None
        if self.op == "array_contains":
            return isinstance(actual, list) and self.value in actual
        if self.op == "in":
            return actual in self.value
        if self.op == "==":
            return actual == self.value
        if actual is None:
            return False
        if self.op == "!=":
            return actual != self.value
        left, right = _comparable(actual, self.value)
        try:
            if self.op == "<":
                return left < right
            if self.op == "<=":
                return left <= right
            if self.op == ">":
                return left > right
            return left >= right
        except TypeError:
            return False


@dataclass(frozen=True)
class IndexSpec:
    name: str
    keys: List[Tuple[str, int]]
    unique: bool = False
    partial: Optional[Dict[str, Any]] = None


# Compound indexes the ordered queries rely on. A query naming one of these
# fails with IndexNotReadyError until the index exists.
PROJECTS_BY_MEMBER = "projects_members_wildcard"
TASKS_BY_PROJECT = "tasks_project_created"
INVITATIONS_BY_INVITEE = "invitations_invitee_status_created"
INVITATIONS_BY_PROJECT = "invitations_project_status_created"
NOTIFICATIONS_DUE = "notifications_status_next_attempt"

INDEXES: Dict[str, List[IndexSpec]] = {
    PROJECTS: [IndexSpec(PROJECTS_BY_MEMBER, [("teamMembers.$**", ASCENDING)])],
    TASKS: [IndexSpec(TASKS_BY_PROJECT, [("projectId", ASCENDING), ("createdAt", DESCENDING)])],
    INVITATIONS: [
        IndexSpec(
            INVITATIONS_BY_INVITEE,
            [("invitedTo", ASCENDING), ("status", ASCENDING), ("createdAt", DESCENDING)],
        ),
        IndexSpec(
            INVITATIONS_BY_PROJECT,
            [("projectId", ASCENDING), ("status", ASCENDING), ("createdAt", DESCENDING)],
        ),
        IndexSpec(
            "invitations_one_pending_per_invitee",
            [("projectId", ASCENDING), ("invitedTo", ASCENDING)],
            unique=True,
            partial={"status": "pending"},
        ),
    ],
    USERS: [
        IndexSpec("users_email", [("email", ASCENDING)]),
        IndexSpec("users_display_name", [("displayName", ASCENDING)]),
    ],
    NOTIFICATIONS: [
        IndexSpec(NOTIFICATIONS_DUE, [("status", ASCENDING), ("nextAttemptAt", ASCENDING)]),
    ],
}


def new_id() -> str:
    return str(ObjectId())


class DocumentStore(ABC):
    """Per-collection CRUD with server-assigned ``createdAt``/``updatedAt``."""

    @abstractmethod
    async def insert(self, collection: str, doc: Dict[str, Any], id: Optional[str] = None) -> str:
        """Insert ``doc``. An explicit ``id`` that already exists is left untouched."""

    @abstractmethod
    async def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    async def query(
        self,
        collection: str,
        where: Sequence[Where] = (),
        order: OrderBy = (),
        limit: Optional[int] = None,
        index: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    @abstractmethod
    async def count(self, collection: str, where: Sequence[Where] = ()) -> int:
        ...

    @abstractmethod
    async def update(
        self,
        collection: str,
        id: str,
        partial: Dict[str, Any],
        preconditions: Sequence[Where] = (),
    ) -> None:
        """Merge ``partial`` (dotted paths allowed) into an existing document."""

    @abstractmethod
    async def delete(self, collection: str, id: str) -> None:
        ...

    async def ensure_indexes(self) -> None:
        return None

    async def index_status(self) -> Dict[str, bool]:
        return {}

    async def ping(self) -> List[str]:
        return []

    async def close(self) -> None:
        return None


# -----------------------------
# MongoDB implementation
# -----------------------------

def to_mongo_filter(where: Sequence[Where]) -> Dict[str, Any]:
    filt: Dict[str, Any] = {}
    for w in where:
        path = "_id" if w.field == "id" else w.field
        clause = filt.setdefault(path, {})
        if w.op == "exists":
            clause.update({"$exists": True, "$ne": None})
        elif w.op == "array_contains":
            clause["$elemMatch"] = {"$eq": w.value}
        elif w.op == "!=":
            clause.update({"$exists": True, "$ne": w.value})
        else:
            clause[_MONGO_OPS[w.op]] = list(w.value) if w.op == "in" else w.value
    return filt


def _mongo_sort(order: OrderBy) -> List[Tuple[str, int]]:
    return [("_id" if name == "id" else name, direction) for name, direction in order]


def _expression(value: Any) -> Any:
    """Aggregation expression building ``value`` literally, with $$NOW for timestamps."""
    if value is SERVER_TIMESTAMP:
        return "$$NOW"
    if isinstance(value, dict):
        return {k: _expression(v) for k, v in value.items()}
    return {"$literal": value}


def _flatten(path: str, value: Any, out: Dict[str, Any]) -> None:
    # Sub-documents carrying a server timestamp are written leaf by leaf so the
    # timestamp can go through $currentDate.
    if isinstance(value, dict) and _has_sentinel(value):
        for k, v in value.items():
            _flatten(f"{path}.{k}", v, out)
    else:
        out[path] = value


def _has_sentinel(value: Any) -> bool:
    if value is SERVER_TIMESTAMP:
        return True
    if isinstance(value, dict):
        return any(_has_sentinel(v) for v in value.values())
    return False


def _to_record(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    return d


def build_insert(doc_id: str, doc: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Upsert pipeline that writes ``doc`` only when no document has ``doc_id`` yet."""
    body = {**doc, "_id": doc_id, "createdAt": SERVER_TIMESTAMP, "updatedAt": SERVER_TIMESTAMP}
    return [
        {
            "$replaceWith": {
                "$cond": {
                    "if": {"$eq": [{"$type": "$createdAt"}, "missing"]},
                    "then": _expression(body),
                    "else": "$$ROOT",
                }
            }
        }
    ]


def build_update(partial: Dict[str, Any]) -> Dict[str, Any]:
    """Split ``partial`` into $set, $unset and $currentDate by the sentinels it carries."""
    to_set: Dict[str, Any] = {}
    to_unset: Dict[str, str] = {}
    now_paths: Dict[str, bool] = {"updatedAt": True}
    flat: Dict[str, Any] = {}
    for path, value in partial.items():
        _flatten(path, value, flat)
    for path, value in flat.items():
        if value is DELETE_FIELD:
            to_unset[path] = ""
        elif value is SERVER_TIMESTAMP:
            now_paths[path] = True
        else:
            to_set[path] = value
    update: Dict[str, Any] = {"$currentDate": now_paths}
    if to_set:
        update["$set"] = to_set
    if to_unset:
        update["$unset"] = to_unset
    return update


def _is_missing_index(exc: OperationFailure) -> bool:
    message = str(exc).lower()
    return exc.code == 2 and "hint" in message


class MongoDocumentStore(DocumentStore):
    def __init__(self, url: str, database: str, client: Optional[AsyncMongoClient] = None):
        self._client = client or AsyncMongoClient(url)
        self._db = self._client[database]

    async def insert(self, collection: str, doc: Dict[str, Any], id: Optional[str] = None) -> str:
        doc_id = id or new_id()
        try:
            await self._db[collection].update_one({"_id": doc_id}, build_insert(doc_id, doc), upsert=True)
        except DuplicateKeyError as exc:
            raise DuplicateDocumentError(collection, str(exc)) from exc
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc
        return doc_id

    async def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        try:
            doc = await self._db[collection].find_one({"_id": id})
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc
        return _to_record(doc)

    async def query(
        self,
        collection: str,
        where: Sequence[Where] = (),
        order: OrderBy = (),
        limit: Optional[int] = None,
        index: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {}
        if order:
            kwargs["sort"] = _mongo_sort(order)
        if limit:
            kwargs["limit"] = limit
        if index:
            kwargs["hint"] = index
        try:
            cursor = self._db[collection].find(to_mongo_filter(where), **kwargs)
            docs = await cursor.to_list(length=None)
        except OperationFailure as exc:
            if index and _is_missing_index(exc):
                raise IndexNotReadyError(index, str(exc)) from exc
            raise StoreError(str(exc), code=str(exc.code)) from exc
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc
        return [_to_record(d) for d in docs]

    async def count(self, collection: str, where: Sequence[Where] = ()) -> int:
        try:
            return await self._db[collection].count_documents(to_mongo_filter(where))
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc

    async def update(
        self,
        collection: str,
        id: str,
        partial: Dict[str, Any],
        preconditions: Sequence[Where] = (),
    ) -> None:
        update = build_update(partial)
        filt = to_mongo_filter(preconditions)
        filt["_id"] = id
        try:
            res = await self._db[collection].update_one(filt, update)
            if res.matched_count:
                return
            exists = await self._db[collection].find_one({"_id": id}, projection={"_id": 1})
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc
        if not exists:
            raise DocumentNotFoundError(collection, id)
        raise PreconditionFailedError(collection, id)

    async def delete(self, collection: str, id: str) -> None:
        try:
            await self._db[collection].delete_one({"_id": id})
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc

    async def ensure_indexes(self) -> None:
        for collection, specs in INDEXES.items():
            for spec in specs:
                options: Dict[str, Any] = {"name": spec.name}
                if spec.unique:
                    options["unique"] = True
                if spec.partial:
                    options["partialFilterExpression"] = spec.partial
                try:
                    await self._db[collection].create_index(spec.keys, **options)
                except PyMongoError as exc:
                    # Queries fall back to full scans until the index exists.
                    logger.warning("Could not create index %s on %s: %s", spec.name, collection, exc)

    async def index_status(self) -> Dict[str, bool]:
        status: Dict[str, bool] = {}
        for collection, specs in INDEXES.items():
            try:
                cursor = await self._db[collection].list_indexes()
                existing = {ix["name"] for ix in await cursor.to_list(length=None)}
            except PyMongoError as exc:
                raise StoreError(str(exc)) from exc
            for spec in specs:
                status[spec.name] = spec.name in existing
        return status

    async def ping(self) -> List[str]:
        try:
            return await self._db.list_collection_names()
        except PyMongoError as exc:
            raise StoreError(str(exc)) from exc

    async def close(self) -> None:
        await self._client.close()
