from __future__ import annotations

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pymongo import DESCENDING

from database import (
    DELETE_FIELD,
    INDEXES,
    SERVER_TIMESTAMP,
    DocumentStore,
    OrderBy,
    Where,
    get_path,
    new_id,
)
from errors import (
    DocumentNotFoundError,
    DuplicateDocumentError,
    IndexNotReadyError,
    NotificationError,
    PreconditionFailedError,
    StoreError,
)
from notifications import EmailSender, OutgoingEmail
from schemas import Identity, ProjectCreate

ALL_INDEXES = {spec.name for specs in INDEXES.values() for spec in specs}


class Clock:
    """Strictly increasing UTC clock; every reading is 1ms after the previous one."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(milliseconds=1)
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def _resolve(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: _resolve(v, now) for k, v in value.items()}
    return copy.deepcopy(value)


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    for part in parts[:-1]:
        child = doc.get(part)
        if not isinstance(child, dict):
            child = {}
            doc[part] = child
        doc = child
    if value is DELETE_FIELD:
        doc.pop(parts[-1], None)
    else:
        doc[parts[-1]] = value


def _merge(doc: Dict[str, Any], path: str, value: Any, now: datetime) -> None:
    # sub-documents holding a server timestamp merge leaf by leaf
    if isinstance(value, dict) and any(v is SERVER_TIMESTAMP for v in value.values()):
        for k, v in value.items():
            _merge(doc, f"{path}.{k}", v, now)
        return
    _set_path(doc, path, value if value is DELETE_FIELD else _resolve(value, now))


def _ordered(records: List[Dict[str, Any]], order: OrderBy) -> List[Dict[str, Any]]:
    records = list(records)
    for name, direction in reversed(list(order)):
        records.sort(
            key=lambda r: (get_path(r, name) is not None, get_path(r, name) if get_path(r, name) is not None else 0),
            reverse=direction == DESCENDING,
        )
    return records


class InMemoryStore(DocumentStore):
    """Dict-backed DocumentStore that records every call it serves.

    Queries naming an index outside ``ready_indexes`` raise IndexNotReadyError.
    ``failures`` maps (operation, collection) to the error that call raises.
    """

    def __init__(self, clock: Optional[Clock] = None, ready_indexes: Optional[Set[str]] = None):
        self.clock = clock or Clock()
        self.ready_indexes: Set[str] = set(ALL_INDEXES if ready_indexes is None else ready_indexes)
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], Exception] = {}

    async def _enter(self, op: str, collection: str) -> Dict[str, Dict[str, Any]]:
        self.calls.append((op, collection))
        # yield so concurrent callers interleave
        await asyncio.sleep(0)
        error = self.failures.get((op, collection))
        if error is not None:
            raise error
        return self.collections.setdefault(collection, {})

    def count_calls(self, op: str, collection: str) -> int:
        return sum(1 for call in self.calls if call == (op, collection))

    def raw(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        return self.collections.get(collection, {}).get(doc_id)

    def put(self, collection: str, doc_id: str, doc: Dict[str, Any]) -> None:
        """Seed a document exactly as given, bypassing server timestamps."""
        self.collections.setdefault(collection, {})[doc_id] = copy.deepcopy(doc)

    def _check_unique(self, collection: str, docs: Dict[str, Dict[str, Any]], doc: Dict[str, Any]) -> None:
        for spec in INDEXES.get(collection, []):
            if not spec.unique:
                continue
            partial = spec.partial or {}
            if any(doc.get(k) != v for k, v in partial.items()):
                continue
            key = tuple(get_path(doc, name) for name, _ in spec.keys)
            for other in docs.values():
                if any(other.get(k) != v for k, v in partial.items()):
                    continue
                if tuple(get_path(other, name) for name, _ in spec.keys) == key:
                    raise DuplicateDocumentError(collection, f"E11000 duplicate key {spec.name}")

    async def insert(self, collection: str, doc: Dict[str, Any], id: Optional[str] = None) -> str:
        docs = await self._enter("insert", collection)
        doc_id = id or new_id()
        if doc_id in docs:
            return doc_id
        now = self.clock()
        record = _resolve(doc, now)
        record["createdAt"] = now
        record["updatedAt"] = now
        self._check_unique(collection, docs, record)
        docs[doc_id] = record
        return doc_id

    async def get(self, collection: str, id: str) -> Optional[Dict[str, Any]]:
        docs = await self._enter("get", collection)
        doc = docs.get(id)
        if doc is None:
            return None
        return {**copy.deepcopy(doc), "id": id}

    async def query(
        self,
        collection: str,
        where: Sequence[Where] = (),
        order: OrderBy = (),
        limit: Optional[int] = None,
        index: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        docs = await self._enter("query", collection)
        if index and index not in self.ready_indexes:
            raise IndexNotReadyError(index)
        records = [{**copy.deepcopy(d), "id": doc_id} for doc_id, d in docs.items()]
        records = [r for r in records if all(w.matches(r) for w in where)]
        if order:
            records = _ordered(records, order)
        return records[:limit] if limit else records

    async def count(self, collection: str, where: Sequence[Where] = ()) -> int:
        docs = await self._enter("count", collection)
        return sum(1 for doc_id, d in docs.items() if all(w.matches({**d, "id": doc_id}) for w in where))

    async def update(
        self,
        collection: str,
        id: str,
        partial: Dict[str, Any],
        preconditions: Sequence[Where] = (),
    ) -> None:
        docs = await self._enter("update", collection)
        doc = docs.get(id)
        if doc is None:
            raise DocumentNotFoundError(collection, id)
        if not all(w.matches({**doc, "id": id}) for w in preconditions):
            raise PreconditionFailedError(collection, id)
        now = self.clock()
        for path, value in partial.items():
            _merge(doc, path, value, now)
        doc["updatedAt"] = now

    async def delete(self, collection: str, id: str) -> None:
        docs = await self._enter("delete", collection)
        docs.pop(id, None)

    async def index_status(self) -> Dict[str, bool]:
        return {name: name in self.ready_indexes for name in sorted(ALL_INDEXES)}

    async def ping(self) -> List[str]:
        if ("ping", "*") in self.failures:
            raise self.failures[("ping", "*")]
        return sorted(self.collections)


class RecordingEmailSender(EmailSender):
    def __init__(self):
        self.sent: List[OutgoingEmail] = []

    async def send(self, email: OutgoingEmail) -> None:
        self.sent.append(email)


class FailingEmailSender(EmailSender):
    def __init__(self, message: str = "SMTP connection refused"):
        self.message = message
        self.attempts = 0

    async def send(self, email: OutgoingEmail) -> None:
        self.attempts += 1
        raise NotificationError(self.message)


def store_unavailable() -> StoreError:
    return StoreError("connection refused", code="unavailable")


def run(coro):
    return asyncio.run(coro)


async def sign_up(users, uid: str, email: str, name: str = ""):
    return await users.ensure(Identity(uid=uid, email=email, display_name=name or uid.title()))


async def new_project(projects, owner: str = "alice", **extra) -> str:
    return await projects.create(ProjectCreate(project_name="Apollo", created_by=owner, **extra))
