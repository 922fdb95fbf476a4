from __future__ import annotations

import abc
import contextlib
import copy
import time
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Sequence, Tuple

from .hub import Subscription, SubscriptionHub


def _now_ms() -> int:
    return int(time.time() * 1000)


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    def __reduce__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


class StoreError(Exception):
    pass


class StoreUnavailable(StoreError):
    pass


class DocumentNotFound(StoreError):
    pass


class AlreadyExists(StoreError):
    pass


class PreconditionFailed(StoreError):
    pass


OP_SET = "set"
OP_INCREMENT = "increment"
OP_UNION = "set_union"
OP_DIFFERENCE = "set_difference"
OP_DELETE = "delete_field"
FIELD_OPS = (OP_SET, OP_INCREMENT, OP_UNION, OP_DIFFERENCE, OP_DELETE)


@dataclass(frozen=True)
class FieldOp:
    """A server-evaluated mutation of one (possibly nested) field."""

    op: str
    field: str
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in FIELD_OPS:
            raise ValueError(f"unknown field op: {self.op}")
        if not self.field or any(not part for part in self.field.split(".")):
            raise ValueError(f"invalid field path: {self.field!r}")

    def to_dict(self) -> dict:
        value = self.value
        if isinstance(value, tuple):
            value = list(value)
        return {"op": self.op, "field": self.field, "value": encode_value(value)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FieldOp":
        op = payload.get("op")
        value = decode_value(payload.get("value"))
        if op in (OP_UNION, OP_DIFFERENCE):
            value = tuple(value or ())
        return cls(op=op, field=payload.get("field"), value=value)


def set_field(field_path: str, value: Any) -> FieldOp:
    return FieldOp(OP_SET, field_path, value)


def increment(field_path: str, delta: int = 1) -> FieldOp:
    return FieldOp(OP_INCREMENT, field_path, delta)


def set_union(field_path: str, *values: Any) -> FieldOp:
    return FieldOp(OP_UNION, field_path, tuple(values))


def set_difference(field_path: str, *values: Any) -> FieldOp:
    return FieldOp(OP_DIFFERENCE, field_path, tuple(values))


def delete_field(field_path: str) -> FieldOp:
    return FieldOp(OP_DELETE, field_path)


def encode_value(value: Any) -> Any:
    """Replace sentinels with their JSON wire form."""

    if value is SERVER_TIMESTAMP:
        return {"$server_ts": True}
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if value == {"$server_ts": True}:
            return SERVER_TIMESTAMP
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


def resolve_server_timestamps(value: Any, now_ms: int) -> Any:
    if value is SERVER_TIMESTAMP:
        return now_ms
    if isinstance(value, dict):
        return {k: resolve_server_timestamps(v, now_ms) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_server_timestamps(v, now_ms) for v in value]
    return value


def get_path_value(data: Mapping[str, Any] | None, field_path: str, default: Any = None) -> Any:
    current: Any = data
    for part in field_path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return default
        current = current[part]
    return current


def _walk(data: dict, parts: Sequence[str], create: bool) -> dict | None:
    current = data
    for part in parts:
        child = current.get(part)
        if not isinstance(child, dict):
            if not create:
                return None
            child = {}
            current[part] = child
        current = child
    return current


def apply_field_ops(data: Mapping[str, Any], ops: Iterable[FieldOp], now_ms: int) -> dict:
    """Apply ``ops`` in order to a copy of ``data``.

    Set-union appends values that are not already present; set-difference
    removes every occurrence. Increment treats a missing or non-numeric field
    as zero.
    """

    result = copy.deepcopy(dict(data))
    for op in ops:
        parts = op.field.split(".")
        key = parts[-1]
        if op.op == OP_DELETE:
            parent = _walk(result, parts[:-1], create=False)
            if parent is not None:
                parent.pop(key, None)
            continue
        parent = _walk(result, parts[:-1], create=True)
        current = parent.get(key)
        if op.op == OP_SET:
            parent[key] = resolve_server_timestamps(copy.deepcopy(op.value), now_ms)
        elif op.op == OP_INCREMENT:
            base = current if isinstance(current, (int, float)) and not isinstance(current, bool) else 0
            parent[key] = base + op.value
        elif op.op == OP_UNION:
            items = list(current) if isinstance(current, list) else []
            for value in op.value:
                if value not in items:
                    items.append(value)
            parent[key] = items
        elif op.op == OP_DIFFERENCE:
            items = list(current) if isinstance(current, list) else []
            parent[key] = [item for item in items if item not in op.value]
    return result


def split_path(path: str) -> list[str]:
    parts = path.strip("/").split("/")
    if any(not part for part in parts):
        raise ValueError(f"invalid path: {path!r}")
    return parts


def collection_of(path: str) -> str:
    parts = split_path(path)
    if len(parts) % 2 != 0:
        raise ValueError(f"not a document path: {path!r}")
    return "/".join(parts[:-1])


@dataclass(frozen=True)
class Document:
    path: str
    data: dict

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def collection(self) -> str:
        return collection_of(self.path)

    def get(self, field_path: str, default: Any = None) -> Any:
        return get_path_value(self.data, field_path, default)

    def to_dict(self) -> dict:
        return {"path": self.path, "data": self.data}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Document":
        return cls(path=payload["path"], data=dict(payload.get("data") or {}))


@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    data: dict | None

    @property
    def id(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, field_path: str, default: Any = None) -> Any:
        return get_path_value(self.data, field_path, default)


ADDED = "added"
MODIFIED = "modified"
REMOVED = "removed"


@dataclass(frozen=True)
class DocumentChange:
    kind: str
    document: Document


@dataclass(frozen=True)
class QuerySnapshot:
    query: "Query"
    documents: Tuple[Document, ...]
    changes: Tuple[DocumentChange, ...] = ()

    def __iter__(self) -> Iterator[Document]:
        return iter(self.documents)

    def __len__(self) -> int:
        return len(self.documents)

    @property
    def ids(self) -> list[str]:
        return [doc.id for doc in self.documents]


def diff_documents(previous: Sequence[Document], current: Sequence[Document]) -> list[DocumentChange]:
    before = {doc.path: doc for doc in previous}
    after = {doc.path for doc in current}
    changes: list[DocumentChange] = []
    for doc in current:
        prior = before.get(doc.path)
        if prior is None:
            changes.append(DocumentChange(ADDED, doc))
        elif prior.data != doc.data:
            changes.append(DocumentChange(MODIFIED, doc))
    for path, doc in before.items():
        if path not in after:
            changes.append(DocumentChange(REMOVED, doc))
    return changes


FILTER_OPS = ("==", "!=", "<", "<=", ">", ">=", "in", "array_contains")


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"unsupported filter op: {self.op}")

    def matches(self, data: Mapping[str, Any]) -> bool:
        missing = object()
        actual = get_path_value(data, self.field, missing)
        if self.op == "array_contains":
            return isinstance(actual, list) and self.value in actual
        if self.op == "in":
            return actual is not missing and actual in self.value
        if actual is missing:
            return self.op == "!="
        if self.op == "==":
            return actual == self.value
        if self.op == "!=":
            return actual != self.value
        try:
            if self.op == "<":
                return actual < self.value
            if self.op == "<=":
                return actual <= self.value
            if self.op == ">":
                return actual > self.value
            return actual >= self.value
        except TypeError:
            return False


def _order_key(value: Any) -> tuple:
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (2, value)
    return (3, str(value))


@dataclass(frozen=True)
class Query:
    """A declarative query over one collection."""

    collection: str
    filters: Tuple[Filter, ...] = ()
    order_by: Tuple[Tuple[str, str], ...] = ()
    limit: int | None = None
    limit_to_last: bool = False

    def where(self, field_path: str, op: str, value: Any) -> "Query":
        if op == "in":
            value = tuple(value)
        return replace(self, filters=self.filters + (Filter(field_path, op, value),))

    def ordered(self, field_path: str, direction: str = "asc") -> "Query":
        if direction not in ("asc", "desc"):
            raise ValueError("direction must be 'asc' or 'desc'")
        return replace(self, order_by=self.order_by + ((field_path, direction),))

    def first(self, count: int) -> "Query":
        return replace(self, limit=max(count, 0), limit_to_last=False)

    def last(self, count: int) -> "Query":
        return replace(self, limit=max(count, 0), limit_to_last=True)

    def run(self, documents: Iterable[Document]) -> list[Document]:
        matched = [doc for doc in documents if all(f.matches(doc.data) for f in self.filters)]
        matched.sort(key=lambda doc: doc.id)
        for field_path, direction in reversed(self.order_by):
            matched.sort(key=lambda doc: _order_key(doc.get(field_path)), reverse=direction == "desc")
        if self.limit is not None:
            if self.limit_to_last:
                matched = matched[-self.limit :] if self.limit else []
            else:
                matched = matched[: self.limit]
        return matched

    def to_dict(self) -> dict:
        return {
            "collection": self.collection,
            "filters": [
                {"field": f.field, "op": f.op, "value": list(f.value) if isinstance(f.value, tuple) else f.value}
                for f in self.filters
            ],
            "order_by": [list(item) for item in self.order_by],
            "limit": self.limit,
            "limit_to_last": self.limit_to_last,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Query":
        collection = payload.get("collection")
        if not isinstance(collection, str) or not collection:
            raise ValueError("query collection required")
        query = cls(collection=collection)
        for item in payload.get("filters") or []:
            query = query.where(item["field"], item["op"], item.get("value"))
        for field_path, direction in payload.get("order_by") or []:
            query = query.ordered(field_path, direction)
        limit = payload.get("limit")
        if limit is not None:
            query = query.last(int(limit)) if payload.get("limit_to_last") else query.first(int(limit))
        return query


WRITE_SET = "set"
WRITE_CREATE = "create"
WRITE_UPDATE = "update"
WRITE_DELETE = "delete"


@dataclass(frozen=True)
class Write:
    kind: str
    path: str
    data: dict | None = None
    ops: Tuple[FieldOp, ...] = ()
    when: Mapping[str, Tuple[Any, ...]] | None = None

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"kind": self.kind, "path": self.path}
        if self.data is not None:
            payload["data"] = encode_value(self.data)
        if self.ops:
            payload["ops"] = [op.to_dict() for op in self.ops]
        if self.when:
            payload["when"] = {k: encode_value(list(v)) for k, v in self.when.items()}
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Write":
        kind = payload.get("kind")
        path = payload.get("path")
        if kind not in (WRITE_SET, WRITE_CREATE, WRITE_UPDATE, WRITE_DELETE) or not isinstance(path, str):
            raise ValueError("write kind and path required")
        data = payload.get("data")
        if kind in (WRITE_SET, WRITE_CREATE) and not isinstance(data, dict):
            raise ValueError("document data required")
        ops = tuple(FieldOp.from_dict(op) for op in payload.get("ops") or [])
        when = payload.get("when")
        return cls(
            kind=kind,
            path=path,
            data=decode_value(data) if data is not None else None,
            ops=ops,
            when=_normalize_when(decode_value(when)) if when else None,
        )


def _normalize_when(when: Mapping[str, Any] | None) -> dict[str, Tuple[Any, ...]] | None:
    if not when:
        return None
    normalized: dict[str, Tuple[Any, ...]] = {}
    for field_path, allowed in when.items():
        if isinstance(allowed, (list, tuple, set, frozenset)):
            normalized[field_path] = tuple(allowed)
        else:
            normalized[field_path] = (allowed,)
    return normalized


class WriteBatch:
    """Collects writes that the store applies all-or-nothing."""

    def __init__(self, store: "RemoteStore") -> None:
        self._store = store
        self._writes: List[Write] = []
        self._committed = False

    def __len__(self) -> int:
        return len(self._writes)

    @property
    def writes(self) -> list[Write]:
        return list(self._writes)

    def write(self, path: str, data: Mapping[str, Any]) -> "WriteBatch":
        collection_of(path)
        self._writes.append(Write(WRITE_SET, path, data=dict(data)))
        return self

    def create(self, path: str, data: Mapping[str, Any]) -> "WriteBatch":
        collection_of(path)
        self._writes.append(Write(WRITE_CREATE, path, data=dict(data)))
        return self

    def update(
        self, path: str, ops: Sequence[FieldOp], *, when: Mapping[str, Any] | None = None
    ) -> "WriteBatch":
        collection_of(path)
        ops = tuple(ops)
        for op in ops:
            if not isinstance(op, FieldOp):
                raise TypeError("update accepts FieldOp values only")
        self._writes.append(Write(WRITE_UPDATE, path, ops=ops, when=_normalize_when(when)))
        return self

    def delete(self, path: str) -> "WriteBatch":
        collection_of(path)
        self._writes.append(Write(WRITE_DELETE, path))
        return self

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("batch already committed")
        self._committed = True
        if self._writes:
            await self._store.commit(self._writes)


SnapshotCallback = Callable[[QuerySnapshot], None]
DocumentCallback = Callable[[DocumentSnapshot], None]


class RemoteStore(abc.ABC):
    """Capability interface of the shared document store.

    Shared counters and sets may only be changed through :class:`FieldOp`
    values applied by the store; there is no client-side read-modify-write
    entry point.
    """

    async def write(self, path: str, data: Mapping[str, Any]) -> None:
        await self.batch().write(path, data).commit()

    async def create(self, path: str, data: Mapping[str, Any]) -> None:
        await self.batch().create(path, data).commit()

    async def update(
        self, path: str, ops: Sequence[FieldOp], *, when: Mapping[str, Any] | None = None
    ) -> None:
        await self.batch().update(path, ops, when=when).commit()

    async def delete(self, path: str) -> None:
        await self.batch().delete(path).commit()

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    @abc.abstractmethod
    async def commit(self, writes: Sequence[Write]) -> None:
        """Apply ``writes`` atomically."""

    @abc.abstractmethod
    async def get(self, path: str) -> Document | None:
        """Return the document at ``path`` or ``None``."""

    @abc.abstractmethod
    async def query(self, query: Query) -> list[Document]:
        """Return the current result of ``query``."""

    @abc.abstractmethod
    def subscribe(self, query: Query, callback: SnapshotCallback) -> Subscription:
        """Deliver a :class:`QuerySnapshot` now and on every change."""

    @abc.abstractmethod
    def subscribe_document(self, path: str, callback: DocumentCallback) -> Subscription:
        """Deliver a :class:`DocumentSnapshot` now and on every change."""


class HubStore(RemoteStore):
    """Store base that applies writes in-process and fans out via a hub."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        self._now = now_func
        self._hub = SubscriptionHub()

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    @abc.abstractmethod
    def _read(self, path: str) -> dict | None:
        pass

    @abc.abstractmethod
    def _read_collection(self, collection: str) -> list[Document]:
        pass

    @abc.abstractmethod
    def _persist(self, staged: Mapping[str, dict | None]) -> None:
        pass

    def _transaction(self) -> contextlib.AbstractContextManager:
        return contextlib.nullcontext()

    def apply(self, writes: Sequence[Write]) -> set[str]:
        """Apply ``writes`` all-or-nothing and return the touched paths."""

        now_ms = self._now()
        staged: Dict[str, dict | None] = {}
        with self._transaction():
            for write in writes:
                existing = staged[write.path] if write.path in staged else self._read(write.path)
                if write.kind == WRITE_SET:
                    staged[write.path] = resolve_server_timestamps(copy.deepcopy(write.data), now_ms)
                elif write.kind == WRITE_CREATE:
                    if existing is not None:
                        raise AlreadyExists(write.path)
                    staged[write.path] = resolve_server_timestamps(copy.deepcopy(write.data), now_ms)
                elif write.kind == WRITE_UPDATE:
                    if existing is None:
                        raise DocumentNotFound(write.path)
                    for field_path, allowed in (write.when or {}).items():
                        if get_path_value(existing, field_path) not in allowed:
                            raise PreconditionFailed(f"{write.path}: {field_path} precondition failed")
                    staged[write.path] = apply_field_ops(existing, write.ops, now_ms)
                elif write.kind == WRITE_DELETE:
                    staged[write.path] = None
                else:
                    raise ValueError(f"unknown write kind: {write.kind}")
            self._persist(staged)
        return set(staged)

    async def commit(self, writes: Sequence[Write]) -> None:
        touched = self.apply(writes)
        keys: list[str] = []
        for path in sorted(touched):
            keys.append(path)
            keys.append(collection_of(path))
        self._hub.publish(keys)

    async def get(self, path: str) -> Document | None:
        data = self._read(path)
        if data is None:
            return None
        return Document(path=path, data=data)

    async def query(self, query: Query) -> list[Document]:
        return query.run(self._read_collection(query.collection))

    def subscribe(self, query: Query, callback: SnapshotCallback) -> Subscription:
        def evaluate(previous: QuerySnapshot | None) -> QuerySnapshot | None:
            documents = query.run(self._read_collection(query.collection))
            if previous is None:
                changes = [DocumentChange(ADDED, doc) for doc in documents]
                return QuerySnapshot(query, tuple(documents), tuple(changes))
            changes = diff_documents(previous.documents, documents)
            if not changes and [d.path for d in previous.documents] == [d.path for d in documents]:
                return None
            return QuerySnapshot(query, tuple(documents), tuple(changes))

        return self._hub.subscribe(query.collection, evaluate, callback)

    def subscribe_document(self, path: str, callback: DocumentCallback) -> Subscription:
        collection_of(path)

        def evaluate(previous: DocumentSnapshot | None) -> DocumentSnapshot | None:
            snapshot = DocumentSnapshot(path=path, data=self._read(path))
            if previous is not None and previous.data == snapshot.data:
                return None
            return snapshot

        return self._hub.subscribe(path, evaluate, callback)


class InMemoryStore(HubStore):
    """Process-local store used by tests, the simulator and the dev server."""

    def __init__(self, *, now_func: Callable[[], int] = _now_ms) -> None:
        super().__init__(now_func=now_func)
        self._documents: Dict[str, dict] = {}

    def _read(self, path: str) -> dict | None:
        data = self._documents.get(path)
        return copy.deepcopy(data) if data is not None else None

    def _read_collection(self, collection: str) -> list[Document]:
        prefix = collection + "/"
        return [
            Document(path=path, data=copy.deepcopy(data))
            for path, data in self._documents.items()
            if path.startswith(prefix) and "/" not in path[len(prefix) :]
        ]

    def _persist(self, staged: Mapping[str, dict | None]) -> None:
        for path, data in staged.items():
            if data is None:
                self._documents.pop(path, None)
            else:
                self._documents[path] = data

    def paths(self) -> list[str]:
        return sorted(self._documents)
