from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Union

from aiohttp import WSMsgType, web

from .hub import Subscription
from .sqlite_backend import SQLiteBackend
from .sqlite_store import SQLiteStore
from .store import (
    WRITE_CREATE,
    WRITE_DELETE,
    WRITE_SET,
    WRITE_UPDATE,
    AlreadyExists,
    DocumentNotFound,
    DocumentSnapshot,
    InMemoryStore,
    PreconditionFailed,
    Query,
    QuerySnapshot,
    RemoteStore,
    StoreError,
    StoreUnavailable,
    Write,
    collection_of,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = 1

_WRITE_FRAMES = {
    "store.write": WRITE_SET,
    "store.create": WRITE_CREATE,
    "store.update": WRITE_UPDATE,
    "store.delete": WRITE_DELETE,
}


class RequestError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


def error_code(exc: StoreError) -> str:
    if isinstance(exc, DocumentNotFound):
        return "not_found"
    if isinstance(exc, AlreadyExists):
        return "already_exists"
    if isinstance(exc, PreconditionFailed):
        return "failed_precondition"
    return "unavailable"


async def handle_health(_: web.Request) -> web.Response:
    return web.Response(text="ok")


def create_app(
    store: RemoteStore | None = None,
    *,
    db_path: str | None = None,
    ping_interval_s: float = 30,
    ping_miss_limit: int = 2,
    max_msg_size: int = 1_048_576,
    outbound_queue_size: int = 1000,
) -> web.Application:
    backend: SQLiteBackend | None = None
    if store is None:
        if db_path is not None:
            backend = SQLiteBackend(db_path)
            store = SQLiteStore(backend)
        else:
            store = InMemoryStore()
    app = web.Application()
    app["store"] = store
    app["ws_config"] = {
        "ping_interval_s": ping_interval_s,
        "ping_miss_limit": ping_miss_limit,
        "max_msg_size": max_msg_size,
        "outbound_queue_size": outbound_queue_size,
    }
    app.router.add_get("/healthz", handle_health)
    app.router.add_get("/v1/store", websocket_handler)
    if backend is not None:
        async def close_db(_: web.Application) -> None:
            backend.close()

        app.on_cleanup.append(close_db)
    return app


def _error_frame(code: str, message: str, *, request_id: Any = None) -> dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": "error", "id": request_id, "body": {"code": code, "message": message}}


def _reply(frame_type: str, request_id: Any, body: dict | None = None) -> dict[str, Any]:
    return {"v": PROTOCOL_VERSION, "t": frame_type, "id": request_id, "body": body or {}}


def encode_query_snapshot(sub_id: str, snapshot: QuerySnapshot) -> dict[str, Any]:
    return {
        "v": PROTOCOL_VERSION,
        "t": "store.snapshot",
        "body": {
            "sub_id": sub_id,
            "kind": "query",
            "documents": [doc.to_dict() for doc in snapshot.documents],
            "changes": [{"kind": change.kind, "document": change.document.to_dict()} for change in snapshot.changes],
        },
    }


def encode_document_snapshot(sub_id: str, snapshot: DocumentSnapshot) -> dict[str, Any]:
    return {
        "v": PROTOCOL_VERSION,
        "t": "store.snapshot",
        "body": {"sub_id": sub_id, "kind": "document", "path": snapshot.path, "data": snapshot.data},
    }


def _require_str(body: dict, name: str) -> str:
    value = body.get(name)
    if not isinstance(value, str) or not value:
        raise RequestError("invalid_request", f"{name} required")
    return value


def _parse_write(kind: str, body: dict) -> Write:
    try:
        write = Write.from_dict({**body, "kind": kind})
        collection_of(write.path)
    except (KeyError, TypeError, ValueError) as exc:
        raise RequestError("invalid_request", str(exc)) from exc
    return write


async def _handle_request(
    store: RemoteStore,
    frame_type: str,
    body: dict,
    request_id: Any,
    subscriptions: Dict[str, Subscription],
    enqueue,
) -> dict[str, Any]:
    if frame_type in _WRITE_FRAMES:
        await store.commit([_parse_write(_WRITE_FRAMES[frame_type], body)])
        return _reply("store.ok", request_id)
    if frame_type == "store.batch":
        raw_writes = body.get("writes")
        if not isinstance(raw_writes, list) or not raw_writes:
            raise RequestError("invalid_request", "writes must be a non-empty list")
        writes = []
        for raw in raw_writes:
            if not isinstance(raw, dict):
                raise RequestError("invalid_request", "each write must be an object")
            writes.append(_parse_write(raw.get("kind"), raw))
        await store.commit(writes)
        return _reply("store.ok", request_id, {"count": len(writes)})
    if frame_type == "store.get":
        path = _require_str(body, "path")
        try:
            collection_of(path)
        except ValueError as exc:
            raise RequestError("invalid_request", str(exc)) from exc
        doc = await store.get(path)
        return _reply("store.doc", request_id, {"document": doc.to_dict() if doc is not None else None})
    if frame_type == "store.query":
        try:
            query = Query.from_dict(body.get("query") or {})
        except (KeyError, TypeError, ValueError) as exc:
            raise RequestError("invalid_request", str(exc)) from exc
        documents = await store.query(query)
        return _reply("store.docs", request_id, {"documents": [doc.to_dict() for doc in documents]})
    if frame_type == "store.subscribe":
        sub_id = _require_str(body, "sub_id")
        if sub_id in subscriptions:
            raise RequestError("invalid_request", f"subscription {sub_id} already exists")
        if body.get("kind") == "document":
            path = _require_str(body, "path")
            try:
                collection_of(path)
            except ValueError as exc:
                raise RequestError("invalid_request", str(exc)) from exc
            subscriptions[sub_id] = store.subscribe_document(
                path, lambda snapshot: enqueue(encode_document_snapshot(sub_id, snapshot))
            )
        else:
            try:
                query = Query.from_dict(body.get("query") or {})
            except (KeyError, TypeError, ValueError) as exc:
                raise RequestError("invalid_request", str(exc)) from exc
            subscriptions[sub_id] = store.subscribe(
                query, lambda snapshot: enqueue(encode_query_snapshot(sub_id, snapshot))
            )
        return _reply("store.subscribed", request_id, {"sub_id": sub_id})
    if frame_type == "store.unsubscribe":
        sub_id = _require_str(body, "sub_id")
        subscription = subscriptions.pop(sub_id, None)
        if subscription is not None:
            subscription.cancel()
        return _reply("store.ok", request_id)
    raise RequestError("invalid_request", "unknown frame type")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    store: RemoteStore = request.app["store"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    ws = web.WebSocketResponse(max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    last_activity = asyncio.get_event_loop().time()
    missed_heartbeats = 0
    outbound: asyncio.Queue[Union[dict, None]] = asyncio.Queue(maxsize=ws_config["outbound_queue_size"])
    subscriptions: Dict[str, Subscription] = {}
    closed = False

    async def close_with_error(message: str) -> None:
        nonlocal closed
        if closed:
            return
        closed = True
        logger.warning("closing store socket: %s", message)
        await ws.close(code=1011, message=message.encode("utf-8"))

    def mark_activity() -> None:
        nonlocal last_activity, missed_heartbeats
        last_activity = asyncio.get_event_loop().time()
        missed_heartbeats = 0

    def enqueue(frame: dict) -> None:
        try:
            outbound.put_nowait(frame)
        except asyncio.QueueFull:
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                frame = await outbound.get()
                if frame is None:
                    break
                await ws.send_json(frame)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    async def heartbeat() -> None:
        nonlocal missed_heartbeats
        try:
            while True:
                await asyncio.sleep(ws_config["ping_interval_s"])
                if ws.closed:
                    return
                now = asyncio.get_event_loop().time()
                if now - last_activity >= ws_config["ping_interval_s"]:
                    enqueue({"v": PROTOCOL_VERSION, "t": "ping"})
                    missed_heartbeats += 1
                    if missed_heartbeats > ws_config["ping_miss_limit"]:
                        await ws.close(code=1001, message=b"heartbeat timeout")
                        return
        except asyncio.CancelledError:
            return

    writer_task = asyncio.create_task(writer())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                try:
                    frame = msg.json()
                except ValueError:
                    enqueue(_error_frame("invalid_request", "malformed json"))
                    continue
                if not isinstance(frame, dict):
                    enqueue(_error_frame("invalid_request", "frame must be an object"))
                    continue

                mark_activity()
                request_id = frame.get("id")
                if frame.get("v") != PROTOCOL_VERSION:
                    enqueue(_error_frame("invalid_request", "unsupported version", request_id=request_id))
                    continue

                frame_type = frame.get("t")
                body = frame.get("body") or {}
                if frame_type == "ping":
                    enqueue(_reply("pong", request_id))
                    continue
                if frame_type == "pong":
                    continue
                if not isinstance(body, dict):
                    enqueue(_error_frame("invalid_request", "body must be an object", request_id=request_id))
                    continue
                try:
                    reply = await _handle_request(store, frame_type, body, request_id, subscriptions, enqueue)
                except RequestError as exc:
                    enqueue(_error_frame(exc.code, exc.message, request_id=request_id))
                except StoreError as exc:
                    if isinstance(exc, StoreUnavailable):
                        logger.warning("store request %s failed: %s", frame_type, exc)
                    enqueue(_error_frame(error_code(exc), str(exc), request_id=request_id))
                else:
                    enqueue(reply)
            elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
            else:
                await ws.close(code=1003, message=b"unsupported frame type")
                break
    finally:
        heartbeat_task.cancel()
        for subscription in subscriptions.values():
            subscription.cancel()
        subscriptions.clear()
        try:
            outbound.put_nowait(None)
        except asyncio.QueueFull:
            writer_task.cancel()
        await asyncio.gather(heartbeat_task, writer_task, return_exceptions=True)

    return ws
