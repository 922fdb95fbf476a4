from __future__ import annotations

import asyncio
import itertools
import logging
import uuid
from typing import Any, Dict, Mapping, Sequence

import aiohttp

from .hub import Subscription, SubscriptionHub
from .store import (
    AlreadyExists,
    Document,
    DocumentChange,
    DocumentNotFound,
    DocumentSnapshot,
    DocumentCallback,
    PreconditionFailed,
    Query,
    QuerySnapshot,
    RemoteStore,
    SnapshotCallback,
    StoreError,
    StoreUnavailable,
    Write,
)

logger = logging.getLogger(__name__)

_ERRORS = {
    "not_found": DocumentNotFound,
    "already_exists": AlreadyExists,
    "failed_precondition": PreconditionFailed,
    "unavailable": StoreUnavailable,
}


def error_from_frame(body: Mapping[str, Any]) -> StoreError:
    code = body.get("code")
    message = body.get("message") or code or "store error"
    if code == "invalid_request":
        return StoreError(f"invalid request: {message}")
    return _ERRORS.get(code, StoreError)(message)


class _RemoteHub(SubscriptionHub):
    def __init__(self, client: "RemoteStoreClient") -> None:
        super().__init__()
        self._client = client

    def unsubscribe(self, subscription: Subscription) -> None:
        was_active = subscription.active
        super().unsubscribe(subscription)
        if was_active:
            self._client._forget_subscription(subscription.key)


class RemoteStoreClient(RemoteStore):
    """:class:`RemoteStore` spoken over the ``/v1/store`` WebSocket protocol.

    Snapshots arrive asynchronously, so the initial delivery of a
    subscription follows the subscribe call instead of happening inside it.
    When the socket drops, pending requests fail with
    :class:`StoreUnavailable`; :meth:`connect` reopens it and re-establishes
    every live subscription.
    """

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        request_timeout_s: float = 10.0,
    ) -> None:
        self.url = url
        self._session = session
        self._owns_session = session is None
        self._request_timeout_s = request_timeout_s
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._pending: Dict[str, asyncio.Future] = {}
        self._ids = itertools.count(1)
        self._hub = _RemoteHub(self)
        self._specs: Dict[str, dict] = {}
        self._inbox: Dict[str, Any] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        if self.connected:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(self.url)
        except (aiohttp.ClientError, OSError) as exc:
            raise StoreUnavailable(f"cannot connect to {self.url}: {exc}") from exc
        self._reader_task = asyncio.create_task(self._reader(self._ws))
        for sub_id, spec in list(self._specs.items()):
            await self._send_subscribe(sub_id, spec)

    async def close(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is not None:
            await ws.close()
        if self._reader_task is not None:
            await asyncio.gather(self._reader_task, return_exceptions=True)
            self._reader_task = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._fail_pending(StoreUnavailable("client closed"))
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def _reader(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping malformed frame from %s", self.url)
                        continue
                    await self._route(ws, frame)
                elif msg.type in {aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED, aiohttp.WSMsgType.ERROR}:
                    break
        finally:
            if self._ws is ws:
                self._ws = None
                logger.info("store connection to %s lost", self.url)
            self._fail_pending(StoreUnavailable("connection lost"))

    async def _route(self, ws: aiohttp.ClientWebSocketResponse, frame: dict) -> None:
        frame_type = frame.get("t")
        body = frame.get("body") or {}
        if frame_type == "ping":
            await ws.send_json({"v": 1, "t": "pong", "id": frame.get("id")})
            return
        if frame_type == "store.snapshot":
            self._on_snapshot(body)
            return
        future = self._pending.pop(str(frame.get("id")), None)
        if future is None or future.done():
            if frame_type == "error":
                logger.warning("store error without a pending request: %s", body)
            return
        if frame_type == "error":
            future.set_exception(error_from_frame(body))
        else:
            future.set_result(body)

    def _fail_pending(self, exc: StoreError) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(exc)

    async def _request(self, frame_type: str, body: dict) -> dict:
        ws = self._ws
        if ws is None or ws.closed:
            raise StoreUnavailable("not connected")
        request_id = str(next(self._ids))
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send_json({"v": 1, "t": frame_type, "id": request_id, "body": body})
        except (ConnectionResetError, aiohttp.ClientError) as exc:
            self._pending.pop(request_id, None)
            raise StoreUnavailable(str(exc)) from exc
        try:
            return await asyncio.wait_for(future, self._request_timeout_s)
        except asyncio.TimeoutError as exc:
            self._pending.pop(request_id, None)
            raise StoreUnavailable(f"{frame_type} timed out") from exc

    async def commit(self, writes: Sequence[Write]) -> None:
        await self._request("store.batch", {"writes": [write.to_dict() for write in writes]})

    async def get(self, path: str) -> Document | None:
        body = await self._request("store.get", {"path": path})
        payload = body.get("document")
        return Document.from_dict(payload) if payload is not None else None

    async def query(self, query: Query) -> list[Document]:
        body = await self._request("store.query", {"query": query.to_dict()})
        return [Document.from_dict(doc) for doc in body.get("documents") or []]

    def _on_snapshot(self, body: dict) -> None:
        sub_id = body.get("sub_id")
        spec = self._specs.get(sub_id)
        if spec is None:
            return
        if body.get("kind") == "document":
            self._inbox[sub_id] = DocumentSnapshot(path=body["path"], data=body.get("data"))
        else:
            documents = tuple(Document.from_dict(doc) for doc in body.get("documents") or [])
            changes = tuple(
                DocumentChange(change["kind"], Document.from_dict(change["document"]))
                for change in body.get("changes") or []
            )
            self._inbox[sub_id] = QuerySnapshot(spec["query_obj"], documents, changes)
        self._hub.publish([sub_id])

    def _register(self, spec: dict, callback) -> Subscription:
        sub_id = uuid.uuid4().hex
        self._specs[sub_id] = spec
        subscription = self._hub.subscribe(sub_id, lambda previous: self._inbox.pop(sub_id, None), callback)
        if self.connected:
            self._spawn(self._send_subscribe(sub_id, spec))
        return subscription

    async def _send_subscribe(self, sub_id: str, spec: dict) -> None:
        body = {key: value for key, value in spec.items() if key != "query_obj"}
        try:
            await self._request("store.subscribe", {"sub_id": sub_id, **body})
        except StoreError as exc:
            logger.warning("subscribe %s failed: %s", sub_id, exc)

    def _forget_subscription(self, sub_id: str) -> None:
        self._specs.pop(sub_id, None)
        self._inbox.pop(sub_id, None)
        if self.connected:
            self._spawn(self._send_unsubscribe(sub_id))

    async def _send_unsubscribe(self, sub_id: str) -> None:
        try:
            await self._request("store.unsubscribe", {"sub_id": sub_id})
        except StoreError as exc:
            logger.debug("unsubscribe %s failed: %s", sub_id, exc)

    def _spawn(self, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def subscribe(self, query: Query, callback: SnapshotCallback) -> Subscription:
        return self._register({"kind": "query", "query": query.to_dict(), "query_obj": query}, callback)

    def subscribe_document(self, path: str, callback: DocumentCallback) -> Subscription:
        return self._register({"kind": "document", "path": path}, callback)

    async def settle(self) -> None:
        """Wait for outstanding subscribe/unsubscribe frames to be acknowledged."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
