from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Dict, List, Set

from .hub import Subscription
from .models import PresenceRecord, presence_path
from .store import DocumentSnapshot, RemoteStore, StoreError, _now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PresenceConfig:
    min_publish_interval_s: float = 30.0
    heartbeat_interval_s: float = 60.0
    online_stale_after_s: float = 180.0


@dataclass(frozen=True)
class PresenceView:
    user_id: str
    display_name: str
    online: bool
    advisory: bool
    last_active_ms: int | None
    label: str


def format_last_seen(last_active_ms: int | None, now_ms: int, *, tz: tzinfo | None = None) -> str:
    """Render a human "last seen" label for an offline user."""

    if last_active_ms is None:
        return "recently"
    delta_ms = max(0, now_ms - last_active_ms)
    if delta_ms < 60_000:
        return "just now"
    if delta_ms < 60 * 60_000:
        minutes = delta_ms // 60_000
        return "1 minute ago" if minutes == 1 else f"{minutes} minutes ago"
    seen = datetime.fromtimestamp(last_active_ms / 1000, tz)
    now = datetime.fromtimestamp(now_ms / 1000, tz)
    if seen.date() == now.date():
        return f"today at {seen:%H:%M}"
    if seen.date() == now.date() - timedelta(days=1):
        return f"yesterday at {seen:%H:%M}"
    return seen.strftime("%x")


FOCUS = "focus"
BLUR = "blur"
VISIBILITY = "visibility"
UNLOAD = "unload"
LIFECYCLE_EVENTS = (FOCUS, BLUR, VISIBILITY, UNLOAD)


class AppLifecycle:
    """Fans application focus, visibility and unload events out to listeners."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Callable[..., None]]] = {}

    def on(self, event: str, callback: Callable[..., None]) -> Callable[[], None]:
        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"unknown lifecycle event: {event}")
        self._listeners.setdefault(event, []).append(callback)

        def remove() -> None:
            listeners = self._listeners.get(event, [])
            if callback in listeners:
                listeners.remove(callback)

        return remove

    def emit(self, event: str, *args) -> None:
        for callback in list(self._listeners.get(event, [])):
            callback(*args)

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, []))


class PresenceManager:
    """Publishes the local user's presence and derives peers' presence views.

    Writes are best-effort: a failed write is logged and the next trigger
    (lifecycle event or heartbeat) tries again.
    """

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        display_name: str | None = None,
        config: PresenceConfig | None = None,
        *,
        now_func=_now_ms,
        tz: tzinfo | None = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.display_name = display_name or user_id
        self.config = config or PresenceConfig()
        self._now = now_func
        self._tz = tz
        self._last_published: tuple[bool, int] | None = None
        self._foreground = False
        self._detach: List[Callable[[], None]] = []
        self._tasks: Set[asyncio.Task] = set()
        self._heartbeat_task: asyncio.Task | None = None

    @property
    def last_published(self) -> tuple[bool, int] | None:
        return self._last_published

    async def publish(self, online: bool) -> bool:
        """Write the online flag; returns ``False`` when throttled or failed."""

        now_ms = self._now()
        if online and self._last_published is not None:
            was_online, published_ms = self._last_published
            if was_online and now_ms - published_ms < self.config.min_publish_interval_s * 1000:
                return False
        record = {
            "display_name": self.display_name,
            "online": online,
            "last_active_ms": now_ms,
        }
        try:
            await self.store.write(presence_path(self.user_id), record)
        except StoreError as exc:
            logger.warning("presence publish failed for %s: %s", self.user_id, exc)
            return False
        self._last_published = (online, now_ms)
        return True

    def publish_soon(self, online: bool) -> asyncio.Task:
        task = asyncio.ensure_future(self.publish(online))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def flush(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def on_focus(self) -> None:
        self._foreground = True
        self.publish_soon(True)

    def on_blur(self) -> None:
        self._foreground = False
        self.publish_soon(False)

    def on_visibility_change(self, visible: bool) -> None:
        self._foreground = bool(visible)
        self.publish_soon(bool(visible))

    def on_unload(self) -> None:
        self._foreground = False
        self.publish_soon(False)

    def attach(self, lifecycle: AppLifecycle) -> None:
        self.detach()
        self._detach = [
            lifecycle.on(FOCUS, self.on_focus),
            lifecycle.on(BLUR, self.on_blur),
            lifecycle.on(VISIBILITY, self.on_visibility_change),
            lifecycle.on(UNLOAD, self.on_unload),
        ]

    def detach(self) -> None:
        for remove in self._detach:
            remove()
        self._detach = []

    def start_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat())

    async def stop_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        try:
            await self._heartbeat_task
        except asyncio.CancelledError:
            pass
        self._heartbeat_task = None

    async def _heartbeat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.config.heartbeat_interval_s)
                if self._foreground:
                    await self.publish(True)
        except asyncio.CancelledError:
            return

    def view(self, record: PresenceRecord) -> PresenceView:
        now_ms = self._now()
        stale = (
            record.last_active_ms is None
            or now_ms - record.last_active_ms > self.config.online_stale_after_s * 1000
        )
        online = record.online and not stale
        label = "online" if online else format_last_seen(record.last_active_ms, now_ms, tz=self._tz)
        return PresenceView(
            user_id=record.user_id,
            display_name=record.display_name,
            online=online,
            advisory=record.online and stale,
            last_active_ms=record.last_active_ms,
            label=label,
        )

    def observe(self, user_id: str, callback: Callable[[PresenceView | None], None]) -> Subscription:
        def on_snapshot(snapshot: DocumentSnapshot) -> None:
            if not snapshot.exists:
                callback(None)
                return
            callback(self.view(PresenceRecord.from_snapshot(snapshot)))

        return self.store.subscribe_document(presence_path(user_id), on_snapshot)

    async def lookup(self, user_id: str) -> PresenceView | None:
        doc = await self.store.get(presence_path(user_id))
        if doc is None:
            return None
        return self.view(PresenceRecord.from_snapshot(doc))

    async def close(self) -> None:
        self.detach()
        await self.stop_heartbeat()
        await self.flush()
