from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, Optional, Set

from .models import TypingSignal, is_self_notes, typing_collection, typing_path
from .store import Query, QuerySnapshot, RemoteStore, StoreError, _now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TypingConfig:
    idle_clear_s: float = 3.0
    stale_after_s: float = 10.0
    refresh_interval_s: float = 5.0


def typing_members(
    signals: Dict[str, TypingSignal], now_ms: int, stale_after_ms: int, *, exclude: str | None = None
) -> FrozenSet[str]:
    """Members whose flag is set and whose signal is not older than the window."""

    return frozenset(
        signal.user_id
        for signal in signals.values()
        if signal.is_typing and signal.user_id != exclude and now_ms - signal.ts_ms <= stale_after_ms
    )


class TypingObserver:
    """Live set of peers typing in one conversation.

    Signals expire on the reader side, so the set is recomputed when the
    freshest signal crosses the staleness window even without a new snapshot.
    """

    def __init__(
        self,
        store: RemoteStore,
        conv_id: str,
        local_user_id: str,
        callback: Callable[[FrozenSet[str]], None],
        *,
        stale_after_ms: int,
        now_func=_now_ms,
    ) -> None:
        self.conv_id = conv_id
        self._local_user_id = local_user_id
        self._callback = callback
        self._stale_after_ms = stale_after_ms
        self._now = now_func
        self._signals: Dict[str, TypingSignal] = {}
        self._members: FrozenSet[str] = frozenset()
        self._delivered = False
        self._timer: asyncio.TimerHandle | None = None
        self._closed = False
        self._subscription = store.subscribe(Query(typing_collection(conv_id)), self._on_snapshot)

    @property
    def members(self) -> FrozenSet[str]:
        return self._members

    def _on_snapshot(self, snapshot: QuerySnapshot) -> None:
        self._signals = {doc.id: TypingSignal.from_document(self.conv_id, doc) for doc in snapshot}
        self.recompute()

    def recompute(self) -> None:
        if self._closed:
            return
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        now_ms = self._now()
        members = typing_members(self._signals, now_ms, self._stale_after_ms, exclude=self._local_user_id)
        self._schedule_expiry(members, now_ms)
        if members != self._members or not self._delivered:
            self._members = members
            self._delivered = True
            self._callback(members)

    def _schedule_expiry(self, members: FrozenSet[str], now_ms: int) -> None:
        if not members:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        expires_at = min(self._signals[user].ts_ms for user in members) + self._stale_after_ms
        delay_s = max(0, expires_at - now_ms + 1) / 1000
        self._timer = loop.call_later(delay_s, self.recompute)

    def cancel(self) -> None:
        self._closed = True
        self._subscription.cancel()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class TypingController:
    """Publishes and clears the local user's per-conversation typing flag."""

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        config: TypingConfig | None = None,
        *,
        now_func=_now_ms,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.config = config or TypingConfig()
        self._now = now_func
        self._typing: Dict[str, int] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._writes: Dict[str, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    def is_typing(self, conv_id: str) -> bool:
        return conv_id in self._typing

    def on_local_input(self, conv_id: str) -> None:
        if is_self_notes(conv_id, self.user_id):
            return
        now_ms = self._now()
        last_ms = self._typing.get(conv_id)
        if last_ms is None or now_ms - last_ms >= self.config.refresh_interval_s * 1000:
            self._typing[conv_id] = now_ms
            self._enqueue(conv_id, True, now_ms)
        self._restart_timer(conv_id)

    def on_send(self, conv_id: str) -> None:
        self._clear(conv_id)

    def on_leave_conversation(self, conv_id: str) -> None:
        self._clear(conv_id)

    def _clear(self, conv_id: str) -> None:
        timer = self._timers.pop(conv_id, None)
        if timer is not None:
            timer.cancel()
        if self._typing.pop(conv_id, None) is None:
            return
        self._enqueue(conv_id, False, self._now())

    def _restart_timer(self, conv_id: str) -> None:
        timer = self._timers.pop(conv_id, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[conv_id] = loop.call_later(self.config.idle_clear_s, self._clear, conv_id)

    def _enqueue(self, conv_id: str, is_typing: bool, ts_ms: int) -> None:
        previous = self._writes.get(conv_id)
        task = asyncio.ensure_future(self._write(previous, conv_id, is_typing, ts_ms))
        self._writes[conv_id] = task
        self._tasks.add(task)

        def done(finished: asyncio.Task) -> None:
            self._tasks.discard(finished)
            if self._writes.get(conv_id) is finished:
                self._writes.pop(conv_id, None)

        task.add_done_callback(done)

    async def _write(
        self, previous: Optional[asyncio.Task], conv_id: str, is_typing: bool, ts_ms: int
    ) -> None:
        # Writes for one conversation land in the order they were issued.
        if previous is not None:
            await asyncio.gather(previous, return_exceptions=True)
        try:
            await self.store.write(typing_path(conv_id, self.user_id), {"is_typing": is_typing, "ts_ms": ts_ms})
        except StoreError as exc:
            logger.debug("typing write failed for %s in %s: %s", self.user_id, conv_id, exc)

    async def flush(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def observe(self, conv_id: str, callback: Callable[[FrozenSet[str]], None]) -> TypingObserver:
        return TypingObserver(
            self.store,
            conv_id,
            self.user_id,
            callback,
            stale_after_ms=int(self.config.stale_after_s * 1000),
            now_func=self._now,
        )

    def close(self) -> None:
        for conv_id in list(self._typing):
            self._clear(conv_id)
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
