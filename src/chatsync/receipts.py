from __future__ import annotations

import asyncio
import logging
from typing import Dict, Sequence, Set, Tuple

from .models import STATUS_READ, Message, message_path
from .store import RemoteStore, StoreError, set_field

logger = logging.getLogger(__name__)


class ReadReceiptBatcher:
    """Marks peers' unread messages as read with one batched write.

    Snapshot deliveries inside the debounce window coalesce into a single
    batch. A failed batch is logged only; the next delivery finds the same
    unread messages and tries again.
    """

    def __init__(self, store: RemoteStore, user_id: str, *, debounce_s: float = 0.25) -> None:
        self.store = store
        self.user_id = user_id
        self.debounce_s = debounce_s
        self._latest: Dict[str, Tuple[Message, ...]] = {}
        self._in_flight: Set[Tuple[str, str]] = set()
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: Set[asyncio.Task] = set()
        self.batches_committed = 0

    def unread_from_peers(self, messages: Sequence[Message]) -> list[Message]:
        return [
            message
            for message in messages
            if message.sender_id != self.user_id
            and message.status != STATUS_READ
            and message.created_at_ms is not None
            and not message.pending
        ]

    def observe(self, conv_id: str, messages: Sequence[Message]) -> None:
        self._latest[conv_id] = tuple(messages)
        if not self.unread_from_peers(messages):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self.debounce_s, self._fire)

    def _fire(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def flush(self) -> int:
        """Commit one batch per conversation; returns the number of messages marked."""

        marked = 0
        for conv_id, messages in list(self._latest.items()):
            unread = [
                message
                for message in self.unread_from_peers(messages)
                if (conv_id, message.msg_id) not in self._in_flight
            ]
            if not unread:
                continue
            keys = {(conv_id, message.msg_id) for message in unread}
            batch = self.store.batch()
            for message in unread:
                batch.update(message_path(conv_id, message.msg_id), [set_field("status", STATUS_READ)])
            self._in_flight.update(keys)
            try:
                await batch.commit()
            except StoreError as exc:
                logger.warning("read receipt batch failed for %s (%d messages): %s", conv_id, len(unread), exc)
                continue
            finally:
                self._in_flight.difference_update(keys)
            self.batches_committed += 1
            marked += len(unread)
        return marked

    def forget(self, conv_id: str) -> None:
        self._latest.pop(conv_id, None)
        if not self._latest and self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._latest.clear()
