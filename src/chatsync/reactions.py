from __future__ import annotations

import asyncio
from typing import Callable, Dict, Optional, Tuple

from .models import Message, message_path
from .store import DocumentNotFound, RemoteStore, StoreError, _now_ms, set_difference, set_union

ReactionKey = Tuple[str, str, str]
MessageLookup = Callable[[str, str], Optional[Message]]


class ReactionToggle:
    """Adds or removes the local user from one emoji's reactor set.

    Only set-union and set-difference are ever sent, so concurrent reactors
    never overwrite each other. The local user's most recent intent for a key
    shadows the observed state until a snapshot confirms it, which keeps a
    double toggle from turning into two unions.
    """

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        *,
        lookup: MessageLookup | None = None,
        intent_ttl_s: float = 5.0,
        now_func=_now_ms,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self._lookup = lookup
        self._intent_ttl_ms = int(intent_ttl_s * 1000)
        self._now = now_func
        self._locks: Dict[ReactionKey, asyncio.Lock] = {}
        self._lock_users: Dict[ReactionKey, int] = {}
        self._intents: Dict[ReactionKey, Tuple[bool, int]] = {}

    def set_lookup(self, lookup: MessageLookup | None) -> None:
        self._lookup = lookup

    def pending_intent(self, conv_id: str, msg_id: str, emoji: str) -> bool | None:
        intent = self._intents.get((conv_id, msg_id, emoji))
        return intent[0] if intent is not None else None

    async def toggle(self, conv_id: str, msg_id: str, emoji: str) -> bool | None:
        """Return ``True`` when added, ``False`` when removed, ``None`` if the message is gone."""

        if not emoji or "." in emoji:
            raise ValueError(f"invalid reaction key: {emoji!r}")
        key = (conv_id, msg_id, emoji)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                return await self._apply(key)
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                self._locks.pop(key, None)

    async def _apply(self, key: ReactionKey) -> bool | None:
        conv_id, msg_id, emoji = key
        present = await self._is_present(key)
        if present is None:
            return None
        add = not present
        self._intents[key] = (add, self._now())
        field_path = f"reactions.{emoji}"
        op = set_union(field_path, self.user_id) if add else set_difference(field_path, self.user_id)
        try:
            await self.store.update(message_path(conv_id, msg_id), [op])
        except DocumentNotFound:
            self._intents.pop(key, None)
            return None
        except StoreError:
            self._intents.pop(key, None)
            raise
        return add

    async def _is_present(self, key: ReactionKey) -> bool | None:
        conv_id, msg_id, emoji = key
        intent = self._intents.get(key)
        if intent is not None:
            if self._now() - intent[1] < self._intent_ttl_ms:
                return intent[0]
            self._intents.pop(key, None)
        if self._lookup is not None:
            message = self._lookup(conv_id, msg_id)
            if message is not None:
                return self.user_id in message.reactors(emoji)
        doc = await self.store.get(message_path(conv_id, msg_id))
        if doc is None:
            return None
        reactors = (doc.data.get("reactions") or {}).get(emoji) or []
        return self.user_id in reactors

    def reconcile(self, message: Message) -> None:
        """Drop intents the latest snapshot of ``message`` already reflects."""

        now_ms = self._now()
        for key in [k for k in self._intents if k[0] == message.conv_id and k[1] == message.msg_id]:
            wanted, at_ms = self._intents[key]
            if (self.user_id in message.reactors(key[2])) == wanted or now_ms - at_ms >= self._intent_ttl_ms:
                self._intents.pop(key, None)
