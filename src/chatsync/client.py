from __future__ import annotations

import logging
from datetime import tzinfo
from typing import Callable, List

from .calls import CallSignalingEngine, MediaSession
from .config import ClientConfig
from .conversations import ActiveConversation, ConversationSynchronizer, ViewListener
from .hub import Subscription
from .models import Conversation
from .presence import AppLifecycle, PresenceManager
from .reactions import ReactionToggle
from .receipts import ReadReceiptBatcher
from .store import RemoteStore, _now_ms
from .typing_indicator import TypingController

logger = logging.getLogger(__name__)


class ChatClient:
    """Wires the sync components for one signed-in user against one store."""

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        display_name: str | None = None,
        *,
        config: ClientConfig | None = None,
        media: MediaSession | None = None,
        now_func=_now_ms,
        tz: tzinfo | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.display_name = display_name or user_id
        self.config = config or ClientConfig()
        self.presence = PresenceManager(
            store, user_id, self.display_name, self.config.presence, now_func=now_func, tz=tz
        )
        self.typing = TypingController(store, user_id, self.config.typing, now_func=now_func)
        self.receipts = ReadReceiptBatcher(store, user_id, debounce_s=self.config.sync.receipt_debounce_s)
        self.reactions = ReactionToggle(store, user_id, now_func=now_func)
        self.conversations = ConversationSynchronizer(
            store,
            user_id,
            self.display_name,
            self.config.sync,
            typing=self.typing,
            receipts=self.receipts,
            reactions=self.reactions,
            now_func=now_func,
            id_factory=id_factory,
        )
        self.calls: CallSignalingEngine | None = None
        if media is not None:
            self.calls = CallSignalingEngine(
                store, user_id, media, presence=self.presence, config=self.config.calls, id_factory=id_factory
            )
        self.conversation_list: List[Conversation] = []
        self._list_listeners: List[Callable[[List[Conversation]], None]] = []
        self._list_sub: Subscription | None = None
        self._started = False

    def on_conversation_list(self, listener: Callable[[List[Conversation]], None]) -> Callable[[], None]:
        self._list_listeners.append(listener)

        def remove() -> None:
            if listener in self._list_listeners:
                self._list_listeners.remove(listener)

        return remove

    def _on_list(self, conversations: List[Conversation]) -> None:
        self.conversation_list = conversations
        for listener in list(self._list_listeners):
            listener(conversations)

    async def start(self, lifecycle: AppLifecycle | None = None) -> None:
        if self._started:
            return
        self._started = True
        if lifecycle is not None:
            self.presence.attach(lifecycle)
        self.presence.on_focus()
        if self.config.heartbeat_enabled:
            self.presence.start_heartbeat()
        self._list_sub = self.conversations.subscribe_conversation_list(self._on_list)
        if self.calls is not None:
            self.calls.listen()
        logger.info("chat client started for %s", self.user_id)

    async def open(self, conv_id: str, listener: ViewListener | None = None) -> ActiveConversation:
        return await self.conversations.open_conversation(conv_id, listener)

    async def send(self, conv_id: str, text: str = "", **kwargs):
        return await self.conversations.send_message(conv_id, text, **kwargs)

    async def settle(self) -> None:
        """Wait for background writes (presence, typing, receipts, calls) to finish."""

        await self.presence.flush()
        await self.typing.flush()
        await self.receipts.drain()
        if self.calls is not None:
            await self.calls.drain()

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        if self.calls is not None:
            await self.calls.close()
        self.conversations.close()
        self.typing.close()
        await self.typing.flush()
        if self._list_sub is not None:
            self._list_sub.cancel()
            self._list_sub = None
        self.presence.on_unload()
        await self.presence.close()
        logger.info("chat client stopped for %s", self.user_id)
