from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from typing import Callable, Dict, Iterable, List, Sequence

from .hub import Subscription
from .models import (
    CONVERSATIONS,
    KIND_DIRECT,
    KIND_GROUP,
    KIND_SELF_NOTES,
    STATUS_SENT,
    Conversation,
    LastMessage,
    Message,
    PresenceRecord,
    ReplyPreview,
    conversation_path,
    direct_conversation_id,
    is_self_notes,
    later_status,
    message_path,
    messages_collection,
    presence_path,
    self_notes_id,
)
from .reactions import ReactionToggle
from .receipts import ReadReceiptBatcher
from .store import (
    SERVER_TIMESTAMP,
    AlreadyExists,
    DocumentNotFound,
    DocumentSnapshot,
    PreconditionFailed,
    Query,
    QuerySnapshot,
    RemoteStore,
    StoreError,
    _now_ms,
    delete_field,
    increment,
    set_difference,
    set_field,
    set_union,
)
from .typing_indicator import TypingController

logger = logging.getLogger(__name__)

REPLY_EXCERPT_CHARS = 120


@dataclass(frozen=True)
class SyncConfig:
    message_window: int = 150
    receipt_debounce_s: float = 0.25


def conversation_activity_ms(conversation: Conversation) -> int:
    if conversation.last_message is not None:
        return conversation.last_message.timestamp_ms
    return conversation.created_at_ms or 0


def sort_conversations(conversations: Iterable[Conversation], user_id: str) -> list[Conversation]:
    """Pinned first, then most recent activity, then id for a stable order."""

    return sorted(
        conversations,
        key=lambda conv: (not conv.is_pinned_for(user_id), -conversation_activity_ms(conv), conv.conv_id),
    )


def group_by_day(messages: Sequence[Message], *, tz: tzinfo | None = None) -> list[tuple[date, list[Message]]]:
    groups: list[tuple[date, list[Message]]] = []
    for message in messages:
        day = datetime.fromtimestamp(message.sort_ts / 1000, tz).date()
        if groups and groups[-1][0] == day:
            groups[-1][1].append(message)
        else:
            groups.append((day, [message]))
    return groups


ViewListener = Callable[["ActiveConversation"], None]


class ActiveConversation:
    """Reconciles the open conversation into an ordered, member-specific view.

    The view is recomputed from the latest conversation and message snapshots
    plus local placeholders on every delivery, never patched incrementally.
    """

    def __init__(
        self,
        sync: "ConversationSynchronizer",
        conv_id: str,
        listener: ViewListener | None = None,
    ) -> None:
        self.conv_id = conv_id
        self.conversation: Conversation | None = None
        self.messages: List[Message] = []
        self._sync = sync
        self._confirmed: Dict[str, Message] = {}
        self._pending: Dict[str, Message] = {
            msg_id: message for msg_id, message in sync.outbox.items() if message.conv_id == conv_id
        }
        self._statuses: Dict[str, str] = {}
        self._failures: Dict[str, str] = {}
        self._listeners: List[ViewListener] = [listener] if listener is not None else []
        self._closed = False
        store = sync.store
        self._conversation_sub = store.subscribe_document(conversation_path(conv_id), self._on_conversation)
        query = Query(messages_collection(conv_id)).ordered("created_at_ms").last(sync.config.message_window)
        self._messages_sub = store.subscribe(query, self._on_messages)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exists(self) -> bool:
        return self.conversation is not None

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def find(self, msg_id: str) -> Message | None:
        for message in self.messages:
            if message.msg_id == msg_id:
                return message
        return None

    def day_groups(self, *, tz: tzinfo | None = None) -> list[tuple[date, list[Message]]]:
        return group_by_day(self.messages, tz=tz)

    def _on_conversation(self, snapshot: DocumentSnapshot) -> None:
        self.conversation = Conversation.from_snapshot(snapshot) if snapshot.exists else None
        self._recompute()

    def _on_messages(self, snapshot: QuerySnapshot) -> None:
        confirmed: Dict[str, Message] = {}
        for doc in snapshot:
            message = Message.from_document(self.conv_id, doc)
            status = later_status(self._statuses.get(message.msg_id), message.status)
            self._statuses[message.msg_id] = status
            confirmed[message.msg_id] = message.with_changes(status=status)
            if message.created_at_ms is not None:
                self._pending.pop(message.msg_id, None)
        self._confirmed = confirmed
        self._recompute()

    def add_pending(self, message: Message) -> None:
        self._pending[message.msg_id] = message
        self._recompute()

    def drop_pending(self, msg_id: str) -> None:
        if self._pending.pop(msg_id, None) is not None:
            self._recompute()

    def mark_failed(self, msg_id: str, action: str) -> None:
        self._failures[msg_id] = action
        self._recompute()

    def clear_failure(self, msg_id: str) -> None:
        if self._failures.pop(msg_id, None) is not None:
            self._recompute()

    def _recompute(self) -> None:
        if self._closed:
            return
        merged: Dict[str, Message] = dict(self._confirmed)
        for msg_id, placeholder in self._pending.items():
            merged.setdefault(msg_id, placeholder)
        for msg_id, action in self._failures.items():
            if msg_id in merged:
                merged[msg_id] = merged[msg_id].with_changes(failed_action=action)
        watermark = None
        if self.conversation is not None:
            watermark = self.conversation.cleared_at_for(self._sync.user_id)
        visible = [m for m in merged.values() if watermark is None or m.sort_ts > watermark]
        visible.sort(key=lambda m: (m.sort_ts, m.msg_id))
        self.messages = visible
        self._sync._view_changed(self)
        for listener in list(self._listeners):
            listener(self)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._conversation_sub.cancel()
        self._messages_sub.cancel()
        self._listeners.clear()


class ConversationSynchronizer:
    """Keeps one member's conversation list and open conversation in sync.

    Shared fields (unread counters, member and pin sets, reactions) change
    only through the store's atomic field operations.
    """

    def __init__(
        self,
        store: RemoteStore,
        user_id: str,
        display_name: str | None = None,
        config: SyncConfig | None = None,
        *,
        typing: TypingController | None = None,
        receipts: ReadReceiptBatcher | None = None,
        reactions: ReactionToggle | None = None,
        now_func=_now_ms,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.user_id = user_id
        self.display_name = display_name or user_id
        self.config = config or SyncConfig()
        self.typing = typing
        self.receipts = receipts or ReadReceiptBatcher(store, user_id, debounce_s=self.config.receipt_debounce_s)
        self.reactions = reactions or ReactionToggle(store, user_id, now_func=now_func)
        self.reactions.set_lookup(self.find_message)
        self._now = now_func
        self._new_id = id_factory or (lambda: uuid.uuid4().hex)
        self._active: ActiveConversation | None = None
        self._conversations: Dict[str, Conversation] = {}
        self.outbox: Dict[str, Message] = {}

    @property
    def active(self) -> ActiveConversation | None:
        return self._active

    def find_message(self, conv_id: str, msg_id: str) -> Message | None:
        if self._active is None or self._active.conv_id != conv_id:
            return None
        return self._active.find(msg_id)

    def _view_changed(self, view: ActiveConversation) -> None:
        self.receipts.observe(view.conv_id, view.messages)
        for message in view.messages:
            self.reactions.reconcile(message)

    def subscribe_conversation_list(self, callback: Callable[[list[Conversation]], None]) -> Subscription:
        query = Query(CONVERSATIONS).where("members", "array_contains", self.user_id)

        def on_snapshot(snapshot: QuerySnapshot) -> None:
            conversations = [Conversation.from_snapshot(doc) for doc in snapshot]
            self._conversations = {conv.conv_id: conv for conv in conversations}
            callback(sort_conversations(conversations, self.user_id))

        return self.store.subscribe(query, on_snapshot)

    def cached_conversation(self, conv_id: str) -> Conversation | None:
        return self._conversations.get(conv_id)

    async def open_conversation(self, conv_id: str, listener: ViewListener | None = None) -> ActiveConversation:
        """Make ``conv_id`` the single live conversation and reset our unread counter.

        Raises :class:`PermissionError` without writing anything when the
        conversation exists and we are not a member.
        """

        try:
            doc = await self.store.get(conversation_path(conv_id))
        except StoreError as exc:
            logger.warning("membership check failed for %s: %s", conv_id, exc)
            doc = None
        if doc is not None and self.user_id not in Conversation.from_snapshot(doc).members:
            raise PermissionError(f"{self.user_id} is not a member of {conv_id}")
        self.close_conversation()
        view = ActiveConversation(self, conv_id, listener)
        self._active = view
        if doc is None:
            # Unverified membership; the view's first snapshot has nothing to reset yet.
            return view
        try:
            await self.store.update(conversation_path(conv_id), [set_field(f"unread_counts.{self.user_id}", 0)])
        except DocumentNotFound:
            logger.debug("opened conversation %s no longer exists", conv_id)
        except StoreError as exc:
            logger.warning("unread reset failed for %s: %s", conv_id, exc)
        return view

    def close_conversation(self) -> None:
        view = self._active
        if view is None:
            return
        self._active = None
        if self.typing is not None:
            self.typing.on_leave_conversation(view.conv_id)
        self.receipts.forget(view.conv_id)
        view.close()

    def _view_for(self, conv_id: str) -> ActiveConversation | None:
        if self._active is not None and self._active.conv_id == conv_id:
            return self._active
        return None

    async def display_name_of(self, user_id: str) -> str:
        if user_id == self.user_id:
            return self.display_name
        try:
            doc = await self.store.get(presence_path(user_id))
        except StoreError:
            return user_id
        return PresenceRecord.from_snapshot(doc).display_name if doc is not None else user_id

    async def _reply_preview(self, target: Message) -> ReplyPreview:
        # A denormalized copy; later edits of the target do not flow into it.
        sender_name = "You" if target.sender_id == self.user_id else await self.display_name_of(target.sender_id)
        return ReplyPreview(
            message_id=target.msg_id,
            sender_name=sender_name,
            excerpt=target.summary_text()[:REPLY_EXCERPT_CHARS],
        )

    async def send_message(
        self,
        conv_id: str,
        text: str = "",
        *,
        media_url: str | None = None,
        voice_url: str | None = None,
        reply_to: Message | None = None,
    ) -> Message:
        """Append optimistically, then write the message and summary in one batch.

        A failed write leaves the placeholder marked ``failed_action="send"``;
        it is only retried through :meth:`resend_message`.
        """

        text = text.strip()
        if not text and not media_url and not voice_url:
            raise ValueError("message body required")
        reply = await self._reply_preview(reply_to) if reply_to is not None else None
        placeholder = Message(
            msg_id=self._new_id(),
            conv_id=conv_id,
            sender_id=self.user_id,
            text=text,
            media_url=media_url,
            voice_url=voice_url,
            client_ts_ms=self._now(),
            status=STATUS_SENT,
            reply=reply,
            pending=True,
        )
        self.outbox[placeholder.msg_id] = placeholder
        view = self._view_for(conv_id)
        if view is not None:
            view.add_pending(placeholder)
        if self.typing is not None:
            self.typing.on_send(conv_id)
        return await self._deliver(placeholder)

    async def resend_message(self, msg_id: str) -> Message:
        message = self.outbox.get(msg_id)
        if message is None or not message.failed:
            raise KeyError(f"no failed message {msg_id}")
        retry = message.with_changes(failed_action=None, pending=True)
        self.outbox[msg_id] = retry
        view = self._view_for(message.conv_id)
        if view is not None:
            view.clear_failure(msg_id)
        return await self._deliver(retry)

    async def _deliver(self, message: Message) -> Message:
        conv_id = message.conv_id
        view = self._view_for(conv_id)
        try:
            doc = await self.store.get(conversation_path(conv_id))
            if doc is None:
                raise DocumentNotFound(conversation_path(conv_id))
            conversation = Conversation.from_snapshot(doc)
            if self.user_id not in conversation.members:
                self.outbox.pop(message.msg_id, None)
                if view is not None:
                    view.drop_pending(message.msg_id)
                raise PermissionError(f"{self.user_id} is not a member of {conv_id}")
            summary = {
                "message_id": message.msg_id,
                "text": message.summary_text(),
                "timestamp_ms": SERVER_TIMESTAMP,
                "sender_id": self.user_id,
                "sender_name": self.display_name,
            }
            ops = [set_field("last_message", summary)]
            for member in conversation.others(self.user_id):
                ops.append(increment(f"unread_counts.{member}", 1))
            batch = self.store.batch()
            batch.create(message_path(conv_id, message.msg_id), self._message_document(message))
            batch.update(conversation_path(conv_id), ops)
            await batch.commit()
        except AlreadyExists:
            # An earlier attempt landed even though its reply was lost.
            logger.debug("message %s already stored", message.msg_id)
        except StoreError as exc:
            logger.warning("send failed for message %s in %s: %s", message.msg_id, conv_id, exc)
            failed = message.with_changes(failed_action="send")
            self.outbox[message.msg_id] = failed
            view = self._view_for(conv_id)
            if view is not None:
                view.mark_failed(message.msg_id, "send")
            return failed
        self.outbox.pop(message.msg_id, None)
        return message.with_changes(pending=False)

    def _message_document(self, message: Message) -> dict:
        return {
            "sender_id": message.sender_id,
            "text": message.text,
            "media_url": message.media_url,
            "voice_url": message.voice_url,
            "created_at_ms": SERVER_TIMESTAMP,
            "client_ts_ms": message.client_ts_ms,
            "status": STATUS_SENT,
            "edited": False,
            "reply": message.reply.to_dict() if message.reply is not None else None,
            "reactions": {},
        }

    async def _owned_message(self, conv_id: str, msg_id: str):
        doc = await self.store.get(message_path(conv_id, msg_id))
        if doc is None:
            return None
        if doc.data.get("sender_id") != self.user_id:
            raise PermissionError(f"{self.user_id} does not own message {msg_id}")
        return doc

    def _mark_failed(self, conv_id: str, msg_id: str, action: str) -> None:
        view = self._view_for(conv_id)
        if view is not None:
            view.mark_failed(msg_id, action)

    def _clear_failure(self, conv_id: str, msg_id: str) -> None:
        view = self._view_for(conv_id)
        if view is not None:
            view.clear_failure(msg_id)

    async def edit_message(self, conv_id: str, msg_id: str, text: str) -> bool:
        """Edit our own message in place; the last-message summary is left alone."""

        text = text.strip()
        if not text:
            raise ValueError("edited text required")
        try:
            if await self._owned_message(conv_id, msg_id) is None:
                return False
            await self.store.update(message_path(conv_id, msg_id), [set_field("text", text), set_field("edited", True)])
        except DocumentNotFound:
            return False
        except StoreError as exc:
            logger.warning("edit failed for message %s: %s", msg_id, exc)
            self._mark_failed(conv_id, msg_id, "edit")
            return False
        self._clear_failure(conv_id, msg_id)
        return True

    async def delete_message(self, conv_id: str, msg_id: str) -> bool:
        return await self.delete_messages(conv_id, [msg_id]) == 1

    async def delete_messages(self, conv_id: str, msg_ids: Sequence[str]) -> int:
        """Hard-delete our own messages and repair the summary if needed."""

        try:
            owned = [msg_id for msg_id in dict.fromkeys(msg_ids) if await self._owned_message(conv_id, msg_id)]
            if not owned:
                return 0
            batch = self.store.batch()
            for msg_id in owned:
                batch.delete(message_path(conv_id, msg_id))
            await batch.commit()
        except StoreError as exc:
            logger.warning("delete failed in %s: %s", conv_id, exc)
            for msg_id in msg_ids:
                self._mark_failed(conv_id, msg_id, "delete")
            return 0
        try:
            await self._repair_last_message(conv_id, set(owned))
        except StoreError as exc:
            logger.warning("last message repair failed for %s: %s", conv_id, exc)
        return len(owned)

    async def _repair_last_message(self, conv_id: str, removed: set[str]) -> None:
        doc = await self.store.get(conversation_path(conv_id))
        if doc is None:
            return
        last_message = Conversation.from_snapshot(doc).last_message
        if last_message is None or last_message.message_id not in removed:
            return
        tail = await self.store.query(Query(messages_collection(conv_id)).ordered("created_at_ms").last(1))
        if tail:
            message = Message.from_document(conv_id, tail[0])
            summary = LastMessage(
                message_id=message.msg_id,
                text=message.summary_text(),
                timestamp_ms=message.sort_ts,
                sender_id=message.sender_id,
                sender_name=await self.display_name_of(message.sender_id),
            )
            op = set_field("last_message", summary.to_dict())
        else:
            op = delete_field("last_message")
        try:
            # Only replace a summary that still points at a deleted message.
            await self.store.update(
                conversation_path(conv_id), [op], when={"last_message.message_id": (last_message.message_id,)}
            )
        except PreconditionFailed:
            logger.debug("summary for %s moved on before repair", conv_id)

    async def clear_history(self, conv_id: str) -> None:
        """Hide everything up to now for this member only.

        The self-notes conversation has a single member, so its messages are
        deleted for real instead.
        """

        if is_self_notes(conv_id, self.user_id):
            docs = await self.store.query(Query(messages_collection(conv_id)))
            batch = self.store.batch()
            for doc in docs:
                batch.delete(doc.path)
            if await self.store.get(conversation_path(conv_id)) is not None:
                batch.update(conversation_path(conv_id), [delete_field("last_message")])
            await batch.commit()
            return
        await self.store.update(conversation_path(conv_id), [set_field(f"cleared_at.{self.user_id}", SERVER_TIMESTAMP)])

    async def toggle_reaction(self, conv_id: str, msg_id: str, emoji: str) -> bool | None:
        try:
            result = await self.reactions.toggle(conv_id, msg_id, emoji)
        except StoreError as exc:
            logger.warning("reaction %s on %s failed: %s", emoji, msg_id, exc)
            self._mark_failed(conv_id, msg_id, "reaction")
            return None
        self._clear_failure(conv_id, msg_id)
        return result

    def on_input(self, conv_id: str) -> None:
        if self.typing is not None:
            self.typing.on_local_input(conv_id)

    def _new_conversation(self, kind: str, members: Sequence[str], **extra) -> dict:
        document = {
            "kind": kind,
            "members": list(members),
            "unread_counts": {member: 0 for member in members},
            "cleared_at": {},
            "pinned_by": [],
            "pinned_message_id": None,
            "created_at_ms": SERVER_TIMESTAMP,
        }
        document.update(extra)
        return document

    async def ensure_direct_conversation(self, peer_id: str) -> str:
        if peer_id == self.user_id:
            return await self.ensure_self_notes()
        conv_id = direct_conversation_id(self.user_id, peer_id)
        members = sorted((self.user_id, peer_id))
        try:
            await self.store.create(conversation_path(conv_id), self._new_conversation(KIND_DIRECT, members))
        except AlreadyExists:
            pass
        return conv_id

    async def ensure_self_notes(self) -> str:
        conv_id = self_notes_id(self.user_id)
        try:
            await self.store.create(
                conversation_path(conv_id), self._new_conversation(KIND_SELF_NOTES, [self.user_id])
            )
        except AlreadyExists:
            pass
        return conv_id

    async def create_group(self, name: str, members: Iterable[str]) -> str:
        name = name.strip()
        if not name:
            raise ValueError("group name required")
        roster = list(dict.fromkeys([self.user_id, *members]))
        conv_id = f"group_{self._new_id()}"
        await self.store.create(
            conversation_path(conv_id),
            self._new_conversation(KIND_GROUP, roster, name=name, owner_id=self.user_id),
        )
        return conv_id

    async def rename_group(self, conv_id: str, name: str) -> None:
        name = name.strip()
        if not name:
            raise ValueError("group name required")
        await self.store.update(conversation_path(conv_id), [set_field("name", name)], when={"kind": (KIND_GROUP,)})

    async def add_members(self, conv_id: str, user_ids: Iterable[str]) -> None:
        user_ids = [user_id for user_id in dict.fromkeys(user_ids)]
        if not user_ids:
            return
        ops = [set_union("members", *user_ids)]
        # Increment by zero creates a missing counter without touching an existing one.
        ops.extend(increment(f"unread_counts.{user_id}", 0) for user_id in user_ids)
        await self.store.update(conversation_path(conv_id), ops, when={"kind": (KIND_GROUP,)})

    async def leave_conversation(self, conv_id: str) -> None:
        if self._active is not None and self._active.conv_id == conv_id:
            self.close_conversation()
        await self.store.update(
            conversation_path(conv_id),
            [
                set_difference("members", self.user_id),
                set_difference("pinned_by", self.user_id),
                delete_field(f"unread_counts.{self.user_id}"),
                delete_field(f"cleared_at.{self.user_id}"),
            ],
        )

    async def pin_message(self, conv_id: str, msg_id: str | None) -> None:
        op = set_field("pinned_message_id", msg_id) if msg_id else delete_field("pinned_message_id")
        await self.store.update(conversation_path(conv_id), [op])

    async def pin_conversation(self, conv_id: str, pinned: bool = True) -> None:
        op = set_union("pinned_by", self.user_id) if pinned else set_difference("pinned_by", self.user_id)
        await self.store.update(conversation_path(conv_id), [op])

    def close(self) -> None:
        self.close_conversation()
        self.receipts.cancel()
