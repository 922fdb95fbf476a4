from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Tuple

from .store import Document, DocumentSnapshot

USERS = "users"
CONVERSATIONS = "conversations"
CALLS = "calls"

KIND_DIRECT = "direct"
KIND_GROUP = "group"
KIND_SELF_NOTES = "saved"
CONVERSATION_KINDS = (KIND_DIRECT, KIND_GROUP, KIND_SELF_NOTES)

STATUS_SENT = "sent"
STATUS_READ = "read"
_STATUS_RANK = {STATUS_SENT: 0, STATUS_READ: 1}

CALL_RINGING = "ringing"
CALL_ACTIVE = "active"
CALL_ENDED = "ended"
CALL_DECLINED = "declined"
CALL_TERMINAL = (CALL_ENDED, CALL_DECLINED)

CALL_AUDIO = "audio"
CALL_VIDEO = "video"


def presence_path(user_id: str) -> str:
    return f"{USERS}/{user_id}"


def conversation_path(conv_id: str) -> str:
    return f"{CONVERSATIONS}/{conv_id}"


def messages_collection(conv_id: str) -> str:
    return f"{CONVERSATIONS}/{conv_id}/messages"


def message_path(conv_id: str, msg_id: str) -> str:
    return f"{messages_collection(conv_id)}/{msg_id}"


def typing_collection(conv_id: str) -> str:
    return f"{CONVERSATIONS}/{conv_id}/typing"


def typing_path(conv_id: str, user_id: str) -> str:
    return f"{typing_collection(conv_id)}/{user_id}"


def call_path(call_id: str) -> str:
    return f"{CALLS}/{call_id}"


def direct_conversation_id(user_a: str, user_b: str) -> str:
    first, second = sorted((user_a, user_b))
    return f"direct_{first}_{second}"


def self_notes_id(user_id: str) -> str:
    return f"saved_{user_id}"


def is_self_notes(conv_id: str, user_id: str) -> bool:
    return conv_id == self_notes_id(user_id)


def status_rank(status: str | None) -> int:
    return _STATUS_RANK.get(status or STATUS_SENT, 0)


def later_status(current: str | None, incoming: str | None) -> str:
    """Status never moves backwards from read to sent."""

    if status_rank(incoming) >= status_rank(current):
        return incoming or STATUS_SENT
    return current or STATUS_SENT


@dataclass(frozen=True)
class PresenceRecord:
    user_id: str
    display_name: str
    online: bool
    last_active_ms: int | None

    @classmethod
    def from_snapshot(cls, snapshot: Document | DocumentSnapshot) -> "PresenceRecord":
        data = snapshot.data or {}
        last_active = data.get("last_active_ms")
        return cls(
            user_id=snapshot.id,
            display_name=data.get("display_name") or snapshot.id,
            online=bool(data.get("online", False)),
            last_active_ms=last_active if isinstance(last_active, int) else None,
        )


@dataclass(frozen=True)
class LastMessage:
    message_id: str
    text: str
    timestamp_ms: int
    sender_id: str
    sender_name: str | None = None

    def to_dict(self) -> dict:
        return {
            "message_id": self.message_id,
            "text": self.text,
            "timestamp_ms": self.timestamp_ms,
            "sender_id": self.sender_id,
            "sender_name": self.sender_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "LastMessage | None":
        if not isinstance(data, Mapping) or not data.get("sender_id"):
            return None
        timestamp = data.get("timestamp_ms")
        return cls(
            message_id=data.get("message_id") or "",
            text=data.get("text") or "",
            timestamp_ms=timestamp if isinstance(timestamp, int) else 0,
            sender_id=data["sender_id"],
            sender_name=data.get("sender_name"),
        )


@dataclass(frozen=True)
class Conversation:
    conv_id: str
    kind: str
    members: Tuple[str, ...]
    name: str | None = None
    owner_id: str | None = None
    last_message: LastMessage | None = None
    unread_counts: Dict[str, int] = field(default_factory=dict)
    cleared_at: Dict[str, int] = field(default_factory=dict)
    pinned_by: Tuple[str, ...] = ()
    pinned_message_id: str | None = None
    created_at_ms: int | None = None

    @classmethod
    def from_snapshot(cls, snapshot: Document | DocumentSnapshot) -> "Conversation":
        data = snapshot.data or {}
        unread = {
            user: int(count)
            for user, count in (data.get("unread_counts") or {}).items()
            if isinstance(count, (int, float))
        }
        cleared = {
            user: int(ts) for user, ts in (data.get("cleared_at") or {}).items() if isinstance(ts, (int, float))
        }
        return cls(
            conv_id=snapshot.id,
            kind=data.get("kind") or KIND_DIRECT,
            members=tuple(data.get("members") or ()),
            name=data.get("name"),
            owner_id=data.get("owner_id"),
            last_message=LastMessage.from_dict(data.get("last_message")),
            unread_counts=unread,
            cleared_at=cleared,
            pinned_by=tuple(data.get("pinned_by") or ()),
            pinned_message_id=data.get("pinned_message_id"),
            created_at_ms=data.get("created_at_ms"),
        )

    def unread_for(self, user_id: str) -> int:
        return max(0, self.unread_counts.get(user_id, 0))

    def cleared_at_for(self, user_id: str) -> int | None:
        return self.cleared_at.get(user_id)

    def is_pinned_for(self, user_id: str) -> bool:
        return user_id in self.pinned_by

    def others(self, user_id: str) -> list[str]:
        return [member for member in self.members if member != user_id]

    def visible_last_message(self, user_id: str) -> LastMessage | None:
        """Hide a summary that sits at or below the member's clear watermark."""

        if self.last_message is None:
            return None
        watermark = self.cleared_at_for(user_id)
        if watermark is not None and self.last_message.timestamp_ms <= watermark:
            return None
        return self.last_message


@dataclass(frozen=True)
class ReplyPreview:
    message_id: str
    sender_name: str
    excerpt: str

    def to_dict(self) -> dict:
        return {"message_id": self.message_id, "sender_name": self.sender_name, "excerpt": self.excerpt}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "ReplyPreview | None":
        if not isinstance(data, Mapping):
            return None
        return cls(
            message_id=data.get("message_id") or "",
            sender_name=data.get("sender_name") or "",
            excerpt=data.get("excerpt") or "",
        )


@dataclass(frozen=True)
class Message:
    """A message as shown to one member.

    ``created_at_ms`` is the store-assigned timestamp and stays ``None`` until
    the write is confirmed; ``client_ts_ms`` orders the message until then.
    """

    msg_id: str
    conv_id: str
    sender_id: str
    text: str = ""
    media_url: str | None = None
    voice_url: str | None = None
    created_at_ms: int | None = None
    client_ts_ms: int = 0
    status: str = STATUS_SENT
    edited: bool = False
    reply: ReplyPreview | None = None
    reactions: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    pending: bool = False
    failed_action: str | None = None

    @classmethod
    def from_document(cls, conv_id: str, doc: Document) -> "Message":
        data = doc.data
        created = data.get("created_at_ms")
        reactions = {
            emoji: tuple(users)
            for emoji, users in (data.get("reactions") or {}).items()
            if isinstance(users, list) and users
        }
        return cls(
            msg_id=doc.id,
            conv_id=conv_id,
            sender_id=data.get("sender_id") or "",
            text=data.get("text") or "",
            media_url=data.get("media_url"),
            voice_url=data.get("voice_url"),
            created_at_ms=created if isinstance(created, int) else None,
            client_ts_ms=int(data.get("client_ts_ms") or 0),
            status=data.get("status") or STATUS_SENT,
            edited=bool(data.get("edited", False)),
            reply=ReplyPreview.from_dict(data.get("reply")),
            reactions=reactions,
        )

    @property
    def sort_ts(self) -> int:
        return self.created_at_ms if self.created_at_ms is not None else self.client_ts_ms

    @property
    def failed(self) -> bool:
        return self.failed_action is not None

    def reactors(self, emoji: str) -> Tuple[str, ...]:
        return self.reactions.get(emoji, ())

    def summary_text(self) -> str:
        if self.voice_url:
            return "Voice message"
        if self.media_url:
            return self.text or "Photo"
        return self.text

    def with_changes(self, **changes: Any) -> "Message":
        return replace(self, **changes)


@dataclass(frozen=True)
class TypingSignal:
    conv_id: str
    user_id: str
    is_typing: bool
    ts_ms: int

    @classmethod
    def from_document(cls, conv_id: str, doc: Document) -> "TypingSignal":
        ts = doc.data.get("ts_ms")
        return cls(
            conv_id=conv_id,
            user_id=doc.id,
            is_typing=bool(doc.data.get("is_typing", False)),
            ts_ms=ts if isinstance(ts, int) else 0,
        )


@dataclass(frozen=True)
class CallSession:
    call_id: str
    caller_id: str
    receiver_id: str
    status: str
    kind: str = CALL_AUDIO
    offer: Any = None
    answer: Any = None
    created_at_ms: int | None = None
    reason: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: Document | DocumentSnapshot) -> "CallSession":
        data = snapshot.data or {}
        return cls(
            call_id=snapshot.id,
            caller_id=data.get("caller_id") or "",
            receiver_id=data.get("receiver_id") or "",
            status=data.get("status") or CALL_ENDED,
            kind=data.get("kind") or CALL_AUDIO,
            offer=data.get("offer"),
            answer=data.get("answer"),
            created_at_ms=data.get("created_at_ms"),
            reason=data.get("reason"),
        )

    @property
    def terminal(self) -> bool:
        return self.status in CALL_TERMINAL

    def peer_of(self, user_id: str) -> str:
        return self.receiver_id if user_id == self.caller_id else self.caller_id
