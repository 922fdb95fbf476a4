from __future__ import annotations

import os
from dataclasses import dataclass, field

from .calls import CallConfig
from .conversations import SyncConfig
from .presence import PresenceConfig
from .typing_indicator import TypingConfig


@dataclass(frozen=True)
class ClientConfig:
    presence: PresenceConfig = field(default_factory=PresenceConfig)
    typing: TypingConfig = field(default_factory=TypingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    calls: CallConfig = field(default_factory=CallConfig)
    heartbeat_enabled: bool = True


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_non_negative_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_bool01(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in {"0", "1"}:
        raise ValueError(f"{name} must be 0 or 1")
    return raw == "1"


def load_client_config_from_env() -> ClientConfig:
    presence = PresenceConfig(
        min_publish_interval_s=_parse_non_negative_float("CHATSYNC_PRESENCE_MIN_PUBLISH_INTERVAL_S", 30.0),
        heartbeat_interval_s=_parse_non_negative_float("CHATSYNC_PRESENCE_HEARTBEAT_S", 60.0),
        online_stale_after_s=_parse_non_negative_float("CHATSYNC_PRESENCE_STALE_AFTER_S", 180.0),
    )
    typing = TypingConfig(
        idle_clear_s=_parse_non_negative_float("CHATSYNC_TYPING_IDLE_CLEAR_S", 3.0),
        stale_after_s=_parse_non_negative_float("CHATSYNC_TYPING_STALE_AFTER_S", 10.0),
        refresh_interval_s=_parse_non_negative_float("CHATSYNC_TYPING_REFRESH_S", 5.0),
    )
    sync = SyncConfig(
        message_window=max(1, _parse_non_negative_int("CHATSYNC_MESSAGE_WINDOW", 150)),
        receipt_debounce_s=_parse_non_negative_float("CHATSYNC_RECEIPT_DEBOUNCE_S", 0.25),
    )
    ring_timeout_s = _parse_non_negative_float("CHATSYNC_CALL_RING_TIMEOUT_S", 0.0)
    calls = CallConfig(ring_timeout_s=ring_timeout_s or None)
    return ClientConfig(
        presence=presence,
        typing=typing,
        sync=sync,
        calls=calls,
        heartbeat_enabled=_parse_bool01("CHATSYNC_PRESENCE_HEARTBEAT_ENABLED", True),
    )
