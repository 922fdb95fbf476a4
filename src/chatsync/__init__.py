"""Real-time chat synchronization and call signaling over a shared document store."""

from .calls import CallSignalingEngine, MediaSession
from .client import ChatClient
from .config import ClientConfig, load_client_config_from_env
from .conversations import ActiveConversation, ConversationSynchronizer
from .hub import Subscription, SubscriptionHub
from .presence import AppLifecycle, PresenceManager
from .server import main, simulate
from .store import InMemoryStore, RemoteStore, StoreError

__all__ = [
    "ActiveConversation",
    "AppLifecycle",
    "CallSignalingEngine",
    "ChatClient",
    "ClientConfig",
    "ConversationSynchronizer",
    "InMemoryStore",
    "MediaSession",
    "PresenceManager",
    "RemoteStore",
    "StoreError",
    "Subscription",
    "SubscriptionHub",
    "load_client_config_from_env",
    "main",
    "simulate",
]
