from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]
# Returns the next snapshot for a subscription, or None when nothing changed.
Evaluator = Callable[[Any], Optional[Any]]


@dataclass(eq=False)
class Subscription:
    key: str
    evaluate: Evaluator
    callback: Callback
    hub: Optional["SubscriptionHub"] = field(default=None, repr=False)
    last: Any = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self.hub is not None

    def deliver(self, snapshot: Any) -> None:
        self.last = snapshot
        self.callback(snapshot)

    def cancel(self) -> None:
        if self.hub is not None:
            self.hub.unsubscribe(self)


class SubscriptionHub:
    """Registers store subscriptions and re-delivers them when their key changes.

    Keys are collection paths for query subscriptions and document paths for
    document subscriptions. Deliveries for one subscription happen in publish
    order, which is commit order for the owning store.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, List[Subscription]] = {}

    def subscribe(self, key: str, evaluate: Evaluator, callback: Callback) -> Subscription:
        subscription = Subscription(key=key, evaluate=evaluate, callback=callback, hub=self)
        self._subscriptions.setdefault(key, []).append(subscription)
        self.refresh(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.hub = None
        subs = self._subscriptions.get(subscription.key)
        if not subs:
            return
        try:
            subs.remove(subscription)
        except ValueError:
            return
        if not subs:
            self._subscriptions.pop(subscription.key, None)

    def publish(self, keys: Iterable[str]) -> None:
        seen: set[int] = set()
        for key in keys:
            for subscription in list(self._subscriptions.get(key, [])):
                if id(subscription) in seen:
                    continue
                seen.add(id(subscription))
                self.refresh(subscription)

    def refresh(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        snapshot = subscription.evaluate(subscription.last)
        if snapshot is None:
            return
        try:
            subscription.deliver(snapshot)
        except Exception:
            logger.exception("subscription callback failed for %s", subscription.key)

    def count(self, key: str | None = None) -> int:
        if key is not None:
            return len(self._subscriptions.get(key, []))
        return sum(len(subs) for subs in self._subscriptions.values())
