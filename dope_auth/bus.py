"""
dope_auth/bus.py

Session broadcast bus: one event type, "token-updated", no payload.

The bus is an invalidation signal, not a data channel. Subscribers re-read the
token store themselves when notified. There is no replay; a subscriber that
joins late must poll current state once when it mounts.

Callbacks are plain callables taking no arguments. Anything that needs to do
async work should schedule it (see VerificationMachine.on_token_updated).
"""

import logging
from typing import Callable, Dict

logger = logging.getLogger(__name__)

TOKEN_UPDATED = "token-updated"

Callback = Callable[[], None]


class Subscription:
    """Handle returned by SessionBus.subscribe; close() detaches it."""

    def __init__(self, bus: "SessionBus", key: int):
        self._bus = bus
        self._key = key

    @property
    def active(self) -> bool:
        return self._key in self._bus._subscribers

    def close(self) -> None:
        self._bus._subscribers.pop(self._key, None)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class SessionBus:
    def __init__(self):
        self._subscribers: Dict[int, Callback] = {}
        self._next_key = 0
        self.published = 0

    def subscribe(self, callback: Callback) -> Subscription:
        key = self._next_key
        self._next_key += 1
        self._subscribers[key] = callback
        return Subscription(self, key)

    def publish(self) -> None:
        """
        Deliver TOKEN_UPDATED to every live subscriber.

        A failing subscriber is logged and skipped; the others still run.
        """
        self.published += 1
        # snapshot: callbacks may subscribe/unsubscribe while we iterate
        for key, callback in list(self._subscribers.items()):
            try:
                callback()
            except Exception:
                logger.exception("%s subscriber %d failed", TOKEN_UPDATED, key)

    def __len__(self) -> int:
        return len(self._subscribers)
