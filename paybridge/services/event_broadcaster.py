"""In-process fan-out of payment and invoice events to subscribed listeners."""

import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

# Event types
PAYMENT_UPDATED = "payment.updated"
INVOICE_UPDATED = "invoice.updated"
CALLBACK_RECEIVED = "callback.received"
NOTIFICATION = "notification"

Listener = Callable[[str, dict[str, Any], str | None], Awaitable[None] | None]


class EventBroadcaster:
    """Delivers events to every subscribed listener.

    A listener is called as ``listener(event, payload, room)`` and may be sync
    or async. ``room`` scopes an event to one audience (e.g. ``client_<id>``);
    ``None`` means everyone. Listener failures are logged and never raised.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def emit(self, event: str, payload: dict[str, Any], room: str | None = None) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event, payload, room)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Listener failed for event %s", event)
