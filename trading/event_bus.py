# trading/event_bus.py
from typing import Any, Callable, Dict

from utils.logger import logger

class EventBus:
    """
    Lightweight in-process pub/sub for stream events and order updates.
    Handlers run synchronously in publish order.
    """

    def __init__(self) -> None:
        self._subs: Dict[str, list[Callable[[Any], None]]] = {}

    def subscribe(self, topic: str, handler: Callable[[Any], None]) -> None:
        """Register a synchronous callback; wrap async handlers externally."""
        self._subs.setdefault(topic, []).append(handler)

    def unsubscribe(self, topic: str, handler: Callable[[Any], None]) -> None:
        handlers = self._subs.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, topic: str, payload: Any) -> None:
        """Publish an event; a failing handler is logged and does not stop the others."""
        for h in list(self._subs.get(topic, [])):
            try:
                h(payload)
            except Exception:
                logger.exception(f"EventBus handler failed topic={topic}")

# Common topics
TOPIC_MARKET = "market.event"
TOPIC_ORDER_EVENT = "stream.orders"
TOPIC_FILL = "stream.fills"
TOPIC_ACCOUNT = "stream.account"
TOPIC_ORDER = "order.update"
TOPIC_SUBSCRIPTION = "subscription.state"
TOPIC_DECODE_ERROR = "stream.decode_error"
TOPIC_GAP = "stream.gap"
TOPIC_ORDER_ERROR = "order.error"
