"""Outbound stream events for renderer/UI subscribers."""

from enum import Enum
from typing import Any, Callable

from chatstream.logging import get_logger

log = get_logger(__name__)


class OutboundEvent(str, Enum):
    RESPONSE = "response"
    ERROR = "error"
    END = "end"
    MESSAGE_GENERATED = "message_generated"


StreamListener = Callable[[dict[str, Any]], None]


class StreamEventEmitter:
    """Fan out structured stream events to registered listeners.

    Listener failures are logged and never interrupt generation.
    """

    def __init__(self) -> None:
        self._listeners: dict[OutboundEvent, list[StreamListener]] = {}

    def on(self, event: OutboundEvent | str, listener: StreamListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unregisters it."""
        key = OutboundEvent(event)
        self._listeners.setdefault(key, []).append(listener)

        def _unsubscribe() -> None:
            self.off(key, listener)

        return _unsubscribe

    def off(self, event: OutboundEvent | str, listener: StreamListener) -> None:
        listeners = self._listeners.get(OutboundEvent(event), [])
        if listener in listeners:
            listeners.remove(listener)

    def emit(self, event: OutboundEvent | str, payload: dict[str, Any]) -> None:
        key = OutboundEvent(event)
        for listener in list(self._listeners.get(key, [])):
            try:
                listener(payload)
            except Exception as e:
                log.warning("Stream listener failed", event_name=key.value, error=str(e))
