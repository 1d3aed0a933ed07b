"""Notification service for publishing engine events to delivery collaborators."""

import logging
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

Sink = Callable[[str, dict[str, Any]], None]


def log_sink(event: str, payload: dict[str, Any]) -> None:
    """Default sink: record the event in the server log."""
    logger.info("Event %s: %s", event, payload)


class NotificationService:
    """Fan out events such as "contribution.completed" to registered sinks.

    Delivery is fire-and-forget: publish() is called after the state change
    has been committed and a failing sink never affects the caller.
    """

    def __init__(self, sinks: Iterable[Sink] | None = None):
        self._sinks: list[Sink] = list(sinks) if sinks is not None else [log_sink]

    def subscribe(self, sink: Sink) -> None:
        """Register an additional sink."""
        self._sinks.append(sink)

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        """Deliver event to every sink.

        Args:
            event: Event name, "<kind>.<state>"
            payload: JSON-friendly event data
        """
        for sink in self._sinks:
            try:
                sink(event, payload)
            except Exception:
                logger.exception("Notification sink %r failed for event %s", sink, event)


__all__ = ["NotificationService", "Sink", "log_sink"]
