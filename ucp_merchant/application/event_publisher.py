"""Domain event publishing.

Aggregates record events while they change; services collect them after a
successful save and hand them to the publisher, which writes one structured
log line per event and keeps a bounded history for inspection.
"""

from collections import deque
from collections.abc import Iterable
from typing import Any

import structlog

from ucp_merchant.domain.base import DomainEvent

logger = structlog.get_logger()


class LoggingEventPublisher:
    """Publish domain events as structured log lines."""

    def __init__(self, history_size: int = 100) -> None:
        self._history: deque[dict[str, Any]] = deque(maxlen=history_size)

    def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            data = event.to_dict()
            self._history.append(data)
            logger.info(
                "Domain event",
                event_type=data["event_type"],
                aggregate_type=data["aggregate_type"],
                aggregate_id=data["aggregate_id"],
                payload=data["payload"],
            )

    def recent(self, limit: int | None = None, event_type: str | None = None) -> list[dict[str, Any]]:
        """Get recently published events, newest last.

        Args:
            limit: Maximum number of events to return.
            event_type: Only return events of this type.
        """
        events = [e for e in self._history if event_type is None or e["event_type"] == event_type]
        if limit is not None:
            events = events[-limit:]
        return events

    def clear(self) -> None:
        self._history.clear()
