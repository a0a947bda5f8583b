"""Summary: Connection lifecycle event hooks.

Importance: Exposes side-effect points for an external notifier without implementing delivery.
Alternatives: Send notifications directly from each service method.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConnectionEvent:
    """Summary: A lifecycle event emitted after a successful write.

    Importance: Carries enough context for a notifier to decide who to contact.
    Alternatives: Publish the full connection record.
    """

    name: str
    connection_id: str
    actor_profile_id: str
    notify_profile_id: str | None
    created_at: str
    payload: dict[str, Any] = field(default_factory=dict)


class EventSink(ABC):
    """Summary: Abstract destination for lifecycle events.

    Importance: Keeps notification delivery swappable and out of the core.
    Alternatives: Hardcode an email or push provider.
    """

    @abstractmethod
    def publish(self, event: ConnectionEvent) -> None:
        """Summary: Accept an event for delivery.

        Importance: Called once per successful state change.
        Alternatives: Batch events per request.
        """


class LoggingEventSink(EventSink):
    """Summary: Event sink that only logs events.

    Importance: Default sink for local runs with no notifier configured.
    Alternatives: Drop events silently.
    """

    def publish(self, event: ConnectionEvent) -> None:
        logger.info(
            "Event %s on connection %s (notify %s).",
            event.name,
            event.connection_id,
            event.notify_profile_id or "nobody",
        )


class InMemoryEventSink(EventSink):
    """Summary: Event sink that records events in a list.

    Importance: Enables deterministic assertions on notifications in tests.
    Alternatives: Patch the logging sink.
    """

    def __init__(self) -> None:
        self.events: list[ConnectionEvent] = []

    def publish(self, event: ConnectionEvent) -> None:
        self.events.append(event)

    def names(self) -> list[str]:
        return [event.name for event in self.events]
