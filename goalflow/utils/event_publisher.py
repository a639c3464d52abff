"""
Event publishers for goal-completion actions

Contract:
    publish(source, event_name, payload) -> None

Delivery is at-most-once from the orchestrator's side: it never
retries, and publish errors are logged and swallowed by the caller.
"""

import copy
import json
import logging
from typing import Any, Dict, List

logger = logging.getLogger(__name__)

EVENT_SOURCE = "goalflow.goals"


class EventPublisher:
    """Base publisher. Subclasses implement publish()."""

    def publish(self, source: str, event_name: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class LoggingEventPublisher(EventPublisher):
    """Writes events to the log (default when no bus is wired)."""

    def publish(self, source: str, event_name: str, payload: Dict[str, Any]) -> None:
        logger.info(f"Event {source}/{event_name}: {json.dumps(payload, default=str)}")


class InMemoryEventPublisher(EventPublisher):
    """Keeps published events in a list (tests and the dev server)."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def publish(self, source: str, event_name: str, payload: Dict[str, Any]) -> None:
        self.events.append({
            'source': source,
            'event_name': event_name,
            'payload': copy.deepcopy(payload),
        })

    def names(self) -> List[str]:
        return [e['event_name'] for e in self.events]

    def clear(self) -> None:
        self.events.clear()
