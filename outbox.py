"""Notices waiting for the user to see and dismiss them."""

from __future__ import annotations

import copy
from typing import Dict, List

from event_bus import Event, validate_event


class Outbox:
    def __init__(self) -> None:
        self._events: Dict[str, Event] = {}

    def enqueue(self, event: dict) -> None:
        validate_event(event)
        self._events[event["meta"]["event_id"]] = copy.deepcopy(event)

    def pending(self, surface: str | None = None) -> List[Event]:
        """Unacknowledged notices, oldest first, optionally for one surface."""
        return [e for e in self._events.values() if surface is None or e["meta"]["surface"] == surface]

    def ack(self, event_id: str) -> bool:
        return self._events.pop(event_id, None) is not None

    def clear(self) -> None:
        self._events.clear()
