"""Structured merge events, mirrored to the standard logger."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_LEVELS = {
    "match": logging.DEBUG,
    "no_match": logging.DEBUG,
    "merge": logging.DEBUG,
    "conflict": logging.INFO,
    "inserted": logging.DEBUG,
    "updated": logging.DEBUG,
    "unchanged": logging.DEBUG,
    "duplicate_key": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class MergeEvent:
    kind: str
    address: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class MergeEventLog:
    """Thread-safe, append-only record of what happened during a run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[MergeEvent] = []

    def emit(self, kind: str, address: Optional[str] = None, **fields: Any) -> MergeEvent:
        event = MergeEvent(kind=kind, address=address, fields=fields)
        with self._lock:
            self._events.append(event)
        details = " ".join(f"{key}={value}" for key, value in fields.items())
        logger.log(EVENT_LEVELS.get(kind, logging.INFO), "%s %s %s", kind, address or "-", details)
        return event

    def events(self, kind: Optional[str] = None) -> List[MergeEvent]:
        with self._lock:
            snapshot = list(self._events)
        if kind is None:
            return snapshot
        return [event for event in snapshot if event.kind == kind]

    def count(self, kind: str) -> int:
        return len(self.events(kind))

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)
