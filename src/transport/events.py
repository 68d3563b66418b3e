"""Structured lifecycle log shared by the session components.

Every state transition (connectivity, gathering, call state, capture) is
recorded here so presentation layers can render status indicators without
scraping log lines.
"""

from __future__ import annotations

import itertools
import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LifecycleEvent:
    source: str
    event: str
    detail: dict[str, Any] = field(default_factory=dict)
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict[str, Any]:
        return {
            "at": self.at.isoformat(),
            "source": self.source,
            "event": self.event,
            "detail": dict(self.detail),
        }


EventObserver = Callable[[LifecycleEvent], None]


class SessionLog:
    """Bounded in-memory event stream with subscribers."""

    def __init__(self, limit: int = 1000) -> None:
        self._events: deque[LifecycleEvent] = deque(maxlen=limit)
        self._observers: dict[int, EventObserver] = {}
        self._tokens = itertools.count(1)

    def record(self, source: str, event: str, **detail: Any) -> LifecycleEvent:
        entry = LifecycleEvent(source=source, event=event, detail=detail)
        self._events.append(entry)
        if detail:
            LOGGER.info("[%s] %s %s", source, event, detail)
        else:
            LOGGER.info("[%s] %s", source, event)

        for observer in list(self._observers.values()):
            try:
                observer(entry)
            except Exception:
                LOGGER.exception("Lifecycle observer failed for %s/%s", source, event)
        return entry

    def entries(self, *, source: str | None = None, limit: int | None = None) -> list[LifecycleEvent]:
        items = [e for e in self._events if source is None or e.source == source]
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def subscribe(self, observer: EventObserver) -> int:
        token = next(self._tokens)
        self._observers[token] = observer
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)
