"""Processing event stream.

Events are appended to a JSONL file and handed to in-process subscribers
such as a push notifier. Sink and subscriber failures are logged and
never reach the pipeline.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from nightfix.core.models import EventType, ProcessingEvent

logger = logging.getLogger("nightfix.observability")

EventSubscriber = Callable[[ProcessingEvent], None]


@dataclass
class EventStream:
    """Writes JSONL events and per-type counters."""

    jsonl_path: Optional[Path] = None
    subscribers: list[EventSubscriber] = field(default_factory=list)
    counters: dict[str, int] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def subscribe(self, callback: EventSubscriber) -> None:
        self.subscribers.append(callback)

    def emit(
        self,
        event_type: EventType,
        session_id: str,
        target_id: Optional[str] = None,
        **payload: Any,
    ) -> ProcessingEvent:
        event = ProcessingEvent(
            event_type=event_type,
            session_id=session_id,
            target_id=target_id,
            payload=payload,
        )
        with self._lock:
            self.counters[event_type.value] = self.counters.get(event_type.value, 0) + 1
            if self.jsonl_path is not None:
                try:
                    self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
                    with self.jsonl_path.open("a", encoding="utf-8") as handle:
                        handle.write(event.model_dump_json() + "\n")
                except OSError as e:
                    logger.error("Event log %s not writable: %s", self.jsonl_path, e)
            subscribers = list(self.subscribers)

        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Event subscriber failed on %s", event_type.value)
        return event
