"""Progress event stream for agent runs.

Agents emit events into a bounded in-memory buffer guarded by one mutex.
Observers (terminal renderer, trace writer) are called synchronously for every
event; only the buffer is bounded. When the buffer is full the oldest events
are evicted and a ``dropped`` event reports the running total.
"""

import json
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import IO, Any

from taskwing.log_config import get_logger

log = get_logger("agents.streaming")

# Report evictions to observers every this many dropped events
DROP_REPORT_INTERVAL = 100


class EventType(str, Enum):
    AGENT_STARTED = "agent_started"
    AGENT_FINISHED = "agent_finished"
    FILE_CONSIDERED = "file_considered"
    FINDING_EMITTED = "finding_emitted"
    LLM_CALL = "llm_call"
    SERVICE_STARTED = "service_started"
    DROPPED = "dropped"
    ERROR = "error"


@dataclass
class StreamEvent:
    type: EventType
    timestamp: float
    agent: str
    content: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "agent": self.agent,
            "content": self.content,
            "metadata": self.metadata,
        }


Observer = Callable[[StreamEvent], None]


class StreamingOutput:
    """Bounded, thread-safe event buffer with synchronous observers."""

    def __init__(self, buffer_size: int = 1000, clock: Callable[[], float] = time.time):
        self._buffer: deque[StreamEvent] = deque(maxlen=max(1, buffer_size))
        self._observers: list[Observer] = []
        self._lock = threading.Lock()
        self._clock = clock
        self._dropped = 0
        self._unreported = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register an observer; returns a callable that unsubscribes it."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def emit(
        self,
        event_type: EventType,
        agent: str,
        content: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> StreamEvent:
        event = StreamEvent(
            type=event_type,
            timestamp=self._clock(),
            agent=agent,
            content=content,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            if len(self._buffer) == self._buffer.maxlen:
                self._dropped += 1
                self._unreported += 1
            self._buffer.append(event)
            self._notify(event)
            if self._unreported >= DROP_REPORT_INTERVAL:
                self._report_dropped()
        return event

    def flush(self) -> None:
        """Report any evictions not yet announced."""
        with self._lock:
            if self._unreported:
                self._report_dropped()

    def events(self) -> list[StreamEvent]:
        with self._lock:
            return list(self._buffer)

    def _report_dropped(self) -> None:
        self._unreported = 0
        event = StreamEvent(
            type=EventType.DROPPED,
            timestamp=self._clock(),
            agent="stream",
            content=f"dropped={self._dropped}",
            metadata={"dropped": self._dropped},
        )
        self._notify(event)

    def _notify(self, event: StreamEvent) -> None:
        for observer in list(self._observers):
            try:
                observer(event)
            except Exception as e:
                # A broken renderer must not abort the analysis
                log.warning(f"Stream observer failed: {e}")


class TraceWriter:
    """Observer appending every event to a JSONL trace file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh: IO[str] | None = self.path.open("w", encoding="utf-8")
        self._lock = threading.Lock()
        self.count = 0

    def __call__(self, event: StreamEvent) -> None:
        with self._lock:
            if self._fh is None:
                return
            self._fh.write(json.dumps(event.to_dict(), default=str) + "\n")
            self.count += 1

    def close(self) -> None:
        with self._lock:
            if self._fh is not None:
                self._fh.close()
                self._fh = None
        log.debug(f"Wrote {self.count} trace events to {self.path}")
