"""
Log Store - append-only structured event log

Lifecycle and revenue records are written here, tagged with a run id
(cycle id for autonomy) so a whole run can be read back. Diagnostic
console output goes through `logging` and is never a substitute.

Design:
- LogStore (ABC): append / read_latest / read_by_run_id
- JsonlLogStore: one JSON object per line, file appended in place
- MemoryLogStore: in-process list, for tests and ephemeral runs
"""

import json
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("agentsafe.log_store")

LOG_LEVELS = ("INFO", "WARN", "ERROR")


@dataclass
class LogEvent:
    type: str
    payload: Any = None
    level: str = "INFO"
    run_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "LogEvent":
        return cls(
            type=data["type"],
            payload=data.get("payload"),
            level=data.get("level", "INFO"),
            run_id=data.get("run_id"),
            id=data.get("id") or str(uuid.uuid4()),
            timestamp=int(data.get("timestamp") or 0),
        )


def create_log_event(event_type: str, payload: Any = None, level: str = "INFO",
                     run_id: Optional[str] = None) -> LogEvent:
    if level not in LOG_LEVELS:
        level = "INFO"
    return LogEvent(type=event_type, payload=payload, level=level, run_id=run_id)


class LogStore(ABC):
    """Append-only event log interface."""

    @abstractmethod
    def append(self, event: LogEvent) -> None:
        ...

    @abstractmethod
    def read_latest(self, limit: int = 100) -> list[LogEvent]:
        ...

    def read_by_run_id(self, run_id: str, scan: int = 10_000) -> list[LogEvent]:
        return [e for e in self.read_latest(scan) if e.run_id == run_id]


class MemoryLogStore(LogStore):
    def __init__(self):
        self._events: list[LogEvent] = []

    def append(self, event: LogEvent) -> None:
        self._events.append(event)

    def read_latest(self, limit: int = 100) -> list[LogEvent]:
        return list(self._events[-limit:]) if limit > 0 else []

    def of_type(self, event_type: str) -> list[LogEvent]:
        return [e for e in self._events if e.type == event_type]


class JsonlLogStore(LogStore):
    """JSONL file store. Malformed lines are skipped on read."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, event: LogEvent) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        line = json.dumps(event.to_dict(), ensure_ascii=False, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_latest(self, limit: int = 100) -> list[LogEvent]:
        if limit <= 0 or not self.path.exists():
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            lines = [line for line in f.read().splitlines() if line.strip()]
        events = []
        for line in lines[-limit:]:
            try:
                events.append(LogEvent.from_dict(json.loads(line)))
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed log line: {e}")
        return events
