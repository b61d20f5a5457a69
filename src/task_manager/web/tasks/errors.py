"""Per-task batching of reported session errors.

Clients may report errors in bursts; the aggregator folds them into at most
one ``last_error`` write per task per update interval.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class ErrorEntry:
    message: str
    timestamp: float


@dataclass
class AggregatedError:
    message: str
    timestamp: float

    @property
    def updated_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp, tz=timezone.utc)


@dataclass
class ErrorAggregator:
    max_length: int = 10
    timeout: float = 16.0  # entries older than this are dropped
    update_interval: float = 10.0  # minimum seconds between flushes per task
    _cache: dict[str, list[ErrorEntry]] = field(default_factory=dict, repr=False)
    _last_flush: dict[str, float] = field(default_factory=dict, repr=False)

    def add_error(self, title: str, message: str, now: float | None = None) -> bool:
        """Buffer an error. Returns True when the caller should flush."""
        now = time.time() if now is None else now
        last_flush = self._last_flush.get(title, 0.0)

        recent = [e for e in self._cache.get(title, []) if now - e.timestamp < self.timeout]
        recent.append(ErrorEntry(message=message, timestamp=now))
        self._cache[title] = recent

        return (now - last_flush >= self.update_interval and len(recent) > 0) or (
            len(recent) >= self.max_length
        )

    def flush(self, title: str, now: float | None = None) -> AggregatedError | None:
        """Join the latest buffered messages into one and clear the buffer."""
        now = time.time() if now is None else now
        errors = self._cache.pop(title, [])
        self._last_flush[title] = now

        window = [e for e in errors if now - e.timestamp < self.timeout]
        if not window:
            return None

        lines = [
            f"[{datetime.fromtimestamp(e.timestamp, tz=timezone.utc).isoformat(timespec='milliseconds')}] "
            f"{e.message}"
            for e in window[-self.max_length :]
        ]
        return AggregatedError(message="\n".join(lines), timestamp=now)
