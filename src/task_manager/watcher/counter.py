"""Time-windowed counters."""

from __future__ import annotations

import time
from collections import defaultdict


class TimeoutCounter:
    """Per-key list of values that expire ``timeout`` seconds after being added."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._entries: dict[str, list[tuple[float, float]]] = defaultdict(list)

    def add(self, key: str, value: float = 1, now: float | None = None) -> None:
        now = time.time() if now is None else now
        self._entries[key].append((now, value))

    def get(self, key: str, now: float | None = None) -> list[float]:
        """Live values for ``key``, pruning expired ones."""
        now = time.time() if now is None else now
        live = [(at, v) for at, v in self._entries.get(key, []) if now - at < self.timeout]
        if live:
            self._entries[key] = live
        else:
            self._entries.pop(key, None)
        return [v for _, v in live]

    def total(self, key: str, now: float | None = None) -> float:
        return sum(self.get(key, now))

    def has(self, key: str, now: float | None = None) -> bool:
        return bool(self.get(key, now))

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
