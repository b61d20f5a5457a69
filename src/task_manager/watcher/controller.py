"""Contract for the session controller behind a task.

The manager never knows how a session logs in or posts; it only starts,
stops and polls it through this interface.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class SessionStatus(StrEnum):
    RUNNING = "running"
    STOPPED = "stopped"
    STOPPING = "stopping"
    ERROR = "error"
    STOP_FAILED = "stop_failed"


@runtime_checkable
class SessionController(Protocol):
    """A worker-local handle for one external session."""

    async def start(self, configuration: dict[str, Any]) -> None:
        """Start the session with the task configuration. May raise."""
        ...

    async def stop(self) -> bool:
        """Stop the session. True means it is fully stopped."""
        ...

    def get_status(self) -> SessionStatus: ...
