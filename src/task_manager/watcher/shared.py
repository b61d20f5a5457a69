"""Worker-local state: session handles and the cached task snapshots."""

from __future__ import annotations

import logging

from ..web.tasks.models import Task
from .controller import SessionController

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Per-process maps owned by the orchestrator.

    ``handles`` holds the sessions this worker can act on (title -> handle).
    ``tasks`` is the local task cache: the snapshot the watcher last acted on
    for every task it currently manages.
    """

    def __init__(self) -> None:
        self.handles: dict[str, SessionController] = {}
        self.tasks: dict[str, Task] = {}

    # --- Session handles ---

    def set_handle(self, title: str, handle: SessionController) -> None:
        """Register the live handle of a session under its task title."""
        if title in self.handles:
            logger.warning("task %s handle already exists, replacing it", title)
        self.handles[title] = handle

    def get_handle(self, title: str) -> SessionController | None:
        return self.handles.get(title)

    def has_handle(self, title: str) -> bool:
        return title in self.handles

    def remove_handle(self, title: str) -> SessionController | None:
        return self.handles.pop(title, None)

    # --- Local task cache ---

    def cache_task(self, task: Task) -> Task:
        snapshot = task.model_copy(deep=True)
        self.tasks[task.title] = snapshot
        return snapshot

    def get_task(self, title: str) -> Task | None:
        return self.tasks.get(title)

    def has_task(self, title: str) -> bool:
        return title in self.tasks

    def evict(self, title: str) -> None:
        """Drop the cached snapshot. The handle stays registered for a later start."""
        self.tasks.pop(title, None)
