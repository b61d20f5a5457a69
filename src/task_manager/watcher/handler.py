"""Lifecycle handler - executes lifecycle events against session handles.

Every status transition happens under the task title's lease and is
re-validated against the store first, so duplicate or superseded events
never reach the session controller.
"""

from __future__ import annotations

import logging

import aiosqlite

from ..web.events import EventBus, TaskEvent, TaskEventName
from ..web.tasks import service as tasks
from ..web.tasks.models import TaskAction, TaskStatus
from .lock import LeaseLock
from .shared import SessionRegistry

logger = logging.getLogger(__name__)


class LifecycleHandler:
    """Subscribes to the event bus and drives the session controllers."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        lock: LeaseLock,
        registry: SessionRegistry,
        worker_id: str,
        task_timeout: float,
    ):
        self.db = db
        self.lock = lock
        self.registry = registry
        self.worker_id = worker_id
        self.task_timeout = task_timeout

    def subscribe(self, bus: EventBus) -> None:
        bus.subscribe(TaskEventName.TASK_CREATED, self.on_task_start)
        bus.subscribe(TaskEventName.TASK_START, self.on_task_start)
        bus.subscribe(TaskEventName.TASK_STOP, self.on_task_stop)
        bus.subscribe(TaskEventName.TASK_RESTART, self.on_task_restart)
        bus.subscribe(TaskEventName.TASK_UPDATED, self.on_task_restart)

    async def on_task_start(self, event: TaskEvent) -> bool:
        """Start the session. Returns True if the session was started."""
        title = event.task.title
        logger.info("[%s] start %s", self.worker_id, title)

        try:
            async with self.lock.hold(title) as acquired:
                if not acquired:
                    logger.warning("[%s] start %s lock not acquired", self.worker_id, title)
                    return False

                if await self._is_outdated(event):
                    return False

                latest = await tasks.get_task_by_title(self.db, title)
                if latest is None:
                    logger.error("[%s] start %s task not found in db", self.worker_id, title)
                    return False
                if latest.is_paused():
                    logger.warning("[%s] start %s task is paused", self.worker_id, title)
                    return False
                if latest.is_running_by_another_worker(self.worker_id, self.task_timeout):
                    logger.warning(
                        "[%s] start %s already running on worker %s",
                        self.worker_id,
                        title,
                        latest.created_by,
                    )
                    return False
                if not event.task.twitter_username:
                    logger.warning(
                        "[%s] start %s TWITTER_USERNAME missing in configuration",
                        self.worker_id,
                        title,
                    )
                    return False

                await event.handle.start(event.task.configuration)
                await tasks.update_task_by_title(
                    self.db,
                    title,
                    {
                        "created_by": self.worker_id,
                        "status": TaskStatus.RUNNING,
                        "event_updated_at": event.event_created_at,
                    },
                )
                self._mark_local_owner(title, TaskStatus.RUNNING)
                return True
        except Exception as e:
            logger.error("[%s] start %s error: %s", self.worker_id, title, e)
            return False

    async def on_task_stop(self, event: TaskEvent) -> bool:
        """Stop the session. Returns True if the stop was recorded."""
        title = event.task.title
        logger.info("[%s] stop %s", self.worker_id, title)

        try:
            async with self.lock.hold(title) as acquired:
                if not acquired:
                    logger.warning("[%s] stop %s lock not acquired", self.worker_id, title)
                    return False

                if await self._is_outdated(event):
                    return False

                if not await event.handle.stop():
                    logger.warning("[%s] stop %s session did not stop cleanly", self.worker_id, title)
                updated = await tasks.update_task_by_title(
                    self.db,
                    title,
                    {
                        "created_by": self.worker_id,
                        "status": TaskStatus.STOPPED,
                        "event_updated_at": event.event_created_at,
                    },
                )
                if updated is None:
                    logger.error("[%s] stop %s task not found in db", self.worker_id, title)
                self._mark_local_owner(title, TaskStatus.STOPPED)
                return True
        except Exception as e:
            logger.error("[%s] stop %s error: %s", self.worker_id, title, e)
            return False

    async def on_task_restart(self, event: TaskEvent) -> bool:
        """Stop, then run the start path.

        The status is not written between the two steps: an observer may see
        the session stopped while ``action`` still reads restart.
        """
        title = event.task.title
        logger.info("[%s] restart %s", self.worker_id, title)

        try:
            await event.handle.stop()
        except Exception as e:
            logger.error("[%s] restart %s error: %s", self.worker_id, title, e)
            return False

        started = await self.on_task_start(event)
        if started and event.task.action == TaskAction.RESTART:
            await self._consume_restart(title)
        return started

    async def _consume_restart(self, title: str) -> None:
        """A finished restart turns the desired action back into start."""
        await tasks.update_task_by_title(
            self.db, title, {"action": TaskAction.START}, expected_action=TaskAction.RESTART
        )
        cached = self.registry.get_task(title)
        if cached is not None and cached.action == TaskAction.RESTART:
            cached.action = TaskAction.START

    async def _is_outdated(self, event: TaskEvent) -> bool:
        """True if the store already processed an event at least as new as this one."""
        latest = await tasks.get_task_by_title(self.db, event.task.title)
        if latest is None:
            logger.error(
                "[%s] stale check %s task not found in db", self.worker_id, event.task.title
            )
            return False

        if latest.event_updated_at >= event.event_created_at:
            logger.warning(
                "[%s] stale check %s event %s is outdated",
                self.worker_id,
                event.task.title,
                event.event_created_at.isoformat(),
            )
            return True
        return False

    def _mark_local_owner(self, title: str, status: TaskStatus) -> None:
        cached = self.registry.get_task(title)
        if cached is not None:
            cached.created_by = self.worker_id
            cached.status = status
