"""Watcher - periodic reconciliation of the shared store and local sessions.

Three passes run on their own schedules:
  1. Intake: pick up tasks that should be started and that this worker
     holds a session handle for.
  2. Drift: compare the cached snapshot of every managed task with the
     store and react to action, configuration, ownership or pause changes.
  3. Local status: poll each session handle and re-emit the event needed to
     move the observed status towards the desired action.

The watcher only emits events; the lifecycle handler performs transitions.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import timedelta

import aiosqlite

from ..clock import utcnow
from ..config import DAY_SECONDS, ManagerConfig
from ..web.events import EventBus, TaskEventName
from ..web.tasks import service as tasks
from ..web.tasks.models import Task, TaskAction, TaskStatus
from .controller import SessionController, SessionStatus
from .counter import TimeoutCounter
from .shared import SessionRegistry

logger = logging.getLogger(__name__)

_STATUS_FROM_SESSION = {
    SessionStatus.RUNNING: TaskStatus.RUNNING,
    SessionStatus.STOPPING: TaskStatus.RUNNING,
    SessionStatus.STOPPED: TaskStatus.STOPPED,
    SessionStatus.ERROR: TaskStatus.STOPPED,
    SessionStatus.STOP_FAILED: TaskStatus.STOPPED,
}


@dataclass
class LocalTask:
    task: Task
    handle: SessionController
    status: SessionStatus


class Watcher:
    """Reconciles the tasks this worker can act on."""

    def __init__(
        self,
        db: aiosqlite.Connection,
        bus: EventBus,
        registry: SessionRegistry,
        config: ManagerConfig,
    ):
        self.db = db
        self.bus = bus
        self.registry = registry
        self.worker_id = config.worker_id
        self.task_timeout = config.task_timeout
        # failed start ticks per title over the last 24h
        self.failure_counter = TimeoutCounter(DAY_SECONDS)
        self.max_start_failures = config.local_status_passes_per_day / 2

    # --- Local state ---

    def _refresh_local_task(self, title: str) -> LocalTask | None:
        """Copy the session's actual status onto the cached task."""
        task = self.registry.get_task(title)
        if task is None:
            logger.warning("[%s] local task %s not found", self.worker_id, title)
            return None

        handle = self.registry.get_handle(title)
        if handle is None:
            logger.warning("[%s] local task %s handle not found", self.worker_id, title)
            return None

        status = SessionStatus(handle.get_status())
        task.status = _STATUS_FROM_SESSION[status]
        return LocalTask(task=task, handle=handle, status=status)

    # --- Event emitters (also used by the API) ---

    def create_task(self, task: Task) -> bool:
        """Start managing a task on this worker."""
        handle = self.registry.get_handle(task.title)
        if handle is None:
            logger.error("[%s] create %s handle not found", self.worker_id, task.title)
            return False

        if task.is_running_by_another_worker(self.worker_id, self.task_timeout):
            logger.warning(
                "[%s] create %s is processed by worker %s",
                self.worker_id,
                task.title,
                task.created_by,
            )
            return False

        self.registry.cache_task(task)
        self.bus.publish(TaskEventName.TASK_CREATED, task, handle)
        return True

    def stop_task(self, task: Task) -> bool:
        handle = self.registry.get_handle(task.title)
        if handle is None:
            logger.error("[%s] stop %s handle not found", self.worker_id, task.title)
            return False

        cached = self.registry.get_task(task.title)
        if cached is not None and task.action == TaskAction.STOP:
            cached.action = TaskAction.STOP

        self.bus.publish(TaskEventName.TASK_STOP, task, handle)
        return True

    def update_task(self, task: Task) -> bool:
        """Apply an API-side update: the new snapshot replaces the cached one."""
        handle = self.registry.get_handle(task.title)
        if handle is None:
            logger.error("[%s] update %s handle not found", self.worker_id, task.title)
            return False

        self.registry.cache_task(task)
        if not task.running_signal.start_failed_for_multiple_times:
            self.failure_counter.delete(task.title)

        if task.action == TaskAction.STOP:
            self.bus.publish(TaskEventName.TASK_STOP, task, handle)
        else:
            self.bus.publish(TaskEventName.TASK_UPDATED, task, handle)
        return True

    def _restart_task(self, task: Task, handle: SessionController, overwrite: bool = True) -> None:
        if overwrite:
            self.registry.cache_task(task)
        self.bus.publish(TaskEventName.TASK_RESTART, task, handle)

    def _start_task(self, task: Task, handle: SessionController) -> None:
        self.bus.publish(TaskEventName.TASK_START, task, handle)

    def _force_stop(self, local: LocalTask, task: Task) -> None:
        # a failed stop stays visible to the local-status pass as action=stop
        local.task.action = TaskAction.STOP
        self.stop_task(task)

    def _release_if_owned_elsewhere(self, task: Task) -> bool:
        """Forget a task another worker keeps running. Intake reclaims it once it goes quiet."""
        if not task.is_running_by_another_worker(self.worker_id, self.task_timeout):
            return False

        logger.info(
            "[%s] %s is running on worker %s, releasing local task",
            self.worker_id,
            task.title,
            task.created_by,
        )
        self.registry.evict(task.title)
        return True

    # --- Pass 1: intake ---

    async def intake_pass(self) -> int:
        """Cache and start tasks that are waiting to run. Returns the number picked up."""
        now = utcnow()
        picked = 0
        new_tasks = await tasks.get_new_tasks(self.db, self.task_timeout, now=now)

        for task in new_tasks:
            try:
                if self.registry.has_task(task.title):
                    logger.debug("[%s] intake %s already in local tasks", self.worker_id, task.title)
                    continue

                if not self.registry.has_handle(task.title):
                    logger.debug("[%s] intake %s handle not on this worker", self.worker_id, task.title)
                    continue

                abandoned = task.updated_at + timedelta(seconds=self.task_timeout) < now
                if task.status == TaskStatus.STOPPED or abandoned:
                    if self.create_task(task):
                        picked += 1
                else:
                    logger.warning(
                        "[%s] intake %s updated at %s is processed by another worker",
                        self.worker_id,
                        task.title,
                        task.updated_at.isoformat(),
                    )
            except Exception:
                logger.exception("[%s] intake failed for %s", self.worker_id, task.title)

        logger.debug("[%s] intake end, %d candidates", self.worker_id, len(new_tasks))
        return picked

    # --- Pass 2: drift detection ---

    async def drift_pass(self) -> None:
        """React to changes made to managed tasks in the store."""
        titles = set(self.registry.tasks)
        stored = await tasks.get_tasks_by_titles(self.db, sorted(titles))

        for task in stored:
            titles.discard(task.title)
            try:
                await self._reconcile_drift(task)
            except Exception:
                logger.exception("[%s] drift check failed for %s", self.worker_id, task.title)

        # managed locally but deleted from the store
        for title in titles:
            try:
                local = self._refresh_local_task(title)
                if local is None:
                    continue

                logger.debug("[%s] drift %s is not in db", self.worker_id, title)
                if local.task.status == TaskStatus.RUNNING:
                    self._force_stop(local, local.task)
                else:
                    self.registry.evict(title)
            except Exception:
                logger.exception("[%s] drift check failed for %s", self.worker_id, title)

        logger.debug("[%s] drift end, %d local tasks", self.worker_id, len(self.registry.tasks))

    async def _reconcile_drift(self, task: Task) -> None:
        local = self._refresh_local_task(task.title)
        if local is None:
            return

        if task.running_signal.start_failed_for_multiple_times:
            logger.debug(
                "[%s] drift %s ignored: start failed for multiple times", self.worker_id, task.title
            )
            return

        cached = local.task
        if cached.created_by != task.created_by and cached.created_by == self.worker_id:
            logger.warning(
                "[%s] drift %s owner changed to %s", self.worker_id, task.title, task.created_by
            )
            self._force_stop(local, task)
        elif cached.status != TaskStatus.RUNNING and self._release_if_owned_elsewhere(task):
            return
        elif task.action != cached.action:
            logger.debug("[%s] drift %s action changed to %s", self.worker_id, task.title, task.action)
            if task.action == TaskAction.STOP:
                self._force_stop(local, task)
            elif task.action == TaskAction.RESTART:
                self._restart_task(task, local.handle)
            else:
                # stopped tasks are never cached, so a change to start needs nothing
                logger.debug("[%s] drift %s ignore changed action start", self.worker_id, task.title)
        elif task.configuration != cached.configuration:
            logger.debug("[%s] drift %s configuration changed", self.worker_id, task.title)
            if task.twitter_username:
                self._restart_task(task, local.handle)
            else:
                self._force_stop(local, task)
        elif task.is_paused():
            logger.debug("[%s] drift %s is paused", self.worker_id, task.title)
            self._force_stop(local, task)
        elif cached.status == TaskStatus.RUNNING:
            # keeps updated_at fresh so other workers treat the task as owned
            await tasks.update_task_by_title(self.db, task.title, {"created_by": self.worker_id})
        else:
            logger.debug("[%s] drift %s not running locally", self.worker_id, task.title)

    # --- Pass 3: local status ---

    async def local_status_pass(self) -> None:
        """Drive each session's observed status towards the cached action."""
        for title in list(self.registry.tasks):
            try:
                await self._reconcile_local(title)
            except Exception:
                logger.exception("[%s] local status check failed for %s", self.worker_id, title)

        logger.debug("[%s] local status end, %d local tasks", self.worker_id, len(self.registry.tasks))

    async def _reconcile_local(self, title: str) -> None:
        local = self._refresh_local_task(title)
        if local is None:
            return

        task = local.task
        if task.running_signal.start_failed_for_multiple_times:
            logger.debug(
                "[%s] local %s ignored: start failed for multiple times", self.worker_id, title
            )
            return

        if local.status == SessionStatus.STOP_FAILED:
            self.stop_task(task)
        elif task.action == TaskAction.START and task.status != TaskStatus.RUNNING:
            latest = await tasks.get_task_by_title(self.db, title)
            if latest is not None and self._release_if_owned_elsewhere(latest):
                return
            await self.on_local_task_start_failed(task)
            self._start_task(task, local.handle)
        elif task.action == TaskAction.STOP and task.status != TaskStatus.STOPPED:
            self.stop_task(task)
        elif task.action == TaskAction.RESTART and task.status != TaskStatus.RESTARTED:
            self._restart_task(task, local.handle, overwrite=False)
        elif task.action == TaskAction.STOP and task.status == TaskStatus.STOPPED:
            self.registry.evict(title)
        else:
            logger.debug("[%s] local %s status is expected", self.worker_id, title)

    async def on_local_task_start_failed(self, task: Task, now: float | None = None) -> bool:
        """Count a failed start. Trips the circuit breaker past half the passes of a day.

        Returns True when the breaker is (now) set for the task.
        """
        now = time.time() if now is None else now
        self.failure_counter.add(task.title, 1, now=now)

        count = self.failure_counter.total(task.title, now=now)
        if count > self.max_start_failures:
            logger.warning(
                "[%s] %s start failed %d times in 24h, blocking further starts",
                self.worker_id,
                task.title,
                count,
            )
            await tasks.set_running_signal(
                self.db, task.title, "start_failed_for_multiple_times", True
            )
            task.running_signal.start_failed_for_multiple_times = True
            return True
        return False
