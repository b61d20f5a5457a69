"""Per-process wiring of the registry, event bus, lease lock, handler and watcher."""

from __future__ import annotations

import logging

import aiosqlite

from ..config import ManagerConfig
from ..web.events import EventBus
from ..web.settings import service as settings
from .controller import SessionController
from .handler import LifecycleHandler
from .lock import LeaseLock
from .scheduler import Scheduler
from .service import Watcher
from .shared import SessionRegistry

logger = logging.getLogger(__name__)


class Orchestrator:
    """Everything one worker process needs to reconcile its sessions."""

    def __init__(self, db: aiosqlite.Connection, config: ManagerConfig):
        self.db = db
        self.config = config
        self.registry = SessionRegistry()
        self.bus = EventBus()
        self.lock = LeaseLock(db, config.worker_id, lease_time=config.lease_time)
        self.handler = LifecycleHandler(
            db, self.lock, self.registry, config.worker_id, config.task_timeout
        )
        self.handler.subscribe(self.bus)
        self.watcher = Watcher(db, self.bus, self.registry, config)

        self.scheduler = Scheduler()
        jitter = config.max_jitter
        self.scheduler.add_job(
            "intake", config.intake_interval, self.watcher.intake_pass, max_jitter=jitter
        )
        self.scheduler.add_job(
            "drift", config.drift_interval, self.watcher.drift_pass, max_jitter=jitter
        )
        self.scheduler.add_job(
            "local-status",
            config.local_status_interval,
            self.watcher.local_status_pass,
            max_jitter=jitter,
        )
        self.scheduler.add_job(
            "proxy-usage", config.proxy_usage_interval, self.update_http_proxy_usage, max_jitter=0
        )

    @property
    def worker_id(self) -> str:
        return self.config.worker_id

    def register_session(self, title: str, handle: SessionController) -> None:
        """Make a session controllable by this worker."""
        self.registry.set_handle(title, handle)

    async def update_http_proxy_usage(self) -> None:
        await settings.update_http_proxy_usage(self.db)

    async def start(self) -> None:
        if not self.config.watcher_enabled:
            logger.info("[%s] watcher disabled, API only", self.worker_id)
            return
        self.scheduler.start()
        logger.info("[%s] watcher started", self.worker_id)

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.bus.drain()
        logger.info("[%s] watcher stopped", self.worker_id)
