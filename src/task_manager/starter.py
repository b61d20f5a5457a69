"""Session starter - hands a session to the task manager instead of running it directly.

The embedding application creates one starter per agent. ``start`` registers
the session handle with the local orchestrator, then declares the task via
the API so that some worker's watcher starts it.
"""

from __future__ import annotations

import logging
from typing import Any

from .client import TaskManagerClient
from .watcher.controller import SessionController
from .watcher.shared import SessionRegistry
from .web.tasks.models import TaskAction, auto_fix_twitter_username, get_task_title

logger = logging.getLogger(__name__)


class SessionStarter:
    """Registers one agent's session and declares its task."""

    def __init__(
        self,
        client: TaskManagerClient,
        registry: SessionRegistry,
        agent_id: str,
        owner_id: str,
    ):
        self.client = client
        self.registry = registry
        self.agent_id = agent_id
        self.owner_id = owner_id
        self.twitter_username = ""
        self._handle: SessionController | None = None

    @property
    def title(self) -> str:
        return get_task_title(self.twitter_username, self.owner_id)

    async def start(self, handle: SessionController, configuration: dict[str, Any]) -> dict[str, Any]:
        """Register ``handle`` and ask the manager to start it. Returns the task."""
        username = configuration.get("TWITTER_USERNAME")
        if not username:
            raise ValueError("TWITTER_USERNAME is required")

        configuration = {**configuration, "TWITTER_USERNAME": auto_fix_twitter_username(username)}
        self.twitter_username = configuration["TWITTER_USERNAME"]
        self._handle = handle

        previous = self.registry.get_handle(self.title)
        if previous is not None and previous is not handle:
            logger.debug("waiting %s for previous session to be stopped", self.title)
            await previous.stop()
        self.registry.set_handle(self.title, handle)

        return await self.client.create_task(
            self.title,
            self.agent_id,
            self.owner_id,
            configuration,
            action=TaskAction.START.value,
        )

    async def stop(self) -> dict[str, Any]:
        """Ask the manager to stop the session."""
        if not self.twitter_username:
            raise RuntimeError("starter was never started")
        if not self.registry.has_handle(self.title) and self._handle is not None:
            self.registry.set_handle(self.title, self._handle)
        return await self.client.stop_task(self.title)
