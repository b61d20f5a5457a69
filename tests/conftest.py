"""Shared fixtures: a fresh database per test and an in-memory session."""

from __future__ import annotations

from typing import Any

import pytest
import pytest_asyncio

from task_manager.config import ManagerConfig
from task_manager.watcher.controller import SessionStatus
from task_manager.web.db.database import connect
from task_manager.web.tasks import service
from task_manager.web.tasks.models import Task, TaskAction


class FakeSession:
    """Session controller that only records calls."""

    def __init__(self, fail_start: bool = False):
        self.status = SessionStatus.STOPPED
        self.fail_start = fail_start
        self.start_calls = 0
        self.stop_calls = 0
        self.configurations: list[dict[str, Any]] = []

    async def start(self, configuration: dict[str, Any]) -> None:
        self.start_calls += 1
        self.configurations.append(configuration)
        if self.fail_start:
            self.status = SessionStatus.ERROR
            raise RuntimeError("login failed")
        self.status = SessionStatus.RUNNING

    async def stop(self) -> bool:
        self.stop_calls += 1
        self.status = SessionStatus.STOPPED
        return True

    def get_status(self) -> SessionStatus:
        return self.status


@pytest_asyncio.fixture
async def db(tmp_path):
    conn = await connect(str(tmp_path / "tasks.db"))
    yield conn
    await conn.close()


@pytest.fixture
def config(tmp_path):
    return ManagerConfig(
        db_path=str(tmp_path / "tasks.db"),
        worker_id="worker-1",
        max_jitter=0,
    )


def make_task(
    username: str = "alice",
    owner_id: str = "nft-1",
    action: TaskAction = TaskAction.START,
    **kwargs: Any,
) -> Task:
    configuration = kwargs.pop("configuration", {"TWITTER_USERNAME": username})
    return Task(
        title=f"{username}-{owner_id}",
        agent_id=kwargs.pop("agent_id", f"agent-{username}"),
        owner_id=owner_id,
        action=action,
        configuration=configuration,
        **kwargs,
    )


@pytest_asyncio.fixture
async def stored_task(db):
    return await service.create_task(db, make_task())
