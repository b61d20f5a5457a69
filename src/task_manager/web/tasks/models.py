"""Task Pydantic models."""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from ...clock import utcnow


class TaskAction(StrEnum):
    """Desired state, set by API callers."""

    RESTART = "restart"
    STOP = "stop"
    START = "start"


class TaskStatus(StrEnum):
    """Observed state, written by the lifecycle handler.

    ``completed`` means the session finished by itself.
    """

    RESTARTED = "restarted"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"


class TaskTag(StrEnum):
    SUSPENDED = "suspended"


class LastError(BaseModel):
    message: str
    updated_at: datetime


class RunningSignal(BaseModel):
    start_failed_for_multiple_times: bool = False


class Task(BaseModel):
    id: str = ""
    title: str
    agent_id: str
    owner_id: str
    description: str = ""
    action: TaskAction
    status: TaskStatus = TaskStatus.STOPPED
    configuration: dict[str, Any] = Field(default_factory=dict)
    last_error: LastError | None = None
    tags: list[str] = Field(default_factory=list)
    pause_until: datetime | None = None
    created_by: str = ""
    running_signal: RunningSignal = Field(default_factory=RunningSignal)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    event_updated_at: datetime = Field(default_factory=utcnow)

    @property
    def twitter_username(self) -> str:
        return self.configuration.get("TWITTER_USERNAME") or ""

    @property
    def http_proxy(self) -> str:
        return self.configuration.get("TWITTER_HTTP_PROXY") or ""

    def is_paused(self, now: datetime | None = None) -> bool:
        return self.pause_until is not None and self.pause_until > (now or utcnow())

    def is_running_by_another_worker(
        self, worker_id: str, task_timeout: float, now: datetime | None = None
    ) -> bool:
        """True while another worker owns the running session and keeps it fresh."""
        return (
            self.status == TaskStatus.RUNNING
            and self.created_by != worker_id
            and self.updated_at + timedelta(seconds=task_timeout) > (now or utcnow())
        )


class TaskCreate(BaseModel):
    title: str
    agent_id: str
    owner_id: str
    action: TaskAction = TaskAction.START
    description: str = ""
    configuration: dict[str, Any] = Field(default_factory=dict)


class TaskUpdate(BaseModel):
    title: str | None = None
    agent_id: str | None = None
    owner_id: str | None = None
    action: TaskAction | None = None
    description: str | None = None
    configuration: dict[str, Any] | None = None


class ErrorReport(BaseModel):
    agent_id: str
    message: str


class MessageResponse(BaseModel):
    message: str


def auto_fix_twitter_username(twitter_username: str) -> str:
    """Strip the leading '@' users tend to paste along with the handle."""
    return twitter_username.removeprefix("@")


def get_task_title(twitter_username: str, owner_id: str) -> str:
    return f"{auto_fix_twitter_username(twitter_username)}-{owner_id}"
