"""Lifecycle event models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from ...clock import utcnow
from ..tasks.models import Task

if TYPE_CHECKING:
    from ...watcher.controller import SessionController


class TaskEventName(StrEnum):
    TASK_CREATED = "tasks.created"
    TASK_UPDATED = "tasks.updated"
    TASK_START = "tasks.start"
    TASK_STOP = "tasks.stop"
    TASK_RESTART = "tasks.restart"


@dataclass(frozen=True)
class TaskEvent:
    event_name: TaskEventName
    # snapshot of the task when the event was emitted
    task: Task
    handle: SessionController
    # only events newer than the task's event_updated_at are processed
    event_created_at: datetime = field(default_factory=utcnow)
    message: str = ""
