"""Task lifecycle event system."""

from .manager import EventBus
from .models import TaskEvent, TaskEventName

__all__ = ["EventBus", "TaskEvent", "TaskEventName"]
