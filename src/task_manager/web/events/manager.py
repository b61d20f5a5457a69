"""EventBus - in-process pub/sub for task lifecycle events."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

from ..tasks.models import Task
from .models import TaskEvent, TaskEventName

if TYPE_CHECKING:
    from ...watcher.controller import SessionController

logger = logging.getLogger(__name__)

Subscriber = Callable[[TaskEvent], Awaitable[None]]


class EventBus:
    """In-memory pub/sub for lifecycle events.

    Delivery never crosses process boundaries: a worker only consumes the
    events its own watcher and API emit. Each subscriber runs in its own
    asyncio task so a slow session start never blocks the emitter.
    """

    def __init__(self) -> None:
        self._subscribers: dict[TaskEventName, list[Subscriber]] = defaultdict(list)
        self._pending: set[asyncio.Task[None]] = set()

    def subscribe(self, event_name: TaskEventName, subscriber: Subscriber) -> None:
        self._subscribers[event_name].append(subscriber)

    def unsubscribe(self, event_name: TaskEventName, subscriber: Subscriber) -> None:
        subscribers = self._subscribers.get(event_name, [])
        if subscriber in subscribers:
            subscribers.remove(subscriber)

    def publish(
        self,
        event_name: TaskEventName,
        task: Task,
        handle: SessionController,
    ) -> TaskEvent:
        """Create an event stamped with the current time and fan it out."""
        event = TaskEvent(
            event_name=event_name,
            task=task.model_copy(deep=True),
            handle=handle,
            message=f"{task.title} {event_name}",
        )
        self.dispatch(event)
        return event

    def dispatch(self, event: TaskEvent) -> int:
        """Deliver an existing event to its subscribers. Returns the subscriber count."""
        subscribers = list(self._subscribers.get(event.event_name, []))
        for subscriber in subscribers:
            delivery = asyncio.create_task(
                self._deliver(subscriber, event),
                name=f"{event.event_name}-{event.task.title}",
            )
            self._pending.add(delivery)
            delivery.add_done_callback(self._pending.discard)
        logger.debug("task %s event emitted to %d subscribers", event.event_name, len(subscribers))
        return len(subscribers)

    async def drain(self) -> None:
        """Wait until every in-flight delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    async def _deliver(subscriber: Subscriber, event: TaskEvent) -> None:
        try:
            await subscriber(event)
        except Exception:
            logger.exception("Subscriber failed on %s for %s", event.event_name, event.task.title)
