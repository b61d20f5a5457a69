"""Tests for the lifecycle handler."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import FakeSession, make_task
from task_manager.clock import utcnow
from task_manager.watcher.handler import LifecycleHandler
from task_manager.watcher.lock import LeaseLock
from task_manager.watcher.shared import SessionRegistry
from task_manager.web.events import TaskEvent, TaskEventName
from task_manager.web.tasks import service
from task_manager.web.tasks.models import TaskAction, TaskStatus


def _handler(db, worker_id: str = "worker-1") -> LifecycleHandler:
    return LifecycleHandler(
        db, LeaseLock(db, worker_id), SessionRegistry(), worker_id, task_timeout=420
    )


def _event(name: TaskEventName, task, session) -> TaskEvent:
    return TaskEvent(event_name=name, task=task.model_copy(deep=True), handle=session)


async def _lease_count(db) -> int:
    cursor = await db.execute("SELECT COUNT(*) AS n FROM leases")
    return (await cursor.fetchone())["n"]


class TestStart:
    @pytest.mark.asyncio
    async def test_start_records_running(self, db, stored_task):
        handler = _handler(db)
        handler.registry.cache_task(stored_task)
        session = FakeSession()

        assert await handler.on_task_start(_event(TaskEventName.TASK_START, stored_task, session))

        assert session.start_calls == 1
        assert session.configurations == [{"TWITTER_USERNAME": "alice"}]
        task = await service.get_task(db, stored_task.id)
        assert task.status == TaskStatus.RUNNING
        assert task.created_by == "worker-1"
        cached = handler.registry.get_task(stored_task.title)
        assert cached.created_by == "worker-1"
        assert cached.status == TaskStatus.RUNNING
        assert await _lease_count(db) == 0

    @pytest.mark.asyncio
    async def test_duplicate_event_starts_once(self, db, stored_task):
        handler = _handler(db)
        session = FakeSession()
        event = _event(TaskEventName.TASK_START, stored_task, session)

        assert await handler.on_task_start(event)
        assert not await handler.on_task_start(event)
        assert session.start_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_start_once(self, db, stored_task):
        handler = _handler(db)
        session = FakeSession()
        event = _event(TaskEventName.TASK_START, stored_task, session)

        results = await asyncio.gather(handler.on_task_start(event), handler.on_task_start(event))
        assert results.count(True) == 1
        assert session.start_calls == 1

    @pytest.mark.asyncio
    async def test_stale_event_is_dropped(self, db, stored_task):
        handler = _handler(db)
        session = FakeSession()
        event = TaskEvent(
            TaskEventName.TASK_START,
            stored_task,
            session,
            event_created_at=stored_task.event_updated_at,
        )

        assert not await handler.on_task_start(event)
        assert session.start_calls == 0
        assert (await service.get_task(db, stored_task.id)).status == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_paused_task_is_not_started(self, db):
        task = await service.create_task(db, make_task(pause_until=utcnow() + timedelta(hours=4)))
        session = FakeSession()

        assert not await _handler(db).on_task_start(_event(TaskEventName.TASK_START, task, session))
        assert session.start_calls == 0

    @pytest.mark.asyncio
    async def test_task_owned_elsewhere_is_not_started(self, db, stored_task):
        await service.update_task(
            db, stored_task.id, {"status": TaskStatus.RUNNING, "created_by": "worker-2"}
        )
        session = FakeSession()

        assert not await _handler(db).on_task_start(
            _event(TaskEventName.TASK_START, stored_task, session)
        )
        assert session.start_calls == 0

    @pytest.mark.asyncio
    async def test_missing_username_is_not_started(self, db):
        task = await service.create_task(db, make_task(configuration={}))
        session = FakeSession()

        assert not await _handler(db).on_task_start(_event(TaskEventName.TASK_START, task, session))
        assert session.start_calls == 0

    @pytest.mark.asyncio
    async def test_lease_held_elsewhere_aborts(self, db, stored_task):
        await LeaseLock(db, "worker-2").acquire(stored_task.title)
        session = FakeSession()

        assert not await _handler(db).on_task_start(
            _event(TaskEventName.TASK_START, stored_task, session)
        )
        assert session.start_calls == 0
        assert (await service.get_task(db, stored_task.id)).status == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_failed_start_releases_lease(self, db, stored_task):
        session = FakeSession(fail_start=True)

        assert not await _handler(db).on_task_start(
            _event(TaskEventName.TASK_START, stored_task, session)
        )
        assert session.start_calls == 1
        assert await _lease_count(db) == 0
        assert (await service.get_task(db, stored_task.id)).status == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_two_workers_only_one_runs(self, db, stored_task):
        h1, h2 = _handler(db, "worker-1"), _handler(db, "worker-2")
        s1, s2 = FakeSession(), FakeSession()

        results = await asyncio.gather(
            h1.on_task_start(_event(TaskEventName.TASK_CREATED, stored_task, s1)),
            h2.on_task_start(_event(TaskEventName.TASK_CREATED, stored_task, s2)),
        )

        assert results.count(True) == 1
        assert s1.start_calls + s2.start_calls == 1
        winner = "worker-1" if results[0] else "worker-2"
        assert (await service.get_task(db, stored_task.id)).created_by == winner


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_records_stopped(self, db, stored_task):
        handler = _handler(db)
        session = FakeSession()
        await handler.on_task_start(_event(TaskEventName.TASK_START, stored_task, session))

        assert await handler.on_task_stop(_event(TaskEventName.TASK_STOP, stored_task, session))
        assert session.stop_calls == 1
        assert (await service.get_task(db, stored_task.id)).status == TaskStatus.STOPPED

    @pytest.mark.asyncio
    async def test_stop_of_deleted_task_still_stops_session(self, db, stored_task):
        session = FakeSession()
        await db.execute("DELETE FROM tasks WHERE id = ?", (stored_task.id,))

        assert await _handler(db).on_task_stop(_event(TaskEventName.TASK_STOP, stored_task, session))
        assert session.stop_calls == 1

    @pytest.mark.asyncio
    async def test_unclean_stop_is_recorded_with_warning(self, db, stored_task, caplog):
        class StuckSession(FakeSession):
            async def stop(self) -> bool:
                await super().stop()
                return False

        handler = _handler(db)
        session = StuckSession()
        await handler.on_task_start(_event(TaskEventName.TASK_START, stored_task, session))

        with caplog.at_level("WARNING", logger="task_manager.watcher.handler"):
            assert await handler.on_task_stop(_event(TaskEventName.TASK_STOP, stored_task, session))

        assert "did not stop cleanly" in caplog.text
        assert (await service.get_task(db, stored_task.id)).status == TaskStatus.STOPPED


class TestRestart:
    @pytest.mark.asyncio
    async def test_restart_stops_then_starts_and_consumes_action(self, db, stored_task):
        restarting = await service.update_task(db, stored_task.id, {"action": TaskAction.RESTART})
        handler = _handler(db)
        handler.registry.cache_task(restarting)
        session = FakeSession()

        assert await handler.on_task_restart(
            _event(TaskEventName.TASK_RESTART, restarting, session)
        )

        assert session.stop_calls == 1
        assert session.start_calls == 1
        task = await service.get_task(db, stored_task.id)
        assert task.action == TaskAction.START
        assert task.status == TaskStatus.RUNNING
        assert handler.registry.get_task(stored_task.title).action == TaskAction.START

    @pytest.mark.asyncio
    async def test_update_event_restarts_without_touching_action(self, db, stored_task):
        session = FakeSession()
        handler = _handler(db)

        assert await handler.on_task_restart(
            _event(TaskEventName.TASK_UPDATED, stored_task, session)
        )
        assert (session.stop_calls, session.start_calls) == (1, 1)
        assert (await service.get_task(db, stored_task.id)).action == TaskAction.START
