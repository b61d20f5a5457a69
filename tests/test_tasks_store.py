"""Tests for the task store."""

from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import make_task
from task_manager.clock import to_db, utcnow
from task_manager.web.tasks import service
from task_manager.web.tasks.models import (
    LastError,
    TaskAction,
    TaskStatus,
    auto_fix_twitter_username,
    get_task_title,
)


class TestTitles:
    def test_strips_leading_at(self):
        assert auto_fix_twitter_username("@alice") == "alice"
        assert auto_fix_twitter_username("alice") == "alice"

    def test_title_collapses_at_prefix(self):
        assert get_task_title("@alice", "nft-1") == get_task_title("alice", "nft-1") == "alice-nft-1"


class TestCreateAndLookup:
    @pytest.mark.asyncio
    async def test_create_roundtrip(self, db):
        task = await service.create_task(db, make_task(description="bot"))

        assert task.id
        assert task.title == "alice-nft-1"
        assert task.status == TaskStatus.STOPPED
        assert task.configuration == {"TWITTER_USERNAME": "alice"}
        assert task.running_signal.start_failed_for_multiple_times is False
        assert task.tags == []
        assert task.pause_until is None

    @pytest.mark.asyncio
    async def test_duplicate_title_raises(self, db):
        await service.create_task(db, make_task())
        with pytest.raises(service.DuplicateTaskError):
            await service.create_task(db, make_task(agent_id="other"))

    @pytest.mark.asyncio
    async def test_missing_lookups_return_none(self, db):
        assert await service.get_task(db, "nope") is None
        assert await service.get_task_by_title(db, "nope") is None
        assert await service.get_task_by_agent_id(db, "nope") is None
        assert await service.get_tasks_by_titles(db, []) == []

    @pytest.mark.asyncio
    async def test_lookup_by_agent_owner_and_username(self, db):
        created = await service.create_task(db, make_task())

        assert (await service.get_task_by_agent_id(db, "agent-alice")).id == created.id
        assert (await service.get_task_by_owner_id(db, "nft-1")).id == created.id
        by_username = await service.get_tasks_by_twitter_username(db, "alice")
        assert [t.id for t in by_username] == [created.id]
        found = await service.get_task_by_twitter_username_and_agent_id(db, "alice", "agent-alice")
        assert found.id == created.id
        assert await service.get_task_by_twitter_username_and_agent_id(db, "alice", "x") is None


class TestUpdates:
    @pytest.mark.asyncio
    async def test_update_stamps_updated_at(self, stored_task, db):
        updated = await service.update_task(db, stored_task.id, {"description": "changed"})

        assert updated.description == "changed"
        assert updated.updated_at > stored_task.updated_at

    @pytest.mark.asyncio
    async def test_update_missing_returns_none(self, db):
        assert await service.update_task(db, "nope", {"description": "x"}) is None
        assert await service.update_task_by_title(db, "nope", {"description": "x"}) is None

    @pytest.mark.asyncio
    async def test_expected_action_guards_update(self, stored_task, db):
        skipped = await service.update_task_by_title(
            db, stored_task.title, {"action": TaskAction.STOP}, expected_action=TaskAction.RESTART
        )
        assert skipped is None
        assert (await service.get_task(db, stored_task.id)).action == TaskAction.START

        applied = await service.update_task_by_title(
            db, stored_task.title, {"action": TaskAction.STOP}, expected_action=TaskAction.START
        )
        assert applied.action == TaskAction.STOP

    @pytest.mark.asyncio
    async def test_last_error_is_stored(self, stored_task, db):
        at = utcnow()
        updated = await service.update_task_by_title(
            db, stored_task.title, {"last_error": LastError(message="boom", updated_at=at)}
        )
        assert updated.last_error.message == "boom"
        assert updated.last_error.updated_at == at

    @pytest.mark.asyncio
    async def test_set_running_signal(self, stored_task, db):
        assert await service.set_running_signal(
            db, stored_task.title, "start_failed_for_multiple_times", True
        )
        task = await service.get_task(db, stored_task.id)
        assert task.running_signal.start_failed_for_multiple_times is True

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, stored_task, db):
        with pytest.raises(ValueError):
            await service.update_task(db, stored_task.id, {"bogus": 1})


class TestNewTasks:
    @pytest.mark.asyncio
    async def test_startable_tasks_are_returned(self, stored_task, db):
        new = await service.get_new_tasks(db, task_timeout=420)
        assert [t.title for t in new] == [stored_task.title]

    @pytest.mark.asyncio
    async def test_fresh_running_task_is_not_new(self, stored_task, db):
        await service.update_task(db, stored_task.id, {"status": TaskStatus.RUNNING})
        assert await service.get_new_tasks(db, task_timeout=420) == []

    @pytest.mark.asyncio
    async def test_abandoned_running_task_is_new(self, stored_task, db):
        await service.update_task(db, stored_task.id, {"status": TaskStatus.RUNNING})
        old = to_db(utcnow() - timedelta(minutes=10))
        await db.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (old, stored_task.id))

        new = await service.get_new_tasks(db, task_timeout=420)
        assert [t.id for t in new] == [stored_task.id]

    @pytest.mark.asyncio
    async def test_paused_and_circuit_broken_are_skipped(self, db):
        paused = await service.create_task(
            db, make_task("bob", pause_until=utcnow() + timedelta(hours=1))
        )
        broken = await service.create_task(db, make_task("carol"))
        await service.set_running_signal(db, broken.title, "start_failed_for_multiple_times", True)
        expired = await service.create_task(
            db, make_task("dave", pause_until=utcnow() - timedelta(hours=1))
        )

        titles = {t.title for t in await service.get_new_tasks(db, task_timeout=420)}
        assert paused.title not in titles
        assert broken.title not in titles
        assert expired.title in titles

    @pytest.mark.asyncio
    async def test_stopped_action_is_not_new(self, db):
        await service.create_task(db, make_task(action=TaskAction.STOP))
        assert await service.get_new_tasks(db, task_timeout=420) == []


class TestProxyGrouping:
    @pytest.mark.asyncio
    async def test_groups_by_http_proxy(self, db):
        proxy = "http://u:p@proxy:8001"
        await service.create_task(
            db, make_task("a", configuration={"TWITTER_USERNAME": "a", "TWITTER_HTTP_PROXY": proxy})
        )
        await service.create_task(
            db, make_task("b", configuration={"TWITTER_USERNAME": "b", "TWITTER_HTTP_PROXY": proxy})
        )
        await service.create_task(db, make_task("c"))

        grouped = await service.get_tasks_grouped_by_http_proxy(db)
        assert list(grouped) == [proxy]
        assert sorted(t.title for t in grouped[proxy]) == ["a-nft-1", "b-nft-1"]
