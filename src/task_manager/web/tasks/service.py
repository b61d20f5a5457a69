"""Task store - persistence of Task records.

Lookups return ``None`` or an empty list when nothing matches; only a title
conflict on write raises (``DuplicateTaskError``).
"""

from __future__ import annotations

import json
import secrets
import sqlite3
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any

import aiosqlite
from pydantic import BaseModel

from ...clock import from_db, to_db, utcnow
from .models import LastError, RunningSignal, Task, TaskAction, TaskStatus

_JSON_FIELDS = {"configuration", "last_error", "tags", "running_signal"}
_TIME_FIELDS = {"pause_until", "created_at", "updated_at", "event_updated_at"}
_PLAIN_FIELDS = {
    "title",
    "agent_id",
    "owner_id",
    "description",
    "action",
    "status",
    "created_by",
}


class DuplicateTaskError(Exception):
    """Raised when a write would create a second task with the same title."""

    def __init__(self, title: str):
        self.title = title
        super().__init__(f"Task {title} already exists")


def _to_columns(fields: dict[str, Any]) -> dict[str, Any]:
    """Map Task field names/values onto table columns."""
    columns: dict[str, Any] = {}
    for key, value in fields.items():
        if key in _JSON_FIELDS:
            if isinstance(value, BaseModel):
                value = value.model_dump(mode="json")
            columns[f"{key}_json"] = None if value is None else json.dumps(value)
        elif key in _TIME_FIELDS:
            columns[key] = to_db(value)
        elif key in _PLAIN_FIELDS:
            columns[key] = None if value is None else str(value)
        else:
            raise ValueError(f"Unknown task field: {key}")
    return columns


def _row_to_task(row: aiosqlite.Row) -> Task:
    last_error = json.loads(row["last_error_json"]) if row["last_error_json"] else None
    return Task(
        id=row["id"],
        title=row["title"],
        agent_id=row["agent_id"],
        owner_id=row["owner_id"],
        description=row["description"],
        action=TaskAction(row["action"]),
        status=TaskStatus(row["status"]),
        configuration=json.loads(row["configuration_json"] or "{}"),
        last_error=LastError(**last_error) if last_error else None,
        tags=json.loads(row["tags_json"] or "[]"),
        pause_until=from_db(row["pause_until"]),
        created_by=row["created_by"],
        running_signal=RunningSignal(**json.loads(row["running_signal_json"] or "{}")),
        created_at=from_db(row["created_at"]),
        updated_at=from_db(row["updated_at"]),
        event_updated_at=from_db(row["event_updated_at"]),
    )


async def _fetch_all(db: aiosqlite.Connection, sql: str, params: tuple | list = ()) -> list[Task]:
    cursor = await db.execute(sql, params)
    rows = await cursor.fetchall()
    return [_row_to_task(r) for r in rows]


async def _fetch_one(db: aiosqlite.Connection, sql: str, params: tuple | list = ()) -> Task | None:
    cursor = await db.execute(sql, params)
    row = await cursor.fetchone()
    return _row_to_task(row) if row else None


async def create_task(db: aiosqlite.Connection, task: Task) -> Task:
    """Insert a task. Raises DuplicateTaskError if the title is taken."""
    fields = task.model_dump(exclude={"id"})
    fields["last_error"] = task.last_error
    fields["running_signal"] = task.running_signal
    columns = _to_columns(fields)
    columns["id"] = task.id or secrets.token_hex(8)

    names = ", ".join(columns)
    placeholders = ", ".join("?" for _ in columns)
    try:
        await db.execute(
            f"INSERT INTO tasks ({names}) VALUES ({placeholders})",
            list(columns.values()),
        )
    except sqlite3.IntegrityError as e:
        raise DuplicateTaskError(task.title) from e
    await db.commit()

    return await get_task(db, columns["id"])


async def _update_where(
    db: aiosqlite.Connection,
    where: str,
    key: str,
    patch: dict[str, Any],
    expected_action: TaskAction | None = None,
) -> bool:
    patch = {**patch, "updated_at": utcnow()}
    columns = _to_columns(patch)
    assignments = ", ".join(f"{name} = ?" for name in columns)
    sql = f"UPDATE tasks SET {assignments} WHERE {where} = ?"
    params = [*columns.values(), key]
    if expected_action is not None:
        sql += " AND action = ?"
        params.append(expected_action.value)
    try:
        cursor = await db.execute(sql, params)
    except sqlite3.IntegrityError as e:
        raise DuplicateTaskError(str(patch.get("title", key))) from e
    await db.commit()
    return cursor.rowcount > 0


async def update_task(db: aiosqlite.Connection, task_id: str, patch: dict[str, Any]) -> Task | None:
    """Apply a partial update by id. Stamps updated_at."""
    if not await _update_where(db, "id", task_id, patch):
        return None
    return await get_task(db, task_id)


async def update_task_by_title(
    db: aiosqlite.Connection,
    title: str,
    patch: dict[str, Any],
    expected_action: TaskAction | None = None,
) -> Task | None:
    """Apply a partial update by title. Stamps updated_at.

    With ``expected_action`` the update only applies while the task still has
    that action.
    """
    if not await _update_where(db, "title", title, patch, expected_action):
        return None
    return await get_task_by_title(db, patch.get("title", title))


async def set_running_signal(
    db: aiosqlite.Connection, title: str, signal: str, value: bool
) -> bool:
    """Set one flag inside running_signal without touching the others."""
    cursor = await db.execute(
        """UPDATE tasks SET running_signal_json = json_set(running_signal_json, ?, json(?)),
           updated_at = ?
           WHERE title = ?""",
        (f"$.{signal}", json.dumps(value), to_db(utcnow()), title),
    )
    await db.commit()
    return cursor.rowcount > 0


async def get_task(db: aiosqlite.Connection, task_id: str) -> Task | None:
    return await _fetch_one(db, "SELECT * FROM tasks WHERE id = ?", (task_id,))


async def get_task_by_title(db: aiosqlite.Connection, title: str) -> Task | None:
    return await _fetch_one(db, "SELECT * FROM tasks WHERE title = ?", (title,))


async def get_task_by_agent_id(db: aiosqlite.Connection, agent_id: str) -> Task | None:
    return await _fetch_one(db, "SELECT * FROM tasks WHERE agent_id = ? LIMIT 1", (agent_id,))


async def get_task_by_owner_id(db: aiosqlite.Connection, owner_id: str) -> Task | None:
    return await _fetch_one(db, "SELECT * FROM tasks WHERE owner_id = ? LIMIT 1", (owner_id,))


async def get_tasks_by_titles(db: aiosqlite.Connection, titles: list[str]) -> list[Task]:
    if not titles:
        return []
    placeholders = ",".join("?" for _ in titles)
    return await _fetch_all(db, f"SELECT * FROM tasks WHERE title IN ({placeholders})", titles)


async def get_tasks_by_twitter_username(
    db: aiosqlite.Connection, twitter_username: str
) -> list[Task]:
    return await _fetch_all(
        db,
        "SELECT * FROM tasks WHERE json_extract(configuration_json, '$.TWITTER_USERNAME') = ?",
        (twitter_username,),
    )


async def get_task_by_twitter_username_and_agent_id(
    db: aiosqlite.Connection, twitter_username: str, agent_id: str
) -> Task | None:
    return await _fetch_one(
        db,
        """SELECT * FROM tasks
           WHERE json_extract(configuration_json, '$.TWITTER_USERNAME') = ? AND agent_id = ?
           LIMIT 1""",
        (twitter_username, agent_id),
    )


async def get_new_tasks(
    db: aiosqlite.Connection, task_timeout: float, now: datetime | None = None
) -> list[Task]:
    """Tasks waiting to be started, plus running tasks whose owner went quiet.

    Paused and circuit-broken tasks are left out.
    """
    now = now or utcnow()
    tasks = await _fetch_all(
        db,
        """SELECT * FROM tasks
           WHERE (action = ? AND status = ?)
              OR (updated_at < ? AND status = ?)""",
        (
            TaskAction.START.value,
            TaskStatus.STOPPED.value,
            to_db(now - timedelta(seconds=task_timeout)),
            TaskStatus.RUNNING.value,
        ),
    )
    return [
        t
        for t in tasks
        if not t.is_paused(now) and not t.running_signal.start_failed_for_multiple_times
    ]


async def get_tasks_grouped_by_http_proxy(db: aiosqlite.Connection) -> dict[str, list[Task]]:
    """Group every task by its assigned TWITTER_HTTP_PROXY (tasks without one are skipped)."""
    grouped: dict[str, list[Task]] = defaultdict(list)
    for task in await _fetch_all(db, "SELECT * FROM tasks"):
        if task.http_proxy:
            grouped[task.http_proxy].append(task)
    return dict(grouped)
