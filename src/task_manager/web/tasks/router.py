"""Task routes - the control plane for session lifecycles."""

from __future__ import annotations

import logging
from datetime import timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ...clock import utcnow
from ..deps import Config, Db, Manager, verify_admin_api_key
from ..settings import service as settings
from . import service
from .errors import ErrorAggregator
from .models import (
    ErrorReport,
    LastError,
    MessageResponse,
    RunningSignal,
    Task,
    TaskAction,
    TaskCreate,
    TaskStatus,
    TaskTag,
    TaskUpdate,
    auto_fix_twitter_username,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/client-twitter/tasks",
    tags=["tasks"],
    dependencies=[Depends(verify_admin_api_key)],
)

SUSPENDED_PAUSE = timedelta(hours=4)


def _fix_configuration(configuration: dict) -> dict:
    configuration = dict(configuration)
    if configuration.get("TWITTER_USERNAME"):
        configuration["TWITTER_USERNAME"] = auto_fix_twitter_username(
            configuration["TWITTER_USERNAME"]
        )
    return configuration


def _require_handle(manager: Manager, title: str) -> None:
    if not manager.registry.has_handle(title):
        logger.warning("task %s runtime not found", title)
        raise HTTPException(status_code=400, detail=f"task {title} runtime not found")


async def _apply_update(db: Db, manager: Manager, task_id: str, body: TaskUpdate) -> Task:
    patch = body.model_dump(exclude_unset=True, exclude_none=True)
    if "configuration" in patch:
        patch["configuration"] = _fix_configuration(patch["configuration"])
    # an explicit update is how operators clear the circuit breaker
    patch["running_signal"] = RunningSignal()

    try:
        updated = await service.update_task(db, task_id, patch)
    except service.DuplicateTaskError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    if updated is None:
        raise HTTPException(status_code=400, detail="the task not exists")

    _require_handle(manager, updated.title)
    manager.watcher.update_task(updated)
    return updated


async def _update_existing(
    db: Db, manager: Manager, config: Config, existing: Task, body: TaskCreate, configuration: dict
) -> Task:
    logger.warning("task %s already exists, update it", body.title)
    # a task keeps the proxy it was given first unless the caller sends one
    if not configuration.get("TWITTER_HTTP_PROXY"):
        proxy = existing.http_proxy or await settings.random_get_http_proxy(
            db, config.http_proxy_max_users
        )
        if not proxy:
            logger.error("no http proxy found")
        else:
            configuration["TWITTER_HTTP_PROXY"] = proxy
    update = TaskUpdate(**body.model_dump(exclude={"configuration"}), configuration=configuration)
    return await _apply_update(db, manager, existing.id, update)


@router.post("", response_model=Task)
async def create_task(body: TaskCreate, db: Db, manager: Manager, config: Config):
    """Create a task, or update it if the title already exists."""
    configuration = _fix_configuration(body.configuration)
    _require_handle(manager, body.title)

    existing = await service.get_task_by_title(db, body.title)
    if existing is not None:
        return await _update_existing(db, manager, config, existing, body, configuration)

    pool_proxy = None
    if not configuration.get("TWITTER_HTTP_PROXY"):
        pool_proxy = await settings.random_get_http_proxy(db, config.http_proxy_max_users)
        if not pool_proxy:
            logger.error("no http proxy found")

    task = Task(
        title=body.title,
        agent_id=body.agent_id,
        owner_id=body.owner_id,
        action=body.action,
        description=body.description,
        configuration=(
            {**configuration, "TWITTER_HTTP_PROXY": pool_proxy} if pool_proxy else configuration
        ),
        status=TaskStatus.STOPPED,
        created_by=manager.worker_id,
    )
    try:
        created = await service.create_task(db, task)
    except service.DuplicateTaskError:
        # lost a race against another worker's create
        if pool_proxy:
            await settings.decrease_http_proxy_count(db, pool_proxy)
        existing = await service.get_task_by_title(db, body.title)
        if existing is None:
            raise HTTPException(status_code=400, detail="the task not exists") from None
        return await _update_existing(db, manager, config, existing, body, configuration)

    manager.watcher.create_task(created)
    return created


@router.post("/{title}/stop", response_model=Task)
async def stop_task(title: str, db: Db, manager: Manager):
    task = await service.update_task_by_title(db, title, {"action": TaskAction.STOP})
    if task is None:
        raise HTTPException(status_code=400, detail="the task not exists")

    _require_handle(manager, task.title)
    manager.watcher.stop_task(task)
    return task


@router.post("/agent/{agent_id}/stop", response_model=MessageResponse)
async def stop_task_by_agent_id(
    agent_id: str, db: Db, manager: Manager, background_tasks: BackgroundTasks
):
    """Stop the session right away, without changing the task's desired action."""
    task = await service.get_task_by_agent_id(db, agent_id)
    if task is None:
        raise HTTPException(status_code=400, detail="the task not exists")

    handle = manager.registry.get_handle(task.title)
    if handle is None:
        logger.warning("task %s runtime not found on this worker", task.title)
    else:
        background_tasks.add_task(handle.stop)
    return MessageResponse(message="stopping the client")


@router.post("/{twitter_username}/report/suspended", response_model=list[Task | None])
async def report_suspended(twitter_username: str, db: Db):
    """Tag every task of a suspended account and pause it for four hours."""
    found = await service.get_tasks_by_twitter_username(
        db, auto_fix_twitter_username(twitter_username)
    )
    if not found:
        raise HTTPException(status_code=400, detail="the task not exists")

    pause_until = utcnow() + SUSPENDED_PAUSE
    updated: list[Task | None] = []
    for task in found:
        tags = list(task.tags)
        if TaskTag.SUSPENDED not in tags:
            tags.append(TaskTag.SUSPENDED.value)
        updated.append(
            await service.update_task_by_title(
                db, task.title, {"tags": tags, "pause_until": pause_until}
            )
        )
    return updated


@router.put("/{task_id}", response_model=Task)
async def update_task(task_id: str, body: TaskUpdate, db: Db, manager: Manager):
    return await _apply_update(db, manager, task_id, body)


@router.get("/{title}/status", response_model=Task)
async def get_task_status(title: str, db: Db):
    task = await service.get_task_by_title(db, title)
    if task is None:
        raise HTTPException(status_code=400, detail="the task not exists")
    return task


@router.post("/{twitter_username}/report/error", response_model=Task)
async def report_error(twitter_username: str, body: ErrorReport, db: Db, request: Request):
    """Buffer a session error; the aggregated text is written at most once per interval."""
    task = await service.get_task_by_twitter_username_and_agent_id(
        db, auto_fix_twitter_username(twitter_username), body.agent_id
    )
    if task is None:
        raise HTTPException(status_code=400, detail="the task not exists")

    errors: ErrorAggregator = request.app.state.errors
    if errors.add_error(task.title, body.message):
        latest = errors.flush(task.title)
        if latest is not None:
            updated = await service.update_task_by_title(
                db,
                task.title,
                {"last_error": LastError(message=latest.message, updated_at=latest.updated_at)},
            )
            if updated is not None:
                return updated

    return task
