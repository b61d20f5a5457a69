"""FastAPI dependency injection."""

from __future__ import annotations

import secrets
from typing import Annotated

import aiosqlite
from fastapi import Depends, HTTPException, Request

from ..config import ManagerConfig
from ..watcher.orchestrator import Orchestrator
from .db.database import get_db

ADMIN_API_KEY_HEADER = "X-ADMIN-API-KEY"


async def _get_db() -> aiosqlite.Connection:
    return await get_db()


Db = Annotated[aiosqlite.Connection, Depends(_get_db)]


def _get_config(request: Request) -> ManagerConfig:
    return request.app.state.config


Config = Annotated[ManagerConfig, Depends(_get_config)]


def _get_orchestrator(request: Request) -> Orchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Task manager is not running")
    return orchestrator


Manager = Annotated[Orchestrator, Depends(_get_orchestrator)]


async def verify_admin_api_key(request: Request, config: Config) -> None:
    """Raise 401 unless the request carries the configured admin key.

    With no key configured every request is let through.
    """
    if not config.admin_api_key:
        return
    api_key = request.headers.get(ADMIN_API_KEY_HEADER, "")
    if not secrets.compare_digest(api_key, config.admin_api_key):
        raise HTTPException(status_code=401, detail="Invalid admin API key")
