"""Task settings routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..deps import Db, verify_admin_api_key
from . import service
from .models import HttpProxyCreate, HttpProxySetting

router = APIRouter(
    prefix="/client-twitter/task-settings",
    tags=["task-settings"],
    dependencies=[Depends(verify_admin_api_key)],
)


@router.post("", response_model=int)
async def add_http_proxies(body: list[HttpProxyCreate], db: Db):
    """Add proxies to the pool. Known proxies are skipped; returns the inserted count."""
    return await service.insert_http_proxies(db, body)


@router.get("", response_model=list[HttpProxySetting])
async def list_http_proxies(db: Db):
    return await service.get_http_proxies(db)
