"""Task settings service - the shared HTTP proxy pool."""

from __future__ import annotations

import logging
import secrets

import aiosqlite

from ..tasks import service as tasks
from .models import DATACENTER_PROXIES, HttpProxyCreate, HttpProxySetting, SettingsCategory

logger = logging.getLogger(__name__)


async def insert_http_proxies(db: aiosqlite.Connection, proxies: list[HttpProxyCreate]) -> int:
    """Insert proxies that are not in the pool yet. Existing ones are left untouched.

    Returns the number of inserted proxies.
    """
    inserted = 0
    for proxy in proxies:
        cursor = await db.execute(
            """INSERT INTO task_settings (id, category, product, username, password,
               entry_point, port, country, assigned_ip, http_proxy, count)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
               ON CONFLICT(http_proxy) DO NOTHING""",
            (
                secrets.token_hex(8),
                SettingsCategory.HTTP_PROXY.value,
                DATACENTER_PROXIES,
                proxy.username,
                proxy.password,
                proxy.entry_point,
                str(proxy.port),
                proxy.country_code,
                proxy.ip,
                proxy.http_proxy,
            ),
        )
        inserted += cursor.rowcount
    await db.commit()
    return inserted


async def get_http_proxies(db: aiosqlite.Connection) -> list[HttpProxySetting]:
    cursor = await db.execute(
        "SELECT * FROM task_settings WHERE category = ? ORDER BY count, http_proxy",
        (SettingsCategory.HTTP_PROXY.value,),
    )
    rows = await cursor.fetchall()
    return [HttpProxySetting(**dict(r)) for r in rows]


async def random_get_http_proxy(db: aiosqlite.Connection, max_users: int = 2) -> str | None:
    """Hand out the least used proxy with room left, counting the new user."""
    cursor = await db.execute(
        """SELECT http_proxy FROM task_settings
           WHERE category = ? AND product = ? AND count < ?
           ORDER BY count LIMIT 1""",
        (SettingsCategory.HTTP_PROXY.value, DATACENTER_PROXIES, max_users),
    )
    row = await cursor.fetchone()
    if row is None:
        return None

    await increase_http_proxy_count(db, row["http_proxy"])
    return row["http_proxy"]


async def increase_http_proxy_count(db: aiosqlite.Connection, http_proxy: str) -> None:
    await db.execute(
        "UPDATE task_settings SET count = count + 1 WHERE http_proxy = ?", (http_proxy,)
    )
    await db.commit()


async def decrease_http_proxy_count(db: aiosqlite.Connection, http_proxy: str) -> None:
    """Hand a proxy back to the pool when the task it was drawn for was never stored."""
    await db.execute(
        "UPDATE task_settings SET count = MAX(count - 1, 0) WHERE http_proxy = ?", (http_proxy,)
    )
    await db.commit()


async def update_http_proxy_usage(db: aiosqlite.Connection) -> int:
    """Recount each proxy's users from the tasks that reference it."""
    logger.debug("start update http proxy usage")

    grouped = await tasks.get_tasks_grouped_by_http_proxy(db)
    for http_proxy, users in grouped.items():
        await db.execute(
            "UPDATE task_settings SET count = ? WHERE http_proxy = ?", (len(users), http_proxy)
        )
    await db.commit()

    logger.debug("end update http proxy usage, updated %d proxies", len(grouped))
    return len(grouped)
