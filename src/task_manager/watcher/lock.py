"""Lease lock - title-scoped mutual exclusion across workers.

A lease is a row in ``leases`` keyed by name. Acquisition is an insert that
relies on the primary key; an expired lease may be deleted and taken over by
any worker.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

import aiosqlite

from ..clock import from_db, to_db, utcnow

logger = logging.getLogger(__name__)


class LeaseLock:
    """Lease-based lock shared by every worker using the same database."""

    def __init__(self, db: aiosqlite.Connection, owner_id: str, lease_time: float = 480.0):
        self.db = db
        self.owner_id = owner_id
        self.lease_time = lease_time

    def _expiry(self, now: datetime) -> str:
        return to_db(now + timedelta(seconds=self.lease_time))

    async def acquire(self, name: str, *, _retry: bool = True) -> bool:
        """Insert the lease. An expired holder is evicted once, then retried."""
        now = utcnow()
        try:
            await self.db.execute(
                "INSERT INTO leases (name, owner_id, expires_at) VALUES (?, ?, ?)",
                (name, self.owner_id, self._expiry(now)),
            )
        except sqlite3.IntegrityError:
            logger.debug("Lease %s already exists", name)
        else:
            await self.db.commit()
            logger.debug("Lease acquired for %s by %s", name, self.owner_id)
            return True

        cursor = await self.db.execute(
            "SELECT owner_id, expires_at FROM leases WHERE name = ?", (name,)
        )
        current = await cursor.fetchone()
        if current is None:
            # released between the insert and the read
            return await self.acquire(name, _retry=False) if _retry else False

        if from_db(current["expires_at"]) < now and _retry:
            # conditional on the expiry we saw, so only one worker reclaims it
            await self.db.execute(
                "DELETE FROM leases WHERE name = ? AND expires_at = ?",
                (name, current["expires_at"]),
            )
            await self.db.commit()
            logger.info("Reclaimed expired lease %s held by %s", name, current["owner_id"])
            return await self.acquire(name, _retry=False)

        return False

    async def renew(self, name: str) -> bool:
        """Extend a lease this worker still holds."""
        now = utcnow()
        cursor = await self.db.execute(
            """UPDATE leases SET expires_at = ?
               WHERE name = ? AND owner_id = ? AND expires_at > ?""",
            (self._expiry(now), name, self.owner_id, to_db(now)),
        )
        await self.db.commit()
        if cursor.rowcount == 0:
            logger.warning("Failed to renew lease %s", name)
            return False
        return True

    async def release(self, name: str) -> bool:
        """Delete the lease if this worker still holds it and it has not expired."""
        cursor = await self.db.execute(
            "DELETE FROM leases WHERE name = ? AND owner_id = ? AND expires_at > ?",
            (name, self.owner_id, to_db(utcnow())),
        )
        await self.db.commit()
        if cursor.rowcount == 0:
            logger.warning("Lease %s was no longer held by %s on release", name, self.owner_id)
            return False
        logger.debug("Lease released for %s", name)
        return True

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[bool]:
        """Scoped acquisition. Yields whether the lease was taken; always releases it."""
        acquired = await self.acquire(name)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(name)
