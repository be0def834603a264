"""
Keyed mutual exclusion.

Writers that touch a shipment's weight history or dispute run inside
``locks.hold(f"shipment:{shipment_id}")``; SKU statistics updates hold
``sku:{company_id}:{sku}``. The ``local`` backend serializes within one
process, ``redis`` serializes across API and worker processes.
Lock order is always shipment before SKU.
"""

from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
import structlog
from redis.exceptions import LockError

from core.config import get_settings
from core.exceptions import ShipmentBusy

logger = structlog.get_logger()


def shipment_key(shipment_id) -> str:
    return f"shipment:{shipment_id}"


def sku_key(company_id, sku: str) -> str:
    return f"sku:{company_id}:{sku}"


class KeyedLocks:
    def __init__(self, backend: str | None = None, timeout: float | None = None):
        settings = get_settings()
        self.backend = backend or settings.lock_backend
        self.timeout = timeout if timeout is not None else settings.lock_timeout_seconds
        self.redis_url = settings.redis_url
        # asyncio.Lock binds to a loop; Celery tasks each run their own loop
        self._local: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()

    @asynccontextmanager
    async def hold(self, key: str):
        if self.backend == "redis":
            async with self._hold_redis(key):
                yield
        else:
            async with self._hold_local(key):
                yield

    @asynccontextmanager
    async def _hold_local(self, key: str):
        loop = asyncio.get_running_loop()
        slots = self._local.setdefault(loop, {})
        entry = slots.get(key)
        if entry is None:
            entry = slots[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            try:
                await asyncio.wait_for(entry[0].acquire(), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise ShipmentBusy(f"{key} is locked by another writer") from exc
            try:
                yield
            finally:
                entry[0].release()
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                slots.pop(key, None)

    @asynccontextmanager
    async def _hold_redis(self, key: str):
        client = aioredis.from_url(self.redis_url)
        lock = client.lock(
            f"scalecheck:lock:{key}",
            timeout=self.timeout,
            blocking_timeout=self.timeout,
        )
        try:
            if not await lock.acquire():
                raise ShipmentBusy(f"{key} is locked by another writer")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    # Lease expired while we held it
                    logger.warning("locks.lease_expired", key=key, timeout=self.timeout)
        finally:
            await client.aclose()


locks = KeyedLocks()
