from __future__ import annotations

import asyncio
from datetime import datetime

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings

from fieldbill.core.config import get_settings
from fieldbill.domain.periods import ensure_utc, hour_key


_redis_pool: ArqRedis | None = None
_redis_pool_loop: asyncio.AbstractEventLoop | None = None
_redis_lock = asyncio.Lock()


async def get_redis_pool() -> ArqRedis:
    # Cache the pool per event loop; tests and scripts run their own loops.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.billing_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


def storage_charge_job_id(org_id: str, at: datetime) -> str:
    # One job per organization and hour; arq drops duplicates with the same id.
    return f"storage-charge:{org_id}:{hour_key(ensure_utc(at))}"


async def enqueue_org_storage_charge(org_id: str, at: datetime) -> str:
    settings = get_settings()
    job_id = storage_charge_job_id(org_id, at)
    redis = await get_redis_pool()
    await redis.enqueue_job(
        "charge_org_storage_overage",
        org_id,
        ensure_utc(at).isoformat(),
        _job_id=job_id,
        _queue_name=settings.billing_queue_name,
    )
    return job_id


async def enqueue_subscription_charge(org_id: str) -> str | None:
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "charge_org_subscription",
        org_id,
        _queue_name=settings.billing_queue_name,
    )
    return job.job_id if job else None
