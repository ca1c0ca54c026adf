"""Redis connection pool shared by the refresh lock and the job signal.

Keys used by the sync engine are namespaced explicitly by their callers
(``sync:refresh:{tenant}:{provider}``, ``sync:jobs``) because the worker
operates across tenants rather than inside a request-scoped tenant context.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError

from src.crm_sync.config import get_settings

logger = structlog.get_logger(__name__)

# ── Module-level Redis pool (lazy init) ─────────────────────────────────────

_redis_pool: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Get or create the Redis connection pool singleton."""
    global _redis_pool
    if _redis_pool is None:
        settings = get_settings()
        _redis_pool = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
    return _redis_pool


async def close_redis() -> None:
    """Close the Redis connection pool."""
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ── New-job Signal ──────────────────────────────────────────────────────────

JOB_SIGNAL_CHANNEL = "sync:jobs"


class JobSignal:
    """Wakes idle workers when a job is enqueued.

    Publishing is best effort: workers also poll on a fixed interval, so a
    lost signal only delays pickup.
    """

    def __init__(self, redis: aioredis.Redis, channel: str = JOB_SIGNAL_CHANNEL) -> None:
        self._redis = redis
        self.channel = channel

    async def publish(self, tenant_id: str, provider: str) -> None:
        try:
            await self._redis.publish(self.channel, f"{tenant_id}:{provider}")
        except RedisError as exc:
            logger.warning("job_signal.publish_failed", error=str(exc))
