"""Redis store for distributed job locks.

Handles:
- Single-flight locks per batch job type (matching, cleanup, consistency, retry)
- Lock inspection for the admin surface

TTL policies:
- Job locks: JOB_LOCK_TTL_SECONDS (default 1 hour), so a killed worker
  cannot block a job type forever
"""

import logging

import redis.asyncio as redis

from pricecatalog.settings import get_settings

# Key prefixes
PREFIX_LOCK = "lock:"
PREFIX_JOB = "job:"

# Redis client (initialized on startup)
_redis: redis.Redis | None = None
logger = logging.getLogger("uvicorn.error")


async def init_redis() -> None:
    """Initialize Redis connection."""
    global _redis
    settings = get_settings()
    _redis = redis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    # Validate connectivity early (especially for `rediss://` in production).
    await _redis.ping()
    logger.info("Redis connected")


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis
    if _redis:
        await _redis.aclose()
        _redis = None


def is_redis_ready() -> bool:
    """Whether init_redis() has completed."""
    return _redis is not None


def _get_redis() -> redis.Redis:
    """Get Redis client instance."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis


# ============================================================
# Distributed locks (one running job per job type)
# ============================================================


def job_lock_key(job_type: str) -> str:
    """Lock key for a batch job type."""
    return f"{PREFIX_JOB}{job_type}"


async def acquire_lock(key: str, ttl: int) -> bool:
    """Acquire a distributed lock.

    Args:
        key: Lock key (e.g., job:mapping).
        ttl: Lock timeout in seconds.

    Returns:
        True if lock acquired, False if already locked.
    """
    lock_key = f"{PREFIX_LOCK}{key}"
    # SET NX (only if not exists) with TTL
    result = await _get_redis().set(lock_key, "1", nx=True, ex=ttl)
    return result is not None


async def release_lock(key: str) -> None:
    """Release a distributed lock.

    Args:
        key: Lock key.
    """
    await _get_redis().delete(f"{PREFIX_LOCK}{key}")
