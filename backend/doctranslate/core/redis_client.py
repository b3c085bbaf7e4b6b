from functools import lru_cache

from redis import Redis
from redis.asyncio import Redis as AsyncRedis

from doctranslate.core.settings import get_settings


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    """Shared sync client for the job store, event publishing and the worker."""
    settings = get_settings()
    return Redis.from_url(settings.redis_url, decode_responses=True, health_check_interval=30)


@lru_cache(maxsize=1)
def get_async_redis() -> AsyncRedis:
    """Client for SSE subscriptions and the health check."""
    settings = get_settings()
    return AsyncRedis.from_url(settings.redis_url, decode_responses=True, health_check_interval=30)
