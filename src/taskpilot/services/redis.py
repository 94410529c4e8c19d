import logging
from typing import Any, List

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import get_settings

logger = logging.getLogger(__name__)


class RedisCrudService:
    """Async key/value and set operations against a Redis instance.

    Failures are logged and reported as falsy results rather than raised.
    """

    def __init__(self, url: str) -> None:
        """Create a Redis client for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._client: Redis | None = None

    async def connect(self) -> None:
        """Establish connection to Redis. Idempotent."""
        if self._client is not None:
            return
        self._client = Redis.from_url(self._url, decode_responses=True)
        try:
            await self._client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await self._client.aclose()
            self._client = None
            raise

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    @property
    def client(self) -> Redis | None:
        return self._client

    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing or on error."""
        if self._client is None:
            return None
        try:
            value = await self._client.get(key)
            return value if value is None else str(value)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis get %s failed: %s", key, e)
            return None

    async def mget(self, keys: List[str]) -> List[str | None]:
        """Return values for keys in order; missing keys (or errors) yield None."""
        if self._client is None or not keys:
            return [None] * len(keys)
        try:
            values: List[Any] = await self._client.mget(keys)
            return [v if v is None else str(v) for v in values]
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis mget of %d keys failed: %s", len(keys), e)
            return [None] * len(keys)

    async def set(self, key: str, value: str, ttl_seconds: int | None = None) -> bool:
        """Set key to value. If ttl_seconds is set, the key will expire. Returns True on success."""
        if self._client is None:
            return False
        try:
            if ttl_seconds is not None and ttl_seconds > 0:
                await self._client.setex(key, ttl_seconds, value)
            else:
                await self._client.set(key, value)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis set %s failed: %s", key, e)
            return False

    async def delete(self, key: str) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.delete(key)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis delete %s failed: %s", key, e)
            return False

    async def add_member(self, key: str, member: str) -> bool:
        """Add member to the set at key."""
        if self._client is None:
            return False
        try:
            await self._client.sadd(key, member)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis sadd %s failed: %s", key, e)
            return False

    async def remove_member(self, key: str, member: str) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.srem(key, member)
            return True
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis srem %s failed: %s", key, e)
            return False

    async def members(self, key: str) -> List[str]:
        """Return the members of the set at key, sorted; empty on error."""
        if self._client is None:
            return []
        try:
            found = await self._client.smembers(key)
            return sorted(str(m) for m in found)
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis smembers %s failed: %s", key, e)
            return []


def get_redis_crud_service() -> RedisCrudService | None:
    """Return a Redis CRUD service if redis_url is configured, else None."""
    settings = get_settings()
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    return RedisCrudService(settings.redis_url.strip())
