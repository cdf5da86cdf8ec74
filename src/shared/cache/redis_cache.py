"""
Remote cache tier.

The in-process cache can be backed by Redis so warm values survive a restart
and are shared with other readers. The tier is a capability chosen at
startup: ``NullCacheTier`` when no REDIS_URL is configured, ``RedisCacheTier``
otherwise. Envelopes carry the entry's tags so a process that hydrates an
entry from Redis can still invalidate it by tag.
"""

import json
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError as RedisClientError

from shared.utils.configs import redis_config
from shared.utils.errors import ErrorType, RedisError
from shared.utils.helpers import PipelineJSONEncoder
from shared.utils.logger import logger


class CacheTier:
    """Interface of a second-level cache store."""

    enabled = False

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def set(self, key: str, envelope: Dict[str, Any], ttl_seconds: float) -> None:
        raise NotImplementedError

    async def delete(self, *keys: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class NullCacheTier(CacheTier):
    """No remote tier: every lookup misses and writes are dropped."""

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        return None

    async def set(self, key: str, envelope: Dict[str, Any], ttl_seconds: float) -> None:
        return None

    async def delete(self, *keys: str) -> None:
        return None


class RedisCacheTier(CacheTier):
    """
    Redis-backed cache tier.

    Values are stored as JSON envelopes ``{"value", "cachedAt", "ttl", "tags"}``
    under ``<prefix>:cache:<key>`` with a native Redis TTL. Any client error
    is raised as RedisError; the caller decides whether the read is
    essential.
    """

    enabled = True

    def __init__(
        self,
        redis_url: Optional[str] = None,
        client: Optional[aioredis.Redis] = None,
        key_prefix: Optional[str] = None,
    ):
        self.key_prefix = key_prefix or redis_config["redis_key_prefix"]
        if client is not None:
            self.redis_client = client
        else:
            url = redis_url or redis_config["redis_url"]
            if not url:
                raise RedisError(
                    message="Redis URL not configured",
                    error_type=ErrorType.REDIS_ERROR,
                    status_code=500,
                )
            self.redis_client = aioredis.from_url(
                url,
                decode_responses=True,
                socket_timeout=redis_config["redis_socket_timeout"],
                socket_connect_timeout=redis_config["redis_socket_connect_timeout"],
                retry_on_timeout=redis_config["redis_retry_on_timeout"],
            )

    def _get_cache_key(self, key: str) -> str:
        return f"{self.key_prefix}:cache:{key}"

    async def is_connected(self) -> bool:
        """Check if Redis connection is working."""
        try:
            return bool(await self.redis_client.ping())
        except RedisClientError as e:
            logger.warning(f"Redis ping failed: {str(e)}")
            return False

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        cache_key = self._get_cache_key(key)
        try:
            cached_data = await self.redis_client.get(cache_key)
        except RedisClientError as e:
            logger.error(f"Error getting {cache_key} from Redis: {str(e)}")
            raise RedisError(
                message=f"Failed to read cache key {key}: {str(e)}",
                error_type=ErrorType.REDIS_ERROR,
            ) from e

        if not cached_data:
            return None
        try:
            return json.loads(cached_data)
        except ValueError:
            logger.warning(f"Discarding undecodable Redis entry {cache_key}")
            return None

    async def set(self, key: str, envelope: Dict[str, Any], ttl_seconds: float) -> None:
        cache_key = self._get_cache_key(key)
        data_json = json.dumps(envelope, cls=PipelineJSONEncoder)
        try:
            await self.redis_client.set(
                cache_key, data_json, px=max(1, int(ttl_seconds * 1000))
            )
        except RedisClientError as e:
            logger.error(f"Error setting {cache_key} in Redis: {str(e)}")
            raise RedisError(
                message=f"Failed to write cache key {key}: {str(e)}",
                error_type=ErrorType.REDIS_ERROR,
            ) from e

    async def delete(self, *keys: str) -> None:
        if not keys:
            return
        try:
            await self.redis_client.delete(*[self._get_cache_key(k) for k in keys])
        except RedisClientError as e:
            logger.error(f"Error deleting {len(keys)} keys from Redis: {str(e)}")
            raise RedisError(
                message=f"Failed to delete cache keys: {str(e)}",
                error_type=ErrorType.REDIS_ERROR,
            ) from e

    async def close(self) -> None:
        await self.redis_client.aclose()


def build_cache_tier(redis_url: Optional[str] = None) -> CacheTier:
    """Pick the remote tier from configuration."""
    url = redis_url if redis_url is not None else redis_config["redis_url"]
    if not url:
        logger.info("REDIS_URL not set - using in-process cache only")
        return NullCacheTier()
    logger.info("Using Redis as the remote cache tier")
    return RedisCacheTier(redis_url=url)
