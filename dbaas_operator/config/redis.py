"""
Redis connection used for leader election, with retry logic.
"""
import asyncio
from typing import Optional

import redis.asyncio as redis

from dbaas_operator.config.logging import get_logger
from dbaas_operator.config.settings import settings

logger = get_logger(__name__)


class RedisConnection:
    """Redis connection manager with retry logic."""

    client: Optional[redis.Redis] = None

    @classmethod
    async def connect(cls, max_attempts: int = 10, base_delay: float = 2, max_delay: float = 30) -> None:
        """
        Connect to Redis, retrying with exponential backoff.

        Raises:
            RuntimeError: if no Redis URL is configured
            redis.ConnectionError: after ``max_attempts`` failed attempts
        """
        if not settings.redis_url:
            raise RuntimeError("REDIS_URL must be set when leader election is enabled")
        url = str(settings.redis_url)

        for attempt in range(1, max_attempts + 1):
            try:
                logger.info(
                    "connecting_to_redis",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    url=url.split("@")[-1],  # Log without credentials
                )
                cls.client = redis.Redis.from_url(
                    url,
                    max_connections=settings.redis_max_connections,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    socket_keepalive=True,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
                await cls.client.ping()
                logger.info("redis_connected")
                return
            except (redis.ConnectionError, redis.TimeoutError) as e:
                logger.error(
                    "redis_connection_failed",
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(e),
                )
                if attempt >= max_attempts:
                    logger.error("redis_max_retries_exceeded")
                    raise
                delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
                await asyncio.sleep(delay)

    @classmethod
    async def close(cls) -> None:
        if cls.client:
            logger.info("closing_redis_connection")
            await cls.client.close()
            cls.client = None

    @classmethod
    async def get_client(cls) -> redis.Redis:
        """
        Raises:
            RuntimeError: If Redis is not connected
        """
        if cls.client is None:
            raise RuntimeError("Redis is not connected. Call connect() first.")
        return cls.client
