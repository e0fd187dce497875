"""
Redis connection management for the work queue.

One ``RedisClient`` is created per process by the entry point and handed to
the queue that needs it; nothing here is a module-level singleton.
"""

import logging
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

from config import (
    POLL_TIMEOUT,
    REDIS_POOL_SIZE,
    REDIS_SOCKET_CONNECT_TIMEOUT,
    REDIS_SOCKET_TIMEOUT,
    REDIS_URL,
)

logger = logging.getLogger(__name__)

# Read time allowed on top of the longest BRPOP so its reply arrives first
BLOCKING_READ_MARGIN = 5.0


class RedisClient:
    """Owns a Redis connection pool and the client built on it."""

    def __init__(
        self,
        url: str = REDIS_URL,
        pool_size: int = REDIS_POOL_SIZE,
        socket_timeout: Optional[float] = REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout: float = REDIS_SOCKET_CONNECT_TIMEOUT,
        max_block_seconds: int = POLL_TIMEOUT,
    ) -> None:
        self.url = url
        self.pool_size = pool_size
        self.socket_timeout = socket_timeout
        self.socket_connect_timeout = socket_connect_timeout
        self.max_block_seconds = max_block_seconds
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    async def connect(self) -> Redis:
        """Create the pool and verify the server answers. Raises on failure."""
        if self._client is not None:
            return self._client

        self._pool = ConnectionPool.from_url(
            self.url,
            max_connections=self.pool_size,
            socket_timeout=self.read_timeout,
            socket_connect_timeout=self.socket_connect_timeout,
            retry_on_error=[RedisConnectionError],
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)
        try:
            await self._client.ping()
        except Exception:
            await self.close()
            raise
        # Never log credentials embedded in the URL
        logger.info(f"Redis connection established: {self.url.split('@')[-1]}")
        return self._client

    @property
    def read_timeout(self) -> Optional[float]:
        """Socket read timeout, always longer than a blocking pop may wait."""
        if self.socket_timeout is None:
            return None
        return max(self.socket_timeout, self.max_block_seconds + BLOCKING_READ_MARGIN)

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise RuntimeError("RedisClient.connect() has not been called")
        return self._client

    async def health_check(self) -> bool:
        """
        Ping the server.

        Returns:
            True if healthy, False otherwise
        """
        if self._client is None:
            return False
        try:
            await self._client.ping()
            return True
        except Exception as e:
            logger.warning(f"Redis health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                # Ignore close errors during shutdown
                logger.debug(f"Exception while closing Redis client: {e}")
        if self._pool is not None:
            try:
                await self._pool.disconnect()
            except Exception as e:
                logger.debug(f"Exception while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
