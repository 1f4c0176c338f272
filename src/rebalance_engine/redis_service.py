"""
Shared Redis connection handling with retry for transient connection errors.
"""
import asyncio
import redis.asyncio as redis
from typing import Any, Awaitable, Callable, Optional

from rebalance_engine.logger import AppLogger

app_logger = AppLogger(__name__)


class BaseRedisService:
    """Base class for services backed by a single Redis connection pool"""

    def __init__(self, redis_url: str, max_retries: int = 3, client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.max_retries = max_retries
        self._client = client

    async def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self.redis_url, decode_responses=True)
        return self._client

    async def execute_with_retry(self, operation: Callable[[redis.Redis], Awaitable[Any]]) -> Any:
        """
        Run an operation against the client, reconnecting on connection errors

        Args:
            operation: Coroutine function receiving the Redis client

        Returns:
            Whatever the operation returns
        """
        for attempt in range(1, self.max_retries + 1):
            try:
                client = await self._get_client()
                return await operation(client)
            except (redis.ConnectionError, redis.TimeoutError) as e:
                if attempt >= self.max_retries:
                    app_logger.log_error(f"Redis operation failed after {attempt} attempts: {e}")
                    raise
                app_logger.log_warning(f"Redis connection error (attempt {attempt}/{self.max_retries}): {e}")
                self._client = None
                await asyncio.sleep(0.5 * attempt)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
