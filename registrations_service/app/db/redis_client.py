"""
Redis client for Registrations Service.
Handles distributed locking for order creation and order event publishing.
"""

import asyncio
import time
import uuid
from typing import Optional
import redis.asyncio as redis
from redis.asyncio import Redis
import logging

from app.core.config import config

logger = logging.getLogger(__name__)

# Compare-and-delete so a lock that expired and was re-acquired elsewhere is left alone
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RedisManager:
    """
    Redis manager for order consistency.
    Handles distributed locking and pub/sub publishing.
    """

    def __init__(self):
        self.redis_client: Optional[Redis] = None
        self._initialized = False

    async def initialize(self):
        """Initialize Redis connection."""
        if self._initialized:
            return

        try:
            redis_url = await config.get_redis_url()
            self.redis_client = redis.from_url(
                redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            # Test connection
            await self.redis_client.ping()
            self._initialized = True
            logger.info("Redis client initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize Redis client: {e}")
            raise

    async def close(self):
        """Close Redis connection."""
        if self.redis_client:
            await self.redis_client.aclose()
        self._initialized = False
        logger.info("Redis connection closed")

    async def publish(self, channel: str, message: str) -> int:
        """Publish a message on a channel; returns the number of receivers."""
        if not self._initialized:
            await self.initialize()

        return await self.redis_client.publish(channel, message)

    # Distributed Locking
    async def acquire_lock(self, lock_key: str, lock_value: str, timeout: int = 30, blocking_timeout: int = 10) -> bool:
        """
        Acquire a distributed lock.

        Args:
            lock_key: Unique key for the lock
            lock_value: Token identifying the holder
            timeout: Lock timeout in seconds
            blocking_timeout: Maximum time to wait for lock acquisition

        Returns:
            True if lock acquired, False otherwise
        """
        if not self._initialized:
            await self.initialize()

        end_time = time.monotonic() + blocking_timeout

        while time.monotonic() < end_time:
            try:
                result = await self.redis_client.set(
                    lock_key,
                    lock_value,
                    nx=True,  # Only set if not exists
                    ex=timeout  # Expire after timeout seconds
                )

                if result:
                    logger.debug(f"Distributed lock acquired: {lock_key}")
                    return True

                await asyncio.sleep(0.1)

            except Exception as e:
                logger.error(f"Error acquiring lock {lock_key}: {e}")
                return False

        logger.warning(f"Failed to acquire lock {lock_key} within {blocking_timeout}s")
        return False

    async def release_lock(self, lock_key: str, lock_value: str) -> bool:
        """
        Release a distributed lock held with the given token.

        Args:
            lock_key: Lock key to release
            lock_value: Token the lock was acquired with

        Returns:
            True if lock released, False otherwise
        """
        if not self._initialized:
            await self.initialize()

        try:
            result = await self.redis_client.eval(_RELEASE_SCRIPT, 1, lock_key, lock_value)
            if result:
                logger.debug(f"Distributed lock released: {lock_key}")
                return True
            return False
        except Exception as e:
            logger.error(f"Error releasing lock {lock_key}: {e}")
            return False

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            if not self._initialized:
                await self.initialize()

            result = await self.redis_client.ping()
            return result is True
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False


# Global Redis manager instance
redis_manager = RedisManager()


class DistributedLock:
    """
    Context manager for distributed locks with automatic cleanup.
    """

    def __init__(self, redis_manager: RedisManager, lock_key: str, timeout: int = 30, blocking_timeout: int = 10):
        self.redis_manager = redis_manager
        self.lock_key = lock_key
        self.lock_value = uuid.uuid4().hex
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.acquired = False

    async def __aenter__(self):
        self.acquired = await self.redis_manager.acquire_lock(
            self.lock_key,
            self.lock_value,
            self.timeout,
            self.blocking_timeout
        )
        if not self.acquired:
            raise RuntimeError(f"Failed to acquire lock: {self.lock_key}")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.acquired:
            await self.redis_manager.release_lock(self.lock_key, self.lock_value)
            self.acquired = False


def get_distributed_lock(lock_key: str, timeout: int = 30, blocking_timeout: int = 10) -> DistributedLock:
    """Get a distributed lock context manager."""
    return DistributedLock(redis_manager, lock_key, timeout, blocking_timeout)
