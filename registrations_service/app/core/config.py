"""
Configuration management for Registrations Service.
Uses Zero Python SDK for secure configuration, falling back to the process
environment when no Zero token is configured.
"""

import os
import asyncio
import concurrent.futures
from typing import Dict, Any, Optional
import logging
from zero_python_sdk import zero

logger = logging.getLogger(__name__)


class ZeroSecretsManager:
    """
    Zero secrets client using the official Zero Python SDK.
    """

    def __init__(self, zero_token: str, caller_name: str = "community"):
        self.zero_token = zero_token
        self.caller_name = caller_name
        self._cache: Dict[str, Any] = {}
        self._secrets = None

    async def _fetch_secrets(self):
        """Fetch secrets from Zero if not already cached."""
        if self._secrets is None:
            try:
                loop = asyncio.get_running_loop()
                with concurrent.futures.ThreadPoolExecutor() as executor:
                    self._secrets = await loop.run_in_executor(
                        executor,
                        lambda: zero(
                            token=self.zero_token,
                            pick=["community"],
                            caller_name=self.caller_name
                        ).fetch()
                    )
                logger.info("Successfully fetched secrets from Zero")
            except Exception as e:
                logger.error(f"Failed to fetch secrets from Zero: {e}")
                self._secrets = {}

    def _normalize_key(self, key: str) -> str:
        """Normalize a key to lowercase and replace underscores with hyphens."""
        return key.lower().replace("_", "-")

    async def get_secret(self, key: str) -> Optional[str]:
        """
        Get a secret value by key.

        Args:
            key: The secret key to retrieve

        Returns:
            Secret value or None if not found
        """
        key = self._normalize_key(key)
        if key in self._cache:
            return self._cache[key]

        await self._fetch_secrets()
        secret_value = self._secrets.get("community", {}).get(key)

        if secret_value:
            self._cache[key] = secret_value

        return secret_value

    async def close(self):
        """Close method for compatibility."""
        pass


class EnvironmentSecretsManager:
    """Reads configuration values straight from the process environment."""

    async def get_secret(self, key: str) -> Optional[str]:
        value = os.getenv(key)
        return value if value not in (None, "") else None

    async def close(self):
        pass


class RegistrationsConfig:
    """
    Registrations Service configuration manager.
    Serves both the order/registration API and the registration client core.
    """

    def __init__(self, secrets_manager=None):
        if secrets_manager is None:
            zero_token = os.getenv("ZERO_TOKEN")
            if zero_token:
                secrets_manager = ZeroSecretsManager(zero_token)
            else:
                logger.info("ZERO_TOKEN not set, reading configuration from environment")
                secrets_manager = EnvironmentSecretsManager()
        self.secrets_manager = secrets_manager

    async def _get_int(self, key: str, default: int) -> int:
        value = await self.secrets_manager.get_secret(key)
        try:
            return int(value) if value else default
        except ValueError:
            logger.warning(f"Invalid integer for {key}: {value!r}, using {default}")
            return default

    async def _get_float(self, key: str, default: float) -> float:
        value = await self.secrets_manager.get_secret(key)
        try:
            return float(value) if value else default
        except ValueError:
            logger.warning(f"Invalid number for {key}: {value!r}, using {default}")
            return default

    async def get_database_url(self) -> str:
        """Get the database connection URL."""
        url = await self.secrets_manager.get_secret("DATABASE_URL")
        return url or "sqlite:///./registrations.db"

    async def get_redis_url(self) -> str:
        """Get the Redis connection URL."""
        host = await self.secrets_manager.get_secret("REDIS_HOST") or "localhost"
        port = await self.secrets_manager.get_secret("REDIS_PORT") or "6379"
        password = await self.secrets_manager.get_secret("REDIS_PASSWORD")
        use_tls = await self.secrets_manager.get_secret("REDIS_USE_TLS")

        protocol = "rediss://" if use_tls == "true" else "redis://"

        if password:
            return f"{protocol}:{password}@{host}:{port}"
        return f"{protocol}{host}:{port}"

    async def get_jwt_secret(self) -> str:
        """Get JWT secret key."""
        return await self.secrets_manager.get_secret("JWT_SECRET") or "your-secret-key-change-in-production"

    async def get_jwt_algorithm(self) -> str:
        """Get JWT algorithm."""
        return await self.secrets_manager.get_secret("JWT_ALGORITHM") or "HS256"

    async def get_order_config(self) -> Dict[str, Any]:
        """Get payment order configuration."""
        expire_minutes = await self._get_int("ORDER_EXPIRE_MINUTES", 30)
        return {
            "order_expire_minutes": expire_minutes if expire_minutes > 0 else 30,
            "max_order_quantity": await self._get_int("MAX_ORDER_QUANTITY", 10),
            "lock_timeout_seconds": await self._get_int("LOCK_TIMEOUT_SECONDS", 30),
            "currency": await self.secrets_manager.get_secret("ORDER_CURRENCY") or "CNY",
        }

    async def get_payment_config(self) -> Dict[str, Any]:
        """Get payment provider configuration."""
        return {
            "api_base_url": await self.secrets_manager.get_secret("PAYMENT_API_BASE_URL") or "https://api.mch.weixin.qq.com",
            "app_id": await self.secrets_manager.get_secret("PAYMENT_APP_ID") or "",
            "merchant_id": await self.secrets_manager.get_secret("PAYMENT_MERCHANT_ID") or "",
            "merchant_key": await self.secrets_manager.get_secret("PAYMENT_MERCHANT_KEY") or "merchant-key-change-in-production",
            "notify_url": await self.secrets_manager.get_secret("PAYMENT_NOTIFY_URL") or "",
            "notify_secret": await self.secrets_manager.get_secret("PAYMENT_NOTIFY_SECRET") or "notify-secret-change-in-production",
            "timeout_seconds": await self._get_float("PAYMENT_TIMEOUT_SECONDS", 10.0),
        }

    async def get_client_config(self) -> Dict[str, Any]:
        """Get registration client configuration."""
        return {
            "base_url": await self.secrets_manager.get_secret("REGISTRATIONS_API_URL") or "http://localhost:8002/api/v1",
            "share_base_url": await self.secrets_manager.get_secret("SHARE_BASE_URL") or "http://localhost:3000",
            "poll_interval_seconds": await self._get_float("ORDER_POLL_INTERVAL_SECONDS", 3.0),
            "tick_interval_seconds": await self._get_float("ORDER_TICK_INTERVAL_SECONDS", 1.0),
            "poll_failure_threshold": await self._get_int("ORDER_POLL_FAILURE_THRESHOLD", 3),
            "request_timeout_seconds": await self._get_float("REQUEST_TIMEOUT_SECONDS", 10.0),
        }

    async def close(self):
        """Close the secrets manager."""
        await self.secrets_manager.close()


# Global config instance
config = RegistrationsConfig()
