"""
Redis connection client for SafeCircle services.
Automatically detects environment (local dev, Docker, K8s) and configures connection.
Every operation degrades to a falsy result when Redis is unavailable.
"""

import json
import logging
import os
from typing import Any, Optional

import redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from common.constants import REDIS_DB, REDIS_HOST, REDIS_PORT

logger = logging.getLogger(__name__)


def _is_local_dev() -> bool:
    in_container = (
        os.path.exists("/.dockerenv")
        or os.getenv("KUBERNETES_SERVICE_HOST") is not None
    )
    if os.getenv("LOCAL_DEV", "").lower() == "true":
        return True
    # Outside a container, assume local dev unless told otherwise
    return not in_container and os.getenv("LOCAL_DEV", "").lower() != "false"


class RedisClient:
    """Redis client wrapper with automatic environment detection."""

    _instance: Optional["RedisClient"] = None

    def __init__(self):
        local_dev = _is_local_dev()
        redis_host = REDIS_HOST if local_dev else os.getenv(
            "REDIS_HOST", "redis.data.svc.cluster.local"
        )
        redis_password = os.getenv("REDIS_PASSWORD")
        redis_username = os.getenv("REDIS_USERNAME")

        connection_kwargs = {
            "host": redis_host,
            "port": REDIS_PORT,
            "db": REDIS_DB,
            "decode_responses": True,
            "socket_connect_timeout": 5,
            "socket_timeout": 5,
            "retry_on_timeout": True,
            "health_check_interval": 30,
        }
        # ACL-enabled servers need a username (often "default")
        if redis_username:
            connection_kwargs["username"] = redis_username
        if redis_password:
            connection_kwargs["password"] = str(redis_password).strip()

        self._client: Optional[redis.Redis] = redis.Redis(**connection_kwargs)
        try:
            self._client.ping()
            logger.info(
                "Redis connected: host=%s, port=%s, db=%s", redis_host, REDIS_PORT, REDIS_DB
            )
        except (RedisConnectionError, RedisError) as e:
            logger.error(
                "Redis connection failed: %s (host=%s, port=%s, has_password=%s)",
                e,
                redis_host,
                REDIS_PORT,
                bool(redis_password),
            )
            # Local dev runs without Redis; in the cluster it is required
            if not local_dev:
                raise

    @classmethod
    def get_instance(cls) -> "RedisClient":
        """Get singleton instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @property
    def client(self) -> Optional[redis.Redis]:
        return self._client

    def is_connected(self) -> bool:
        """Check if Redis is connected."""
        if self._client is None:
            return False
        try:
            self._client.ping()
            return True
        except (RedisConnectionError, RedisError):
            return False

    def get(self, key: str) -> Optional[str]:
        if not self.is_connected():
            return None
        try:
            return self._client.get(key)
        except (RedisConnectionError, RedisError) as e:
            logger.error("Redis GET error for key %s: %s", key, e)
            return None

    def set(self, key: str, value: str, ttl: Optional[int] = None) -> bool:
        """Set value in Redis with optional TTL."""
        if not self.is_connected():
            return False
        try:
            if ttl:
                return bool(self._client.setex(key, ttl, value))
            return bool(self._client.set(key, value))
        except (RedisConnectionError, RedisError) as e:
            logger.error("Redis SET error for key %s: %s", key, e)
            return False

    def delete(self, key: str) -> bool:
        if not self.is_connected():
            return False
        try:
            return bool(self._client.delete(key))
        except (RedisConnectionError, RedisError) as e:
            logger.error("Redis DELETE error for key %s: %s", key, e)
            return False

    def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Set JSON value in Redis."""
        try:
            json_str = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error("JSON serialization error for key %s: %s", key, e)
            return False
        return self.set(key, json_str, ttl)

    def get_json(self, key: str) -> Optional[Any]:
        """Get JSON value from Redis."""
        json_str = self.get(key)
        if json_str is None:
            return None
        try:
            return json.loads(json_str)
        except (TypeError, ValueError) as e:
            logger.error("JSON deserialization error for key %s: %s", key, e)
            return None


def get_redis_client() -> RedisClient:
    """Get Redis client instance."""
    return RedisClient.get_instance()
