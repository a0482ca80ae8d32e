"""
Redis cache of the latest known location per user.

Entries live under ``live_location:<user_id>`` for LIVE_LOCATION_TTL seconds.
The database stays the source of truth: a miss (or Redis being down) just
means the caller reads the row instead.
"""

import logging
from typing import Any, Dict, Optional

from redis.exceptions import RedisError

from common.constants import LIVE_LOCATION_KEY_PREFIX, LIVE_LOCATION_TTL
from libs.redis_client import get_redis_client

logger = logging.getLogger(__name__)


def snapshot_of(row) -> Dict[str, Any]:
    """JSON-ready view of a LiveLocation row, as cached and pushed to watchers."""
    return {
        "user_id": row.user_id,
        "lat": row.lat,
        "lon": row.lon,
        "address": row.address,
        "status": row.status,
        "updated_at": row.updated_at.isoformat(),
    }


class LiveLocationCache:
    def __init__(self, redis=None, ttl: int = LIVE_LOCATION_TTL):
        self._redis = redis
        self.ttl = ttl

    @property
    def redis(self):
        if self._redis is None:
            try:
                self._redis = get_redis_client()
            except RedisError as e:
                logger.warning("Live location cache disabled, Redis unavailable: %s", e)
                return None
        return self._redis

    @staticmethod
    def key(user_id: str) -> str:
        return f"{LIVE_LOCATION_KEY_PREFIX}{user_id}"

    def get(self, user_id: str) -> Optional[Dict[str, Any]]:
        redis = self.redis
        if redis is None:
            return None
        return redis.get_json(self.key(user_id))

    def put(self, snapshot: Dict[str, Any]) -> bool:
        redis = self.redis
        if redis is None:
            return False
        ok = redis.set_json(self.key(snapshot["user_id"]), snapshot, ttl=self.ttl)
        if not ok:
            logger.debug("Live location for %s not cached", snapshot["user_id"])
        return ok

    def is_available(self) -> bool:
        redis = self.redis
        return redis is not None and redis.is_connected()
