import hashlib
import json
import logging
from typing import Any, Dict, Optional

import redis

from dayplanner.config.settings import get_settings

logger = logging.getLogger(__name__)


class ScheduleCache:
    """
    Memoizes computed day schedules in redis.

    Keys combine the date with a hash of every input that affects the result,
    so any change to definitions, instances or sleep times misses the cache.
    Redis being unavailable is treated as a miss.
    """

    def __init__(self, redis_url: Optional[str] = None, ttl_seconds: Optional[int] = None):
        settings = get_settings()
        self.redis_client = redis.from_url(redis_url or settings.redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds or settings.cache_ttl_seconds

    def get(self, day: str, input_hash: str) -> Optional[Dict[str, Any]]:
        try:
            cached = self.redis_client.get(self._key(day, input_hash))
        except redis.RedisError as exc:
            logger.warning(f"Schedule cache unavailable: {exc}")
            return None
        if cached:
            return json.loads(cached)
        return None

    def set(self, day: str, input_hash: str, schedule: Dict[str, Any]) -> None:
        try:
            self.redis_client.setex(
                self._key(day, input_hash),
                self.ttl_seconds,
                json.dumps(schedule, default=str),
            )
        except redis.RedisError as exc:
            logger.warning(f"Could not cache schedule for {day}: {exc}")

    def invalidate_day(self, day: str) -> int:
        """Drop every cached schedule for a date; returns how many were removed."""
        try:
            keys = list(self.redis_client.scan_iter(match=f"schedule:{day}:*"))
            return self.redis_client.delete(*keys) if keys else 0
        except redis.RedisError as exc:
            logger.warning(f"Could not invalidate cache for {day}: {exc}")
            return 0

    @staticmethod
    def hash_inputs(payload: Dict[str, Any]) -> str:
        """Stable hash of a request payload (dict keys sorted)."""
        data = json.dumps(payload, sort_keys=True, default=str)
        return hashlib.sha256(data.encode()).hexdigest()[:16]

    def health_check(self) -> bool:
        try:
            self.redis_client.ping()
            return True
        except redis.RedisError:
            return False

    @staticmethod
    def _key(day: str, input_hash: str) -> str:
        return f"schedule:{day}:{input_hash}"
