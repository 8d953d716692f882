from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Callable, Optional

from redis import Redis, RedisError

from config import get_settings

logger = logging.getLogger(__name__)

USER_KEY_PREFIXES = ("user", "overview", "analytics", "budgets", "expenses")


class CacheService:
    """JSON values in Redis with TTL expiry. Every failure reads as a miss."""

    def __init__(
        self,
        client: Optional[Redis] = None,
        *,
        enabled: bool = True,
        redis_url: Optional[str] = None,
        default_ttl: int = 300,
    ) -> None:
        self._client = client
        self._redis_url = redis_url
        self.enabled = enabled
        self.default_ttl = default_ttl

    def _get_client(self) -> Redis:
        if self._client is None:
            self._client = Redis.from_url(self._redis_url or get_settings().redis_url)
        return self._client

    @staticmethod
    def generate_key(prefix: str, *parts: object) -> str:
        return ":".join([prefix, *(str(part) for part in parts)])

    def get(self, key: str) -> Optional[Any]:
        if not self.enabled:
            return None
        try:
            raw = self._get_client().get(key)
        except RedisError as exc:
            logger.warning(f"cache_get_failed: key={key} error={exc}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"cache_get_failed: key={key} error=invalid json")
            return None

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        if not self.enabled:
            return False
        try:
            self._get_client().setex(
                key, ttl or self.default_ttl, json.dumps(value, default=str)
            )
        except RedisError as exc:
            logger.warning(f"cache_set_failed: key={key} error={exc}")
            return False
        return True

    def delete(self, key: str) -> None:
        if not self.enabled:
            return
        try:
            self._get_client().delete(key)
        except RedisError as exc:
            logger.warning(f"cache_delete_failed: key={key} error={exc}")

    def delete_pattern(self, pattern: str) -> int:
        if not self.enabled:
            return 0
        try:
            client = self._get_client()
            keys = list(client.scan_iter(match=pattern))
            if keys:
                client.delete(*keys)
        except RedisError as exc:
            logger.warning(f"cache_delete_failed: pattern={pattern} error={exc}")
            return 0
        return len(keys)

    def invalidate_user(self, user_id: int) -> int:
        removed = 0
        for prefix in USER_KEY_PREFIXES:
            removed += self.delete_pattern(f"{prefix}:{user_id}:*")
        if removed:
            logger.info(f"cache_invalidated: user_id={user_id} keys={removed}")
        return removed

    def remember(
        self, key: str, ttl: int, producer: Callable[[], Any]
    ) -> Any:
        cached = self.get(key)
        if cached is not None:
            return cached
        value = producer()
        self.set(key, value, ttl)
        return value


class NullCache(CacheService):
    def __init__(self) -> None:
        super().__init__(enabled=False)


@lru_cache(maxsize=1)
def get_cache() -> CacheService:
    settings = get_settings()
    return CacheService(enabled=settings.cache_enabled, redis_url=settings.redis_url)
