"""
Redis cache for strip image bytes.

Keys include the merchant's branding_version, so bumping the version on a
branding change makes every older strip unreachable. The cache fails open:
any Redis problem is logged and treated as a miss.
"""

import logging
from typing import Optional

import redis

from tapstamp.core.config import settings
from tapstamp.services.strip_generator import STRIP_SIZES

logger = logging.getLogger(__name__)

# Redis connection (lazy initialized)
_redis: Optional[redis.Redis] = None

# Cache TTL: 1 hour (covers the push notification window after a stamp burst)
CACHE_TTL = 3600

KEY_PREFIX = "strip:"


def get_redis() -> redis.Redis:
    """Get or create Redis connection."""
    global _redis
    if _redis is None:
        _redis = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=False,  # We're storing binary image data
        )
    return _redis


def _key(merchant_id: str, branding_version: int, reward_goal: int, stamps: int, filename: str) -> str:
    return f"{KEY_PREFIX}{merchant_id}:v{branding_version}:{reward_goal}:{stamps}:{filename}"


class StripCache:
    """Strip image cache for one Redis client."""

    def __init__(self, client: Optional[redis.Redis] = None):
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client if self._client is not None else get_redis()

    def get_strips(
        self,
        merchant_id: str,
        branding_version: int,
        reward_goal: int,
        stamps: int,
    ) -> Optional[dict[str, bytes]]:
        """
        Get all strip resolutions from cache.

        Returns:
            Dict like {"strip.png": bytes, "strip@2x.png": bytes, "strip@3x.png": bytes}
            or None if any resolution is missing from cache
        """
        try:
            result = {}
            for filename in STRIP_SIZES:
                data = self.client.get(
                    _key(merchant_id, branding_version, reward_goal, stamps, filename)
                )
                if data is None:
                    return None
                result[filename] = data
            return result
        except redis.RedisError as e:
            logger.debug(f"Strip cache unavailable for merchant {merchant_id}: {e}")
            return None

    def set_strips(
        self,
        merchant_id: str,
        branding_version: int,
        reward_goal: int,
        stamps: int,
        strips: dict[str, bytes],
    ) -> None:
        try:
            pipe = self.client.pipeline()
            for filename, data in strips.items():
                pipe.setex(
                    _key(merchant_id, branding_version, reward_goal, stamps, filename),
                    CACHE_TTL,
                    data,
                )
            pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Failed to cache strip images for merchant {merchant_id}: {e}")

    def invalidate_merchant(self, merchant_id: str) -> int:
        """Drop every cached strip for a merchant. Returns keys deleted."""
        try:
            keys = list(self.client.scan_iter(match=f"{KEY_PREFIX}{merchant_id}:*"))
            deleted = self.client.delete(*keys) if keys else 0
            if deleted:
                logger.info(f"Invalidated {deleted} cached strips for merchant {merchant_id}")
            return deleted
        except redis.RedisError as e:
            logger.warning(f"Failed to invalidate strip cache: {e}")
            return 0
