"""
Redis Cache Service using Upstash Redis

Read-through accelerator for:
- Monthly cost snapshots (1h TTL)
- Resource-list views (30m TTL)

Never the system of record: every miss or error falls back to the database.
All keys for an owner share the ``owner:{owner_id}:`` prefix so they can be
purged together.
"""

import json
import structlog
from typing import Any, Optional
from uuid import UUID
from datetime import timedelta

from upstash_redis.asyncio import Redis as AsyncRedis

from app.shared.core.config import get_settings

logger = structlog.get_logger()

# Cache TTLs
COST_SNAPSHOT_TTL = timedelta(hours=1)
RESOURCE_VIEW_TTL = timedelta(minutes=30)

PREFIX_OWNER = "owner"


def _safe_json_loads(payload: str, key: str) -> Optional[Any]:
    """Strict JSON decode with bounded-failure behavior."""
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as exc:
        logger.warning("cache_payload_invalid_json", key=key, error=str(exc))
        return None


def owner_prefix(owner_id: UUID | str) -> str:
    return f"{PREFIX_OWNER}:{owner_id}:"


def cost_key(owner_id: UUID | str, period: str) -> str:
    return f"{owner_prefix(owner_id)}cost:{period}"


def resources_key(owner_id: UUID | str) -> str:
    return f"{owner_prefix(owner_id)}resources"


def build_redis_client(settings: Any | None = None) -> Optional[AsyncRedis]:
    """Create the async Upstash client, or None when the cache is not configured."""
    settings = settings or get_settings()
    if not settings.UPSTASH_REDIS_URL or not settings.UPSTASH_REDIS_TOKEN:
        logger.debug("redis_disabled", reason="UPSTASH credentials not configured")
        return None
    client = AsyncRedis(url=settings.UPSTASH_REDIS_URL, token=settings.UPSTASH_REDIS_TOKEN)
    logger.info("redis_async_client_created")
    return client


class CacheService:
    """
    Async caching service for Costwatch.

    Falls back gracefully when Redis is not configured or unreachable.
    """

    def __init__(self, client: Any | None = None) -> None:
        self.client = client

    @classmethod
    def from_settings(cls, settings: Any | None = None) -> "CacheService":
        return cls(build_redis_client(settings))

    async def get_cost_snapshot(
        self, owner_id: UUID, period: str
    ) -> Optional[dict[str, Any]]:
        return await self._get(cost_key(owner_id, period))

    async def set_cost_snapshot(
        self, owner_id: UUID, period: str, snapshot: dict[str, Any]
    ) -> bool:
        return await self._set(cost_key(owner_id, period), snapshot, COST_SNAPSHOT_TTL)

    async def get_resource_view(self, owner_id: UUID) -> Optional[list[Any]]:
        return await self._get(resources_key(owner_id))

    async def set_resource_view(self, owner_id: UUID, rows: list[Any]) -> bool:
        return await self._set(resources_key(owner_id), rows, RESOURCE_VIEW_TTL)

    async def invalidate_owner(self, owner_id: UUID) -> bool:
        """Purge every cached entry for an owner regardless of TTL."""
        return await self.delete_prefix(owner_prefix(owner_id))

    async def delete_prefix(self, prefix: str) -> bool:
        """SCAN for keys under ``prefix`` and delete them page by page."""
        if self.client is None:
            return False
        deleted = 0
        cursor = 0
        try:
            while True:
                cursor, keys = await self.client.scan(cursor, match=f"{prefix}*", count=100)
                if keys:
                    deleted += int(await self.client.delete(*keys) or 0)
                cursor = int(cursor)
                if cursor == 0:
                    break
        except Exception as exc:  # noqa: BLE001 - stale entries expire on their TTL
            logger.warning("cache_delete_prefix_error", prefix=prefix, error=str(exc))
            return False
        logger.info("cache_prefix_deleted", prefix=prefix, count=deleted)
        return True

    async def _get(self, key: str) -> Optional[Any]:
        if self.client is None:
            return None
        try:
            raw = await self.client.get(key)
        except Exception as exc:  # noqa: BLE001 - the database is the fallback
            logger.warning("cache_get_error", key=key, error=str(exc))
            return None
        if raw is None:
            logger.debug("cache_miss", key=key)
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="replace")
        logger.debug("cache_hit", key=key)
        return raw if isinstance(raw, (dict, list)) else _safe_json_loads(str(raw), key=key)

    async def _set(self, key: str, value: Any, ttl: timedelta) -> bool:
        if self.client is None:
            return False
        ttl_seconds = int(ttl.total_seconds())
        try:
            await self.client.set(key, json.dumps(value, default=str), ex=ttl_seconds)
        except Exception as exc:  # noqa: BLE001 - a failed write only costs a future miss
            logger.warning("cache_set_error", key=key, error=str(exc))
            return False
        logger.debug("cache_set", key=key, ttl_seconds=ttl_seconds)
        return True
