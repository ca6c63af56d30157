"""
Redis read-through cache for whitelist status lookups.

Entries are keyed under a generation counter. Invalidation bumps the counter,
which orphans every cached status at once; orphaned keys age out through their
TTL. Cached values are never patched in place.

When Redis is unreachable every operation degrades to a cache miss.
"""

from __future__ import annotations

import inspect
import json
from typing import Any

import redis.asyncio as redis

from roster_control.core.config import Settings, get_settings
from roster_control.core.logging import get_logger

logger = get_logger(__name__)

GENERATION_KEY = "whitelist:generation"

# Module-level Redis connection shared by every cache instance
_redis: redis.Redis | None = None


async def get_redis() -> redis.Redis | None:
    """Get or create the module-level Redis connection, or ``None`` if disabled."""
    global _redis
    if _redis is None:
        url = get_settings().redis_url
        if not url:
            return None
        try:
            _redis = redis.from_url(url, decode_responses=True)  # type: ignore[no-untyped-call]
            ping_result = _redis.ping()
            if inspect.isawaitable(ping_result):
                await ping_result
        except Exception:
            logger.warning("whitelist_cache_redis_unavailable")
            _redis = None
    return _redis


async def close_redis() -> None:
    """Close the Redis connection (call at shutdown)."""
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None


class WhitelistStatusCache:
    """Generation-keyed cache of whitelist status payloads per game id."""

    def __init__(
        self,
        client: redis.Redis | None = None,
        *,
        settings: Settings | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()

    async def _get_client(self) -> redis.Redis | None:
        if self._client is not None:
            return self._client
        return await get_redis()

    async def _generation(self, client: redis.Redis) -> str:
        value = await client.get(GENERATION_KEY)
        return str(value) if value is not None else "0"

    async def get_status(self, game_id: str) -> dict[str, Any] | None:
        client = await self._get_client()
        if client is None:
            return None
        try:
            generation = await self._generation(client)
            raw = await client.get(f"whitelist:status:{generation}:{game_id}")
        except Exception:
            logger.warning("whitelist_cache_read_failed", game_id=game_id, exc_info=True)
            return None
        if raw is None:
            return None
        try:
            decoded = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("whitelist_cache_payload_invalid", game_id=game_id)
            return None
        return decoded if isinstance(decoded, dict) else None

    async def set_status(self, game_id: str, payload: dict[str, Any]) -> None:
        client = await self._get_client()
        if client is None:
            return
        try:
            generation = await self._generation(client)
            await client.set(
                f"whitelist:status:{generation}:{game_id}",
                json.dumps(payload, default=str),
                ex=self._settings.whitelist_cache_ttl,
            )
        except Exception:
            logger.warning("whitelist_cache_write_failed", game_id=game_id, exc_info=True)

    async def invalidate(self) -> bool:
        """Bump the generation counter. Returns ``False`` when Redis is unavailable."""
        client = await self._get_client()
        if client is None:
            return False
        try:
            await client.incr(GENERATION_KEY)
        except Exception:
            logger.warning("whitelist_cache_invalidate_failed", exc_info=True)
            return False
        return True
