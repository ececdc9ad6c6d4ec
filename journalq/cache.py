"""Execution result memo with Redis or in-memory fallback.

Works in LITE MODE (no Redis) with automatic in-memory fallback.
Entries are keyed by ExecutionPlan.cache_key, namespaced by owner.
"""

import json
import logging
from time import time

import redis.asyncio as aioredis

from journalq.agents.models import ExecutionResult

logger = logging.getLogger(__name__)


class ResultCache:
    """Async cache of ExecutionResults with Redis or in-memory fallback."""

    __slots__ = ("client", "ttl", "available", "_fallback")

    def __init__(self, ttl: int = 900):
        self.ttl = ttl
        self.client = None
        self.available = False
        self._fallback: dict[str, tuple[str, float]] = {}

    async def connect(self, url: str) -> None:
        """Connect to Redis or use in-memory fallback."""
        if not url:
            logger.info("Cache: Using in-memory (no Redis configured)")
            return

        try:
            self.client = aioredis.from_url(url, decode_responses=True)
            await self.client.ping()
            self.available = True
            logger.info(f"Cache: Redis connected ({url})")
        except Exception as e:
            self.client = None
            logger.warning(f"Cache: Redis unavailable ({e}), using in-memory")

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()

    @staticmethod
    def make_key(cache_key: str, owner_id: str) -> str:
        return f"{cache_key}:{owner_id}"

    async def get(self, key: str) -> str | None:
        if self.available:
            try:
                return await self.client.get(key)
            except Exception as e:
                logger.warning(f"Cache: Redis get failed ({e}), using in-memory")
        if (entry := self._fallback.get(key)) and time() < entry[1]:
            return entry[0]
        self._fallback.pop(key, None)
        return None

    async def set(self, key: str, value: str) -> None:
        if self.available:
            try:
                await self.client.setex(key, self.ttl, value)
                return
            except Exception as e:
                logger.warning(f"Cache: Redis set failed ({e}), using in-memory")
        self._fallback[key] = (value, time() + self.ttl)

    async def get_result(self, cache_key: str, owner_id: str) -> ExecutionResult | None:
        raw = await self.get(self.make_key(cache_key, owner_id))
        if not raw:
            return None
        try:
            return ExecutionResult.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Cache: discarding unreadable entry for {cache_key} ({e})")
            return None

    async def set_result(self, cache_key: str, owner_id: str, result: ExecutionResult) -> bool:
        """Store a result. Only primary-path results with records are kept."""
        if result.fallback_used or result.error or not result.records:
            return False
        payload = json.dumps(result.to_dict(include_records=True), default=str)
        await self.set(self.make_key(cache_key, owner_id), payload)
        return True

    async def clear(self) -> None:
        if self.available:
            try:
                await self.client.flushdb()
                return
            except Exception as e:
                logger.warning(f"Cache: Redis flush failed ({e})")
        self._fallback.clear()

    async def stats(self) -> dict:
        if self.available:
            try:
                info = await self.client.info("keyspace")
                return {
                    "keys": info.get("db0", {}).get("keys", 0),
                    "backend": "redis",
                    "ttl_seconds": self.ttl,
                }
            except Exception:
                self.available = False
        return {
            "keys": len(self._fallback),
            "backend": "memory",
            "ttl_seconds": self.ttl,
        }
