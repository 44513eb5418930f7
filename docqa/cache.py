"""Caching utilities for answers using Redis.

Provides:
- get_redis: Cached async Redis client from REDIS_URL with decode_responses.
- AnswerCache: tenant-scoped answer cache. Keys include a per-tenant version
  counter; bumping it (on ingest, delete or clear) makes every older entry of
  that tenant unreachable, and the TTL reclaims them.
"""
import hashlib
import json
import logging
from typing import Any, Optional

import redis.asyncio as redis

from docqa.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Return a cached Redis client configured from settings.REDIS_URL.

    Returns:
        redis.Redis: Async client with decode_responses=True.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def _version_key(tenant_id: str) -> str:
    return f"docqa:ver:{hashlib.sha256(tenant_id.encode('utf-8')).hexdigest()[:32]}"


def _key_for_question(tenant_id: str, version: int, question: str, max_tokens: Optional[int] = None) -> str:
    """Compute a stable cache key for a tenant, data version, question and token cap.

    Args:
        tenant_id: Owning tenant.
        version: Current tenant data version.
        question: User question string.
        max_tokens: Optional max tokens; defaults to settings.MAX_OUTPUT_TOKENS in key.

    Returns:
        str: Namespaced cache key.
    """
    norm_q = " ".join(question.strip().lower().split())
    mt = max_tokens or settings.MAX_OUTPUT_TOKENS
    h = hashlib.sha256(f"{tenant_id}|v={version}|{norm_q}|max={mt}".encode("utf-8")).hexdigest()
    return f"docqa:qa:{h}"


class AnswerCache:
    """Answer cache keyed by tenant, normalized question and answer-token cap.

    Args:
        client: Async Redis client; defaults to get_redis().
        ttl_seconds: Entry lifetime; defaults to settings.CACHE_TTL_SECONDS.
        enabled: Defaults to settings.CACHE_ENABLED. A disabled cache never
            touches Redis.
    """

    def __init__(self, client: Optional[redis.Redis] = None, ttl_seconds: Optional[int] = None, enabled: Optional[bool] = None):
        self._client = client
        self.ttl_seconds = ttl_seconds or settings.CACHE_TTL_SECONDS
        self.enabled = settings.CACHE_ENABLED if enabled is None else enabled

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = get_redis()
        return self._client

    async def version(self, tenant_id: str) -> int:
        """Current data version of the tenant; 0 before the first change."""
        if not self.enabled:
            return 0
        raw = await self.client.get(_version_key(tenant_id))
        return int(raw) if raw else 0

    async def get(
        self, tenant_id: str, question: str, max_tokens: Optional[int] = None, version: Optional[int] = None
    ) -> Optional[dict]:
        """Get a cached answer payload if present.

        Args:
            version: Data version to look up; read from Redis when omitted.

        Returns:
            Optional[dict]: Parsed JSON payload if found and valid; otherwise None.
        """
        if not self.enabled:
            return None
        if version is None:
            version = await self.version(tenant_id)
        key = _key_for_question(tenant_id, version, question, max_tokens)
        raw = await self.client.get(key)
        if not raw:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("Discarding unreadable cache entry %s", key)
            return None

    async def set(
        self,
        tenant_id: str,
        question: str,
        value: Any,
        max_tokens: Optional[int] = None,
        version: Optional[int] = None,
    ) -> None:
        """Store a JSON-serializable answer payload with TTL.

        Pass the version the answer was computed against; an entry written
        under a version that has since been bumped is never read.
        """
        if not self.enabled:
            return
        if version is None:
            version = await self.version(tenant_id)
        key = _key_for_question(tenant_id, version, question, max_tokens)
        await self.client.setex(key, self.ttl_seconds, json.dumps(value))

    async def invalidate_tenant(self, tenant_id: str) -> None:
        """Bump the tenant's data version so earlier answers are never served again."""
        if not self.enabled:
            return
        version = await self.client.incr(_version_key(tenant_id))
        logger.debug("Answer cache version for tenant %s -> %d", tenant_id, version)
