"""Utility helpers for identifiers, collection naming, and token estimates.

This module provides:
- stable_hash: stable SHA-1 based identifier for arbitrary strings
- new_document_id / chunk_id: document and chunk identifiers
- sanitize_collection_name: tenant id -> vector store collection name
- estimate_tokens: cheap character-based token estimate
- truncate: hard truncation with a marker suffix
- utc_now_iso: creation timestamps
- with_backoff: async retry with exponential backoff on transient errors
"""
import asyncio
import hashlib
import logging
import math
import re
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Tuple, Type, TypeVar

from docqa.errors import TransientServiceError

logger = logging.getLogger(__name__)
T = TypeVar("T")

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]+")
MIN_COLLECTION_NAME = 3
MAX_COLLECTION_NAME = 63


def stable_hash(s: str, length: int = 40) -> str:
    """Compute a stable SHA-1 hex identifier for a string.

    Args:
        s: Input string (e.g., tenant id).
        length: Number of hex characters to keep.

    Returns:
        str: First ``length`` hex characters of the SHA-1 digest.
    """
    return hashlib.sha1(s.encode("utf-8")).hexdigest()[:length]


def new_document_id() -> str:
    """Generate a fresh document id; called once per ingested document."""
    return uuid.uuid4().hex


def chunk_id(document_id: str, ordinal: int) -> str:
    """Deterministic chunk id derived from the parent id and chunk ordinal."""
    return f"{document_id}_chunk_{ordinal}"


def sanitize_collection_name(tenant_id: str, prefix: str = "docqa") -> str:
    """Map a tenant id onto the vector store's collection naming rules.

    Names are limited to ``[a-zA-Z0-9_-]``, 3..63 characters, and must start and
    end with an alphanumeric character. Whenever characters are replaced or the
    name is shortened, a hash of the raw tenant id is appended so two tenants
    can never end up sharing a collection.

    Args:
        tenant_id: Raw tenant / user identifier.
        prefix: Collection name prefix.

    Returns:
        str: A valid, deterministic collection name.
    """
    raw = (tenant_id or "").strip()
    if not raw:
        raise ValueError("tenant_id must be a non-empty string")
    cleaned = _INVALID_NAME_CHARS.sub("_", raw).strip("_-")
    name = f"{prefix}_{cleaned}" if cleaned else prefix
    lossy = cleaned != raw
    if lossy or len(name) > MAX_COLLECTION_NAME:
        suffix = stable_hash(raw, 10)
        head = name[: MAX_COLLECTION_NAME - len(suffix) - 1].rstrip("_-")
        name = f"{head}_{suffix}"
    if len(name) < MIN_COLLECTION_NAME:
        name = name + "_" + stable_hash(raw, 6)
    return name


def estimate_tokens(text: str) -> int:
    """Approximate token count as ceil(characters / 4)."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def truncate(text: str, max_chars: int, marker: str = "... [truncated]") -> str:
    """Hard-truncate text to max_chars, appending marker only when text was cut."""
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + marker


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def with_backoff(
    call: Callable[[], Awaitable[T]],
    *,
    attempts: int = 2,
    base_seconds: float = 1.0,
    retry_on: Tuple[Type[BaseException], ...] = (TransientServiceError,),
    label: str = "request",
) -> T:
    """Await ``call()`` retrying on transient errors with exponential backoff.

    The wait before retry ``n`` (1-based) is ``base_seconds * 2**n``. The last
    error is re-raised once ``attempts`` calls have failed.
    """
    attempt = 1
    while True:
        try:
            return await call()
        except retry_on as exc:
            if attempt >= attempts:
                raise
            wait = base_seconds * (2 ** attempt)
            logger.warning("%s failed (%s); retry %d/%d in %.1fs", label, exc, attempt, attempts - 1, wait)
            await asyncio.sleep(wait)
            attempt += 1
