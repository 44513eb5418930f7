"""Embedding utilities wrapping OpenAI's async embeddings API.

Provides:
- get_client: Cached AsyncOpenAI client using the configured API key / base URL.
- Embedder: batched, paced embedding of text lists with provider errors
  translated into RateLimitError / QuotaExceededError / ServiceTimeoutError /
  EmbeddingError.

Models and batch sizes are configured via docqa.config.settings.
"""
import asyncio
import logging
import math
from typing import List, Optional

import openai
from openai import AsyncOpenAI

from docqa.config import settings
from docqa.errors import (
    EmbeddingError,
    QuotaExceededError,
    RateLimitError,
    ServiceTimeoutError,
    ValidationError,
)
from docqa.utils import with_backoff

logger = logging.getLogger(__name__)

_client: Optional[AsyncOpenAI] = None


def get_client() -> AsyncOpenAI:
    """Return a cached AsyncOpenAI client initialized with the configured API key.

    Returns:
        AsyncOpenAI: A singleton-like client instance reused across calls.
    """
    global _client
    if _client is None:
        _client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, base_url=settings.OPENAI_BASE_URL or None)
    return _client


def _translate(exc: Exception) -> Exception:
    """Map an openai exception onto the pipeline taxonomy."""
    if isinstance(exc, openai.RateLimitError):
        if getattr(exc, "code", None) == "insufficient_quota" or "quota" in str(exc).lower():
            return QuotaExceededError(f"Embedding quota exceeded: {exc}")
        return RateLimitError(f"Embedding rate limit hit: {exc}")
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return ServiceTimeoutError(f"Embedding service unreachable: {exc}")
    return EmbeddingError(f"Failed to generate embeddings: {exc}")


class Embedder:
    """Embedding service client: ``embed(texts) -> one vector per text``."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        batch_size: Optional[int] = None,
        pause_seconds: Optional[float] = None,
        attempts: int = 2,
    ):
        self._client = client
        self.model = model or settings.OPENAI_EMBEDDING_MODEL
        self.batch_size = batch_size or settings.EMBED_BATCH_SIZE
        self.pause_seconds = settings.BATCH_PAUSE_SECONDS if pause_seconds is None else pause_seconds
        self.attempts = attempts

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        try:
            resp = await self.client.embeddings.create(model=self.model, input=batch)
        except openai.OpenAIError as exc:
            raise _translate(exc) from exc
        vectors = [d.embedding for d in resp.data]
        if len(vectors) != len(batch):
            raise EmbeddingError(f"Embedding service returned {len(vectors)} vectors for {len(batch)} inputs")
        return vectors

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Embed texts in sequential batches with a short pause between batches.

        Args:
            texts: Input strings; must all be non-empty after trimming.

        Returns:
            List[List[float]]: One embedding vector per input text, in order.
        """
        if not texts:
            return []
        if any(not isinstance(t, str) or not t.strip() for t in texts):
            raise ValidationError("Embedding inputs must be non-empty strings")

        total_batches = math.ceil(len(texts) / self.batch_size)
        vectors: List[List[float]] = []
        for n, i in enumerate(range(0, len(texts), self.batch_size), start=1):
            batch = texts[i:i + self.batch_size]
            logger.debug("Embedding batch %d/%d (%d texts)", n, total_batches, len(batch))
            vectors.extend(
                await with_backoff(
                    lambda b=batch: self._embed_batch(b),
                    attempts=self.attempts,
                    retry_on=(RateLimitError, ServiceTimeoutError),
                    label=f"embedding batch {n}/{total_batches}",
                )
            )
            if n < total_batches and self.pause_seconds > 0:
                await asyncio.sleep(self.pause_seconds)
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        """Embed a single query string and return its embedding vector."""
        return (await self.embed([text]))[0]
