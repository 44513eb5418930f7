"""Application configuration and environment-driven settings.

Defines the Settings class based on pydantic-settings to centralize configuration for:
- API keys, base URL and model names (completion + embedding)
- Vector store (Chroma) connection and collection naming
- Answer cache (Redis)
- Chunking, batching, retrieval, budgeting and generation knobs
- Optional observability (Langfuse)

Each pipeline component also gets one frozen config object (ChunkerConfig,
StoreConfig, RetrievalConfig, BudgetConfig, GeneratorConfig) built once from
the settings via ``from_settings`` and passed into the component.
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Strongly-typed application settings loaded from environment variables.

    Uses pydantic-settings to populate fields from a .env file or process env.
    See individual field names for semantics and safe defaults.
    """
    # Required
    OPENAI_API_KEY: str = Field(default="", description="OpenAI (or compatible) API key")
    OPENAI_BASE_URL: str = ""  # set for OpenAI-compatible providers (e.g. Groq)

    # Models
    OPENAI_MODEL: str = "gpt-4o-mini"
    MODEL_TIER: str = ""  # overrides the context-window lookup when set
    OPENAI_EMBEDDING_MODEL: str = "text-embedding-3-small"  # 1536 dims
    TEMPERATURE: float = 0.3

    # Vector store
    CHROMA_HOST: str = "localhost"
    CHROMA_PORT: int = 8000
    COLLECTION_PREFIX: str = "docqa"

    # Cache
    REDIS_URL: str = "redis://redis:6379/0"
    CACHE_ENABLED: bool = False
    CACHE_TTL_SECONDS: int = 600

    # Chunking
    CHUNK_SIZE: int = 1000
    CHUNK_OVERLAP: int = 200

    # Batching / pacing
    EMBED_BATCH_SIZE: int = 50
    INSERT_BATCH_SIZE: int = 100
    BATCH_PAUSE_SECONDS: float = 0.1
    INSERT_WARN_SECONDS: float = 30.0

    # Retrieval
    TOP_K: int = 10
    EXPANSION_MIN_RESULTS: int = 3
    SENDER_OVERFETCH_FACTOR: int = 4
    RERANK_SEMANTIC_WEIGHT: float = 0.6
    RERANK_KEYWORD_WEIGHT: float = 0.4
    RERANK_SUBJECT_WEIGHT: float = 3.0
    RERANK_BODY_WEIGHT: float = 1.0
    RERANK_MIN_SIMILARITY: float = 0.7

    # Budget / generation
    MAX_OUTPUT_TOKENS: int = 1000
    CONTEXT_SAFETY_BUFFER: int = 1000
    COMPLETION_MAX_ATTEMPTS: int = 2
    CONTEXT_MAX_RETRIES: int = 2

    # Observability (optional)
    LANGFUSE_HOST: str = ""
    LANGFUSE_PUBLIC_KEY: str = ""
    LANGFUSE_SECRET_KEY: str = ""
    LOG_LEVEL: str = "INFO"

    @property
    def EMBEDDING_DIM(self) -> int:
        """Embedding dimension for the configured embedding model.

        Returns:
            int: The vector dimension inferred from OPENAI_EMBEDDING_MODEL.
        """
        model = self.OPENAI_EMBEDDING_MODEL.lower()
        if "text-embedding-3-large" in model:
            return 3072
        if "minilm" in model:
            return 384
        return 1536

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")


settings = Settings()

# Local dev hint only; ingestion and answering fail later without a key
if os.environ.get("RUNNING_IN_DOCKER", "0") == "0" and not settings.OPENAI_API_KEY:
    logger.warning("OPENAI_API_KEY not set. Set it in .env before ingesting or answering.")


DEFAULT_SEPARATORS: Tuple[str, ...] = ("\n\n", "\n", ". ", "! ", "? ", "; ", ", ", " ")

# Questions mentioning any of these are treated as questions about tables/charts/figures
STRUCTURED_KEYWORDS: Tuple[str, ...] = (
    "table", "tables", "chart", "charts", "graph", "graphs", "figure", "figures",
    "data", "dataset", "spreadsheet", "matrix", "grid", "column", "columns",
    "row", "rows", "cell", "cells", "value", "values", "statistics", "stats",
    "percentage", "percentages", "total", "totals", "sum", "average", "mean",
    "compare", "comparison", "trend", "trends", "pattern", "patterns",
)


@dataclass(frozen=True)
class ChunkerConfig:
    """Chunk window and overlap in characters, plus break separators in priority order."""
    chunk_size: int = 1000
    overlap: int = 200
    separators: Tuple[str, ...] = DEFAULT_SEPARATORS

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "ChunkerConfig":
        s = s or settings
        return cls(chunk_size=s.CHUNK_SIZE, overlap=s.CHUNK_OVERLAP)


@dataclass(frozen=True)
class StoreConfig:
    """Vector Store Manager limits.

    Attributes:
        collection_prefix: Prefix for every tenant collection name.
        batch_size: Records per store ``add`` call; larger inserts are split.
        batch_pause_seconds: Pause between sub-batches.
        max_id_length: Upper bound on record id length.
        max_text_length: Record text is truncated beyond this many characters.
        max_metadata_value_length: String metadata values are truncated to this length.
        insert_warn_seconds: Inserts slower than this log a warning (advisory only).
    """
    collection_prefix: str = "docqa"
    batch_size: int = 100
    batch_pause_seconds: float = 0.1
    max_id_length: int = 256
    max_text_length: int = 100_000
    max_metadata_value_length: int = 1000
    insert_warn_seconds: float = 30.0
    empty_text_placeholder: str = "[empty content]"

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "StoreConfig":
        s = s or settings
        return cls(
            collection_prefix=s.COLLECTION_PREFIX,
            batch_size=s.INSERT_BATCH_SIZE,
            batch_pause_seconds=s.BATCH_PAUSE_SECONDS,
            insert_warn_seconds=s.INSERT_WARN_SECONDS,
        )


@dataclass(frozen=True)
class RetrievalConfig:
    """Query expansion and sender re-ranking knobs.

    The trigger terms and blend weights are heuristics; keep them tunable.
    """
    top_k: int = 10
    expansion_min_results: int = 3
    expansion_triggers: Tuple[str, ...] = ("pricing", "cost")
    expansion_terms: Tuple[str, ...] = ("pricing", "cost", "price", "fee", "rate")
    sender_overfetch_factor: int = 4
    semantic_weight: float = 0.6
    keyword_weight: float = 0.4
    subject_weight: float = 3.0
    body_weight: float = 1.0
    min_similarity_without_match: float = 0.7
    structured_keywords: Tuple[str, ...] = STRUCTURED_KEYWORDS

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "RetrievalConfig":
        s = s or settings
        return cls(
            top_k=s.TOP_K,
            expansion_min_results=s.EXPANSION_MIN_RESULTS,
            sender_overfetch_factor=s.SENDER_OVERFETCH_FACTOR,
            semantic_weight=s.RERANK_SEMANTIC_WEIGHT,
            keyword_weight=s.RERANK_KEYWORD_WEIGHT,
            subject_weight=s.RERANK_SUBJECT_WEIGHT,
            body_weight=s.RERANK_BODY_WEIGHT,
            min_similarity_without_match=s.RERANK_MIN_SIMILARITY,
        )


@dataclass(frozen=True)
class BudgetConfig:
    """Context Budgeter limits, all in estimated tokens unless noted."""
    model: str = "gpt-4o-mini"
    model_tier: str = ""
    system_prompt_overhead: int = 600
    safety_buffer: int = 1000
    min_available: int = 1000
    min_partial_tokens: int = 500
    partial_reserve_tokens: int = 100
    max_partial_chars: int = 8000
    forced_item_chars: int = 4000

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "BudgetConfig":
        s = s or settings
        return cls(model=s.OPENAI_MODEL, model_tier=s.MODEL_TIER, safety_buffer=s.CONTEXT_SAFETY_BUFFER)


@dataclass(frozen=True)
class GeneratorConfig:
    """Answer generation and retry-ladder knobs."""
    model: str = "gpt-4o-mini"
    temperature: float = 0.3
    answer_tokens: int = 1000
    answer_token_step: int = 200
    min_answer_tokens: int = 500
    max_context_retries: int = 2
    drop_per_retry: int = 2
    reduced_context_ratio: float = 0.75
    fallback_answer_tokens: int = 500
    fallback_chars: int = 2000
    fallback_confidence: float = 0.3
    completion_attempts: int = 2
    backoff_base_seconds: float = 1.0
    preview_chars: int = 200
    max_sources: int = 5
    structured_keywords: Tuple[str, ...] = STRUCTURED_KEYWORDS

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "GeneratorConfig":
        s = s or settings
        return cls(
            model=s.OPENAI_MODEL,
            temperature=s.TEMPERATURE,
            answer_tokens=s.MAX_OUTPUT_TOKENS,
            max_context_retries=s.CONTEXT_MAX_RETRIES,
            completion_attempts=s.COMPLETION_MAX_ATTEMPTS,
        )
