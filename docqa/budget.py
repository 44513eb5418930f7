"""Context budgeting: fit ranked evidence into a model's context window.

Provides:
- MODEL_CONTEXT_LIMITS / TIER_LIMITS: known context windows in tokens
- context_limit: model name or tier -> context window
- ContextBudgeter: available-token computation, greedy fill with one partial
  item, forced single-item fallback, and the minimal fallback bundle
- LadderState / RetryLadder: the degradation ladder driven by the answer generator

All token counts are estimates (ceil(chars / 4)), never tokenizer output.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from docqa.config import BudgetConfig, GeneratorConfig
from docqa.models import ContextBundle, EvidenceItem
from docqa.utils import estimate_tokens, truncate

logger = logging.getLogger(__name__)

TIER_LIMITS: Dict[str, int] = {"small": 8192, "medium": 32768, "large": 128000}
DEFAULT_CONTEXT_LIMIT = 16384

MODEL_CONTEXT_LIMITS: Dict[str, int] = {
    "llama-3.3-70b-versatile": 131072,
    "llama-3.1-8b-instant": 131072,
    "mixtral-8x7b-32768": 32768,
    "gemma2-9b-it": 8192,
    "gpt-3.5-turbo": 16385,
    "gpt-3.5-turbo-16k": 16385,
    "gpt-4": 8192,
    "gpt-4-32k": 32768,
    "gpt-4-turbo": 128000,
    "gpt-4-turbo-preview": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
}

TRUNCATION_MARKER = "... [truncated]"


def context_limit(model: str, tier: str = "") -> int:
    """Context window for a model, in tokens.

    An explicit tier wins; otherwise the exact model name, then the longest
    known name the model starts with (e.g. dated snapshots). Unknown models
    get a conservative default.
    """
    if tier:
        return TIER_LIMITS.get(tier.lower(), DEFAULT_CONTEXT_LIMIT)
    name = (model or "").lower()
    if name in MODEL_CONTEXT_LIMITS:
        return MODEL_CONTEXT_LIMITS[name]
    prefixes = [k for k in MODEL_CONTEXT_LIMITS if name.startswith(k)]
    if prefixes:
        return MODEL_CONTEXT_LIMITS[max(prefixes, key=len)]
    return DEFAULT_CONTEXT_LIMIT


class ContextBudgeter:
    """Selects evidence so the prompt stays inside the model's context window."""

    def __init__(self, config: Optional[BudgetConfig] = None):
        self.config = config or BudgetConfig.from_settings()

    @property
    def limit(self) -> int:
        return context_limit(self.config.model, self.config.model_tier)

    def available_tokens(self, question: str, answer_tokens: int, system_overhead: Optional[int] = None) -> int:
        """Tokens left for evidence once prompt, question, answer and buffer are reserved."""
        cfg = self.config
        overhead = cfg.system_prompt_overhead if system_overhead is None else system_overhead
        left = self.limit - overhead - estimate_tokens(question) - answer_tokens - cfg.safety_buffer
        return max(cfg.min_available, left)

    def fit(
        self,
        evidence: Sequence[EvidenceItem],
        question: str,
        answer_tokens: int,
        drop_last: int = 0,
        system_overhead: Optional[int] = None,
        ceiling: Optional[int] = None,
    ) -> ContextBundle:
        """Greedily fill the budget with the most relevant evidence.

        Args:
            evidence: Candidate evidence in any order.
            question: The user question (its size is reserved).
            answer_tokens: Tokens reserved for the answer.
            drop_last: Remove this many of the least relevant items first
                (used by reduced-context ladder steps); at least one item is kept.
            system_overhead: Override for the system prompt reservation.
            ceiling: Hard cap on evidence tokens, applied after the
                ``min_available`` floor.

        Returns:
            ContextBundle: Items ordered by ascending distance. The first item
            that does not fit is included hard-truncated when more than
            ``min_partial_tokens`` remain, otherwise dropped; filling stops
            there. When nothing fits, the most relevant item is forced in,
            truncated.
        """
        cfg = self.config
        available = self.available_tokens(question, answer_tokens, system_overhead)
        if ceiling is not None:
            available = min(available, max(1, ceiling))
        ranked = sorted(evidence, key=lambda e: e.distance)
        if drop_last > 0 and len(ranked) > 1:
            ranked = ranked[:max(1, len(ranked) - drop_last)]
        pre_dropped = len(evidence) - len(ranked)

        items: List[EvidenceItem] = []
        used = 0
        truncated = False
        for item in ranked:
            cost = estimate_tokens(item.text)
            if used + cost <= available:
                items.append(item)
                used += cost
                continue
            remaining = available - used
            if remaining > cfg.min_partial_tokens:
                # the marker adds a few tokens; the reserve absorbs them
                chars = min((remaining - cfg.partial_reserve_tokens) * 4, cfg.max_partial_chars)
                part = EvidenceItem(
                    id=item.id,
                    text=truncate(item.text, chars, TRUNCATION_MARKER),
                    distance=item.distance,
                    metadata=item.metadata,
                    truncated=True,
                )
                items.append(part)
                used += estimate_tokens(part.text)
            truncated = True
            break

        if not items and ranked:
            best = ranked[0]
            chars = min(cfg.forced_item_chars, available * 4 - 200)
            if chars <= 0:
                chars = max(1, available * 4 - len(TRUNCATION_MARKER))
            forced = EvidenceItem(
                id=best.id,
                text=truncate(best.text, chars, TRUNCATION_MARKER),
                distance=best.distance,
                metadata=best.metadata,
                truncated=True,
            )
            logger.warning("No evidence fit in %d tokens; forcing best item truncated to %d chars", available, chars)
            items = [forced]
            used = estimate_tokens(forced.text)
            truncated = True

        dropped = pre_dropped + (len(ranked) - len(items))
        logger.debug(
            "Context fit: %d/%d items, %d/%d tokens, truncated=%s", len(items), len(evidence), used, available, truncated
        )
        return ContextBundle(
            items=items,
            truncated=truncated or dropped > 0,
            dropped=dropped,
            estimated_tokens=used,
            available_tokens=available,
        )

    def minimal(self, evidence: Sequence[EvidenceItem], max_chars: int, question: str = "", answer_tokens: int = 500) -> ContextBundle:
        """Single most relevant item, hard-truncated to ``max_chars``."""
        available = self.available_tokens(question, answer_tokens)
        if not evidence:
            return ContextBundle(items=[], truncated=False, dropped=0, estimated_tokens=0, available_tokens=available)
        best = min(evidence, key=lambda e: e.distance)
        text = truncate(best.text, max_chars, "... [heavily truncated]")
        item = EvidenceItem(
            id=best.id, text=text, distance=best.distance, metadata=best.metadata, truncated=text != best.text
        )
        return ContextBundle(
            items=[item],
            truncated=True,
            dropped=len(evidence) - 1,
            estimated_tokens=estimate_tokens(text),
            available_tokens=available,
        )


class LadderState(str, Enum):
    INITIAL = "initial"
    REDUCED_CONTEXT = "reduced_context"
    MINIMAL_FALLBACK = "minimal_fallback"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = (LadderState.SUCCEEDED, LadderState.FAILED)


@dataclass(frozen=True)
class LadderStep:
    """Parameters for one completion attempt."""
    state: LadderState
    retry: int
    answer_tokens: int
    drop_last: int

    @property
    def name(self) -> str:
        if self.state is LadderState.REDUCED_CONTEXT:
            return f"{self.state.value}_{self.retry}"
        return self.state.value


class RetryLadder:
    """Degradation ladder for context-size failures.

    INITIAL -> REDUCED_CONTEXT (up to ``max_context_retries`` times)
    -> MINIMAL_FALLBACK -> FAILED. Any attempt may end in SUCCEEDED.
    Each reduced step shrinks the answer budget by ``answer_token_step`` (floor
    ``min_answer_tokens``). ``drop_last`` counts the items a reduced step removes
    from the previous attempt's selection.
    """

    def __init__(self, config: Optional[GeneratorConfig] = None):
        self.config = config or GeneratorConfig.from_settings()
        self.state = LadderState.INITIAL
        self.retry = 0
        self.history: List[str] = []

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def current(self) -> LadderStep:
        cfg = self.config
        if self.state is LadderState.MINIMAL_FALLBACK:
            return LadderStep(self.state, self.retry, cfg.fallback_answer_tokens, 0)
        tokens = max(cfg.min_answer_tokens, cfg.answer_tokens - self.retry * cfg.answer_token_step)
        drop = cfg.drop_per_retry if self.state is LadderState.REDUCED_CONTEXT else 0
        return LadderStep(self.state, self.retry, tokens, drop)

    def succeed(self) -> None:
        if self.finished:
            raise RuntimeError(f"Retry ladder already finished ({self.state.value})")
        self.history.append(self.current().name)
        self.state = LadderState.SUCCEEDED

    def advance(self) -> LadderState:
        """Move to the next step after a context-size failure."""
        if self.finished:
            raise RuntimeError(f"Retry ladder already finished ({self.state.value})")
        self.history.append(self.current().name)
        if self.state in (LadderState.INITIAL, LadderState.REDUCED_CONTEXT) and self.retry < self.config.max_context_retries:
            self.state = LadderState.REDUCED_CONTEXT
            self.retry += 1
        elif self.state is LadderState.MINIMAL_FALLBACK:
            self.state = LadderState.FAILED
        else:
            self.state = LadderState.MINIMAL_FALLBACK
        logger.info("Retry ladder -> %s (retry %d)", self.state.value, self.retry)
        return self.state
