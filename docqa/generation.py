"""Answer generation using OpenAI-compatible chat completions.

Provides:
- Completion / CompletionClient: async chat completion with provider errors
  translated into ContextTooLargeError / RateLimitError / CompletionError
- build_context / build_messages: enumerated evidence block and prompt variants
  (standard, email, structured data), all asking the model to cite [n]
- confidence_from: clamp(1 - mean distance, 0, 1)
- AnswerGenerator: drives the retry ladder around the context budgeter

Configuration is read from docqa.config.settings via GeneratorConfig.
"""
import json
import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from docqa.budget import ContextBudgeter, LadderState, RetryLadder
from docqa.config import GeneratorConfig, settings
from docqa.embedding import get_client
from docqa.errors import (
    CompletionError,
    ContextTooLargeError,
    DocQAError,
    QuotaExceededError,
    RateLimitError,
    ServiceTimeoutError,
)
from docqa.models import ContextBundle, EvidenceItem
from docqa.router import is_structured_question
from docqa.schemas import AnswerResult, EvidencePreview
from docqa.utils import with_backoff

logger = logging.getLogger(__name__)

NO_EVIDENCE_ANSWER = (
    "I don't have enough information to answer this question. "
    "Please try uploading some relevant documents first."
)

_CONTEXT_SIGNALS = ("context_length_exceeded", "context length", "maximum context", "request too large", "too many tokens")


@dataclass
class Completion:
    text: str
    usage_tokens: int
    model: str


class CompletionService(Protocol):
    async def complete(self, messages: List[Dict[str, str]], max_tokens: int, temperature: float) -> Completion: ...


def _translate(exc: Exception) -> Exception:
    """Map an openai exception onto the pipeline taxonomy."""
    msg = str(exc)
    low = msg.lower()
    code = getattr(exc, "code", None)
    status = getattr(exc, "status_code", None)
    if code == "context_length_exceeded" or status == 413 or any(s in low for s in _CONTEXT_SIGNALS):
        return ContextTooLargeError(f"Prompt too long for the model: {msg}")
    if isinstance(exc, openai.RateLimitError):
        if code == "insufficient_quota" or "quota" in low:
            return QuotaExceededError(f"Completion quota exceeded: {msg}")
        return RateLimitError(f"Completion rate limit hit: {msg}")
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return ServiceTimeoutError(f"Completion service unreachable: {msg}")
    return CompletionError(f"Failed to generate answer: {msg}")


class CompletionClient:
    """CompletionService over ``AsyncOpenAI.chat.completions``."""

    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self._client = client
        self.model = model or settings.OPENAI_MODEL

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def complete(self, messages, max_tokens, temperature) -> Completion:
        try:
            resp = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as exc:
            raise _translate(exc) from exc
        content = resp.choices[0].message.content or ""
        usage = resp.usage.total_tokens if resp.usage is not None else 0
        return Completion(text=content.strip(), usage_tokens=usage, model=resp.model or self.model)


def is_email_evidence(items: Sequence[EvidenceItem]) -> bool:
    return any(
        i.metadata.get("document_type") == "email" or i.metadata.get("sender_email") or i.metadata.get("subject")
        for i in items
    )


def build_context(items: Sequence[EvidenceItem], route: str = "standard") -> str:
    """Create an enumerated context block from selected evidence.

    Args:
        items: Evidence in prompt order; item ``n`` is cited as ``[n]``.
        route: 'email' renders sender and subject headers; 'structured' adds
            non-identity metadata so numbers and table hints stay visible.

    Returns:
        str: Human-readable block of ``[n] header`` lines followed by text.
    """
    lines: List[str] = []
    for n, item in enumerate(items, start=1):
        meta = item.metadata
        if route == "email":
            header = (
                f"From: {meta.get('sender_email', 'Unknown')} | "
                f"Subject: {meta.get('subject', 'No Subject')}"
            )
        else:
            header = str(meta.get("filename") or meta.get("document_id") or item.id)
        block = f"[{n}] {header}\n{item.text}"
        if route == "structured":
            extra = {k: v for k, v in meta.items() if k not in ("document_id", "tenant_id", "start", "end")}
            block += f"\nMetadata: {json.dumps(extra, default=str, sort_keys=True)}"
        lines.append(block)
    return "\n\n".join(lines)


_SYSTEM_PROMPTS = {
    "standard": (
        "You are a helpful assistant answering questions about the user's uploaded documents. "
        "Use ONLY the provided context passages to answer. If related information is present, "
        "use it and explain the connection; if nothing is relevant, say you don't know. "
        "Cite the passages you used with their numbers, e.g. [1] or [2][3]."
    ),
    "email": (
        "You are a helpful assistant answering questions about the user's emails. "
        "Use ONLY the provided emails. When the question names a sender or topic, mention only "
        "emails that match both, and say clearly when none do. Answer conversationally and cite "
        "the emails you used with their numbers, e.g. [1]."
    ),
    "structured": (
        "You are a helpful assistant that analyzes tables, charts and numerical data in the user's documents. "
        "Use ONLY the provided context passages. Give exact values when available, identify trends and "
        "comparisons, and explain how you arrived at the answer. Cite the passages you used with their numbers, e.g. [1]."
    ),
}


def build_messages(question: str, items: Sequence[EvidenceItem], route: str = "standard") -> List[Dict[str, str]]:
    system = _SYSTEM_PROMPTS.get(route, _SYSTEM_PROMPTS["standard"])
    user = (
        f"Question:\n{question}\n\n"
        f"Context passages (use these only):\n{build_context(items, route)}\n\n"
        "Provide a clear and complete answer grounded in the context, citing passage numbers."
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def confidence_from(items: Sequence[EvidenceItem]) -> float:
    """clamp(1 - mean distance of items, 0, 1); 0 for no items."""
    if not items:
        return 0.0
    avg = sum(i.distance for i in items) / len(items)
    return max(0.0, min(1.0, 1.0 - avg))


class AnswerGenerator:
    """Budget evidence, prompt the model, and walk the retry ladder on context errors.

    Args:
        completion: CompletionService implementation.
        budgeter: ContextBudgeter; defaults to one built from settings.
        config: GeneratorConfig; defaults to values from settings.
    """

    def __init__(
        self,
        completion: CompletionService,
        budgeter: Optional[ContextBudgeter] = None,
        config: Optional[GeneratorConfig] = None,
    ):
        self.completion = completion
        self.budgeter = budgeter or ContextBudgeter()
        self.config = config or GeneratorConfig.from_settings()

    def route_for(self, question: str, evidence: Sequence[EvidenceItem]) -> str:
        if is_email_evidence(evidence):
            return "email"
        if is_structured_question(question, self.config.structured_keywords):
            return "structured"
        return "standard"

    def _bundle(
        self,
        ladder: RetryLadder,
        evidence: Sequence[EvidenceItem],
        question: str,
        previous: Optional[ContextBundle],
        cfg: GeneratorConfig,
    ) -> ContextBundle:
        """Evidence for the ladder's current step.

        Reduced steps refit the previous attempt's selection minus its least
        relevant items, capped below the previous estimate.
        """
        step = ladder.current()
        if step.state is LadderState.MINIMAL_FALLBACK:
            return self.budgeter.minimal(evidence, cfg.fallback_chars, question, step.answer_tokens)
        if previous is None or step.state is LadderState.INITIAL:
            return self.budgeter.fit(evidence, question, step.answer_tokens)
        ceiling = min(previous.estimated_tokens - 1, int(previous.estimated_tokens * cfg.reduced_context_ratio))
        return self.budgeter.fit(
            previous.items, question, step.answer_tokens, drop_last=step.drop_last, ceiling=ceiling
        )

    def _previews(self, items: Sequence[EvidenceItem]) -> List[EvidencePreview]:
        out: List[EvidencePreview] = []
        for item in items[:self.config.max_sources]:
            text = item.text
            preview = text[:self.config.preview_chars] + ("..." if len(text) > self.config.preview_chars else "")
            out.append(
                EvidencePreview(
                    id=item.id,
                    document_id=str(item.metadata.get("document_id") or item.id),
                    filename=item.metadata.get("filename"),
                    preview=preview,
                    distance=item.distance,
                    truncated=item.truncated,
                    metadata=item.metadata,
                )
            )
        return out

    async def generate(
        self,
        question: str,
        evidence: Sequence[EvidenceItem],
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        trace: Any = None,
    ) -> AnswerResult:
        """Answer ``question`` from ``evidence``.

        Args:
            question: User question.
            evidence: Retrieved evidence (any order).
            max_tokens: Answer-token budget for the first attempt and cap for later ones.
            temperature: Sampling temperature override.
            trace: Optional docqa.obs.Trace receiving ladder and generation events.

        Returns:
            AnswerResult: Answer, evidence previews, confidence and ladder info.

        Raises:
            ContextTooLargeError: Every ladder step was rejected as too long.
            RateLimitError / ServiceTimeoutError: Retries exhausted; ``step`` names the ladder step.
        """
        if not evidence:
            return AnswerResult(answer=NO_EVIDENCE_ANSWER, confidence=0.0, ladder_step="no_evidence")

        cfg = self.config
        if max_tokens:
            cfg = replace(
                cfg,
                answer_tokens=max_tokens,
                min_answer_tokens=min(cfg.min_answer_tokens, max_tokens),
                fallback_answer_tokens=min(cfg.fallback_answer_tokens, max_tokens),
            )
        temp = cfg.temperature if temperature is None else temperature
        route = self.route_for(question, evidence)
        ladder = RetryLadder(cfg)
        last_error: Optional[ContextTooLargeError] = None
        previous: Optional[ContextBundle] = None

        while not ladder.finished:
            step = ladder.current()
            bundle = self._bundle(ladder, evidence, question, previous, cfg)
            messages = build_messages(question, bundle.items, route)
            try:
                completion = await with_backoff(
                    lambda m=messages, t=step.answer_tokens: self.completion.complete(m, t, temp),
                    attempts=cfg.completion_attempts,
                    base_seconds=cfg.backoff_base_seconds,
                    retry_on=(RateLimitError, ServiceTimeoutError),
                    label=f"completion ({step.name})",
                )
            except ContextTooLargeError as exc:
                last_error = exc
                logger.warning("Context too large at step %s (%d items): %s", step.name, len(bundle.items), exc)
                if trace is not None:
                    trace.event("ladder", {"step": step.name, "items": len(bundle.items), "outcome": "context_too_large"})
                previous = bundle
                ladder.advance()
                continue
            except DocQAError as exc:
                exc.step = step.name
                raise

            ladder.succeed()
            confidence = confidence_from(bundle.items)
            if step.state is LadderState.MINIMAL_FALLBACK:
                confidence = min(confidence, cfg.fallback_confidence)
            if trace is not None:
                trace.generation(
                    "answer", messages[-1]["content"], completion.text, {"step": step.name, "route": route}
                )
            logger.info(
                "Answered with %d/%d evidence items at step %s (confidence %.2f)",
                len(bundle.items), len(evidence), step.name, confidence,
            )
            return AnswerResult(
                answer=completion.text,
                evidence=self._previews(bundle.items),
                confidence=confidence,
                tokens_used=completion.usage_tokens,
                truncated=bundle.truncated,
                ladder_step=step.name,
                documents_used=len(bundle.items),
                documents_available=len(evidence),
                model=completion.model,
                route=route,
            )

        raise ContextTooLargeError(
            f"Context too large even with minimal evidence: {last_error}",
            step=ladder.history[-1] if ladder.history else None,
        ) from last_error
