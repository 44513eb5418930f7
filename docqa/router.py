"""Heuristic routing for query classification into retrieval strategies.

Defines:
- Route: Literal type alias of allowed routes.
- RouteDecision: Dataclass carrying the chosen route, rationale and the
  extra terms a second, expanded query should append.
- is_structured_question / structured_expansion: table/chart question detection.
- classify_query: Heuristic classifier producing a RouteDecision.

Low result counts also trigger expansion; that check lives in the retrieval
aggregator because it needs the first query's results.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence, Set, Tuple

from docqa.config import RetrievalConfig

Route = Literal["standard", "pricing", "structured", "email"]

WORD = re.compile(r"[a-z0-9]+")

# (question triggers, search terms appended when any trigger is present)
STRUCTURED_EXPANSIONS: Tuple[Tuple[Tuple[str, ...], Tuple[str, ...]], ...] = (
    (("table", "data"), ("table", "data", "information", "details")),
    (("chart", "graph"), ("chart", "graph", "visualization", "figure")),
    (("number", "value"), ("number", "value", "amount", "quantity", "total")),
    (("percentage", "percent"), ("percentage", "percent", "rate", "ratio")),
    (("compare", "comparison"), ("compare", "comparison", "versus", "vs", "difference")),
)


@dataclass
class RouteDecision:
    """Routing decision for one question.

    Attributes:
        route: One of 'standard', 'pricing', 'structured' or 'email'.
        reason: Short human-readable rationale for the chosen route.
        expansion_terms: Terms appended for the expanded second query; empty
            means no intent-based expansion.
    """
    route: Route
    reason: str
    expansion_terms: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def expands(self) -> bool:
        return bool(self.expansion_terms)


def _words(q: str) -> Set[str]:
    return set(WORD.findall(q.lower()))


def _stems(words: Set[str]) -> Set[str]:
    # crude plural folding: "tables" also matches the "table" trigger
    return words | {w[:-1] for w in words if len(w) > 3 and w.endswith("s")}


def is_structured_question(q: str, keywords: Sequence[str]) -> bool:
    """True when the question mentions tables, charts, figures or aggregate numbers."""
    return bool(_stems(_words(q)) & set(keywords))


def structured_expansion(q: str) -> Tuple[str, ...]:
    """Search terms appended to a structured-data question, de-duplicated in order."""
    words = _stems(_words(q))
    terms: List[str] = []
    for triggers, extra in STRUCTURED_EXPANSIONS:
        if any(t in words for t in triggers):
            terms.extend(t for t in extra if t not in terms)
    return tuple(terms)


def is_email_filter(filters: Optional[Mapping[str, Any]]) -> bool:
    if not filters:
        return False
    return bool(filters.get("sender_email")) or filters.get("document_type") == "email"


def classify_query(
    q: str,
    config: Optional[RetrievalConfig] = None,
    filters: Optional[Dict[str, Any]] = None,
) -> RouteDecision:
    """Classify a user question into a retrieval route using heuristics.

    Args:
        q: The raw user question.
        config: RetrievalConfig holding trigger and expansion terms.
        filters: Metadata filters the caller will search with.

    Returns:
        RouteDecision: Selected route, rationale and expansion terms.

    Heuristics:
        - 'email' when filtering by sender or on email documents (sender re-ranking applies).
        - 'pricing' if the question mentions a pricing trigger term.
        - 'structured' for table / chart / aggregate-number questions.
        - 'standard' otherwise.
    """
    cfg = config or RetrievalConfig()
    ql = q.strip().lower()
    pricing = any(t in ql for t in cfg.expansion_triggers)

    if is_email_filter(filters):
        terms = cfg.expansion_terms if pricing else ()
        return RouteDecision(route="email", reason="email filter present", expansion_terms=terms)

    if pricing:
        return RouteDecision(route="pricing", reason="pricing terms present", expansion_terms=cfg.expansion_terms)

    if is_structured_question(q, cfg.structured_keywords):
        terms = structured_expansion(q)
        return RouteDecision(route="structured", reason="structured-data question", expansion_terms=terms)

    return RouteDecision(route="standard", reason="default")
