"""Retrieval pipeline: semantic search, query expansion, re-ranking, grouping.

This module implements:
- Tokenization and significant-term extraction
- merge_hits: id-deduplicating merge of two ranked hit lists
- keyword_score / rerank_by_sender: sender-filtered content re-ranking
- group_hits: chunk hits -> parent-document groups
- RetrievalAggregator: the tenant-scoped ``search`` entry point

Vector search runs in the tenant's collection with cosine distance
(similarity = 1 - distance).
"""
import logging
import re
from typing import Any, Dict, List, Optional, Sequence

from docqa.config import RetrievalConfig
from docqa.embedding import Embedder
from docqa.errors import ValidationError
from docqa.models import DocumentGroup, SearchHit
from docqa.router import RouteDecision, classify_query
from docqa.store_manager import VectorStoreManager
from docqa.vector_store import build_where

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    """
    a about above after again all also am an and any are as at be because been before being
    below between both but by can could did do does doing down during each email emails few
    for from further had has have having he her here hers him his how i if in into is it its
    just me more most my no nor not now of off on once only or other our ours out over own
    please same she should show so some such than that the their theirs them then there these
    they this those through to too under until up very was we were what when where which while
    who whom why will with would you your yours
    """.split()
)


def _tokenize(s: str) -> List[str]:
    """Lowercase alphanumeric tokenization used for keyword matching.

    Args:
        s: Input string.

    Returns:
        List[str]: Alphanumeric tokens in lowercase.
    """
    return re.findall(r"[a-z0-9]+", s.lower())


def significant_terms(query: str, min_len: int = 2) -> List[str]:
    """Unique query words with stop words removed, in first-seen order."""
    seen = set()
    out: List[str] = []
    for t in _tokenize(query):
        if len(t) < min_len or t in STOP_WORDS or t in seen:
            continue
        seen.add(t)
        out.append(t)
    return out


def keyword_score(terms: Sequence[str], subject: str, body: str, subject_weight: float = 3.0, body_weight: float = 1.0) -> float:
    """Weighted exact-term overlap of ``terms`` with subject and body, in [0, 1].

    Each term contributes ``subject_weight`` when it appears in the subject and
    ``body_weight`` when it appears in the body; the sum is divided by the
    maximum attainable score.
    """
    if not terms:
        return 0.0
    subject_tokens = set(_tokenize(subject or ""))
    body_tokens = set(_tokenize(body or ""))
    raw = 0.0
    for t in terms:
        if t in subject_tokens:
            raw += subject_weight
        if t in body_tokens:
            raw += body_weight
    best = len(terms) * (subject_weight + body_weight)
    return raw / best if best > 0 else 0.0


def merge_hits(primary: List[SearchHit], secondary: List[SearchHit], limit: int) -> List[SearchHit]:
    """Merge two hit lists by chunk id (first occurrence wins), best similarity first."""
    by_id: Dict[str, SearchHit] = {}
    for h in list(primary) + list(secondary):
        by_id.setdefault(h.id, h)
    merged = sorted(by_id.values(), key=lambda h: h.similarity, reverse=True)
    return merged[:limit]


def rerank_by_sender(query: str, hits: List[SearchHit], config: RetrievalConfig) -> List[SearchHit]:
    """Blend similarity with keyword overlap and drop weak, non-matching hits.

    score = semantic_weight * similarity + keyword_weight * keyword_score.
    Hits with no term match and similarity below the configured threshold
    are removed. Returns hits sorted by the blended score.
    """
    terms = significant_terms(query)
    kept: List[SearchHit] = []
    for h in hits:
        kw = keyword_score(
            terms,
            str(h.metadata.get("subject") or ""),
            h.text,
            config.subject_weight,
            config.body_weight,
        )
        if kw == 0.0 and h.similarity < config.min_similarity_without_match:
            continue
        h.score = config.semantic_weight * h.similarity + config.keyword_weight * kw
        kept.append(h)
    dropped = len(hits) - len(kept)
    if dropped:
        logger.debug("Sender re-rank dropped %d/%d hits without term matches", dropped, len(hits))
    kept.sort(key=lambda h: h.rank_score, reverse=True)
    return kept


def group_hits(hits: List[SearchHit], top_k: int) -> List[DocumentGroup]:
    """Group chunk hits by parent document; score = sum of member scores.

    Member scores are similarities unless the hits were re-ranked. Hits keep
    their rank order inside each group.
    """
    groups: Dict[str, DocumentGroup] = {}
    for h in hits:
        doc_id = h.document_id
        g = groups.get(doc_id)
        if g is None:
            g = groups[doc_id] = DocumentGroup(document_id=doc_id, filename=str(h.metadata.get("filename", "")))
        g.hits.append(h)
        g.score += h.rank_score
    ranked = sorted(groups.values(), key=lambda g: g.score, reverse=True)
    return ranked[:top_k]


class RetrievalAggregator:
    """Tenant-scoped semantic search with expansion, re-ranking and grouping.

    Args:
        store: VectorStoreManager resolving tenant collections.
        embedder: Embedding client used for query vectors.
        config: RetrievalConfig; defaults to values from settings.
    """

    def __init__(self, store: VectorStoreManager, embedder: Embedder, config: Optional[RetrievalConfig] = None):
        self.store = store
        self.embedder = embedder
        self.config = config or RetrievalConfig.from_settings()

    async def _query(self, tenant_id: str, query: str, k: int, where: Optional[Dict[str, Any]]) -> List[SearchHit]:
        vec = await self.embedder.embed_query(query)
        coll = await self.store.resolve_collection(tenant_id)
        res = await coll.query(vec, k, where=where)
        return [
            SearchHit(id=i, text=t, metadata=m, distance=d)
            for i, t, m, d in zip(res.ids, res.documents, res.metadatas, res.distances)
        ]

    async def search_hits(
        self,
        tenant_id: str,
        query: str,
        top_k: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
        decision: Optional[RouteDecision] = None,
    ) -> List[SearchHit]:
        """Ranked chunk hits for ``query`` in the tenant's collection.

        Args:
            tenant_id: Tenant whose collection is searched.
            query: Natural-language query.
            top_k: Number of hits per query (before over-fetch).
            filters: Flat metadata equality filters (e.g. ``sender_email``).
            decision: Precomputed routing decision; classified here when omitted.

        Returns:
            List[SearchHit]: Hits ordered by similarity, or by blended score
            when sender re-ranking applied. Empty when nothing matched.
        """
        if not query or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        cfg = self.config
        k = top_k or cfg.top_k
        decision = decision or classify_query(query, cfg, filters)
        sender_filter = bool(filters and filters.get("sender_email"))
        fetch_k = k * cfg.sender_overfetch_factor if sender_filter else k
        where = build_where(filters)

        hits = await self._query(tenant_id, query, fetch_k, where)

        if len(hits) < cfg.expansion_min_results or decision.expands:
            terms = decision.expansion_terms or cfg.expansion_terms
            expanded = f"{query} {' '.join(terms)}"
            logger.info(
                "Expanding query for tenant %s (route=%s, first pass hits=%d)", tenant_id, decision.route, len(hits)
            )
            hits = merge_hits(hits, await self._query(tenant_id, expanded, fetch_k, where), fetch_k)

        if sender_filter and hits:
            hits = rerank_by_sender(query, hits, cfg)
        return hits

    async def search(
        self,
        tenant_id: str,
        query: str,
        top_k: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[DocumentGroup]:
        """Search and group hits into at most ``top_k`` parent-document groups."""
        k = top_k or self.config.top_k
        hits = await self.search_hits(tenant_id, query, k, filters)
        return group_hits(hits, k)
