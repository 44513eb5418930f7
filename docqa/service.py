"""Service facade: the ingestion and retrieval boundaries of the pipeline.

DocQAService wires the components together and is what an outer HTTP or CLI
layer calls:
- ingest / ingest_email: document or email -> chunks in the tenant collection
- search: tenant-scoped semantic search grouped by parent document
- answer: retrieval, context budgeting and generation with cache and tracing
- delete_document / clear_tenant / list_documents / update_document_metadata / health

Every data-changing call invalidates the tenant's cached answers.
"""
import logging
import time
from typing import Any, Dict, List, Mapping, Optional

from redis.exceptions import RedisError

from docqa.budget import ContextBudgeter
from docqa.cache import AnswerCache
from docqa.chunking import Chunker
from docqa.config import BudgetConfig, ChunkerConfig, GeneratorConfig, RetrievalConfig, StoreConfig, settings
from docqa.embedding import Embedder
from docqa.generation import NO_EVIDENCE_ANSWER, AnswerGenerator, CompletionClient, CompletionService
from docqa.ingestion.pipeline import IngestionPipeline
from docqa.models import Document, DocumentGroup, EvidenceItem
from docqa.obs import Trace, span
from docqa.retrieval import RetrievalAggregator, group_hits
from docqa.router import classify_query
from docqa.schemas import AnswerOptions, AnswerResult, EmailIngestRequest, IngestRequest, IngestResult
from docqa.store_manager import VectorStoreManager
from docqa.vector_store import ChromaVectorService, VectorStoreService

logger = logging.getLogger(__name__)


def _normalize_filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    out = {k: v for k, v in (filters or {}).items() if v is not None and v != ""}
    if isinstance(out.get("sender_email"), str):
        out["sender_email"] = out["sender_email"].strip().lower()
    return out


class DocQAService:
    """Multi-tenant document question answering.

    Args:
        vector_service: Vector store backend; Chroma when omitted.
        embedder: Embedding client; OpenAI when omitted.
        completion: Completion service; OpenAI chat completions when omitted.
        cache: Answer cache; Redis-backed, disabled unless CACHE_ENABLED.

    Component configs default to values from settings.
    """

    def __init__(
        self,
        vector_service: Optional[VectorStoreService] = None,
        embedder: Optional[Embedder] = None,
        completion: Optional[CompletionService] = None,
        cache: Optional[AnswerCache] = None,
        store_config: Optional[StoreConfig] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
        budget_config: Optional[BudgetConfig] = None,
        generator_config: Optional[GeneratorConfig] = None,
        chunker_config: Optional[ChunkerConfig] = None,
    ):
        self.embedder = embedder or Embedder()
        self.store = VectorStoreManager(vector_service or ChromaVectorService(), store_config)
        self.retrieval = RetrievalAggregator(self.store, self.embedder, retrieval_config)
        self.generator = AnswerGenerator(
            completion or CompletionClient(), ContextBudgeter(budget_config), generator_config
        )
        self.ingestion = IngestionPipeline(self.store, self.embedder, Chunker(chunker_config))
        self.cache = cache or AnswerCache()

    async def _invalidate(self, tenant_id: str) -> None:
        try:
            await self.cache.invalidate_tenant(tenant_id)
        except RedisError as exc:
            logger.warning("Answer cache invalidation failed for tenant %s: %s", tenant_id, exc)

    # ------------------------------------------------------------------ #
    # Ingestion boundary
    # ------------------------------------------------------------------ #
    async def ingest(self, tenant_id: str, request: IngestRequest) -> IngestResult:
        with span("ingest", {"tenant": tenant_id, "filename": request.filename}):
            result = await self.ingestion.ingest(tenant_id, request)
        await self._invalidate(tenant_id)
        return result

    async def ingest_email(self, tenant_id: str, email: EmailIngestRequest) -> IngestResult:
        with span("ingest_email", {"tenant": tenant_id}):
            result = await self.ingestion.ingest_email(tenant_id, email)
        await self._invalidate(tenant_id)
        return result

    # ------------------------------------------------------------------ #
    # Retrieval boundary
    # ------------------------------------------------------------------ #
    async def search(
        self,
        tenant_id: str,
        query: str,
        top_k: Optional[int] = None,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[DocumentGroup]:
        with span("search", {"tenant": tenant_id, "top_k": top_k}):
            return await self.retrieval.search(tenant_id, query, top_k, _normalize_filters(filters))

    async def answer(self, tenant_id: str, question: str, options: Optional[AnswerOptions] = None) -> AnswerResult:
        """Answer a question from the tenant's documents.

        Workflow:
        - Check the answer cache (tenant + question + max_tokens + data version)
        - Classify the question to decide expansion and prompt variant
        - Retrieve and group evidence in the tenant's collection
        - Generate an answer through the context budget retry ladder
        - Cache the result and return evidence, confidence and latency

        Args:
            tenant_id: Tenant whose documents are searched.
            question: User question.
            options: AnswerOptions; defaults apply when omitted.

        Returns:
            AnswerResult: Answer, evidence previews, confidence, latency and cache flag.
        """
        t0 = time.time()
        opts = options or AnswerOptions()
        filters = _normalize_filters(opts.filters)
        trace = Trace("answer", input={"tenant": tenant_id, "question": question})
        use_cache = opts.use_cache and not filters
        # the answer is stored under the version it was computed against
        version: Optional[int] = None

        if use_cache:
            try:
                version = await self.cache.version(tenant_id)
                cached = await self.cache.get(tenant_id, question, opts.max_tokens, version=version)
            except RedisError as exc:
                logger.warning("Answer cache lookup failed: %s", exc)
                cached = None
            if cached:
                latency_ms = int((time.time() - t0) * 1000)
                trace.event("cache_hit", {"latency_ms": latency_ms})
                trace.end(output={"used_cache": True, "latency_ms": latency_ms})
                return AnswerResult(**{**cached, "latency_ms": latency_ms, "used_cache": True})

        decision = classify_query(question, self.retrieval.config, filters)
        trace.event("route", {"route": decision.route, "reason": decision.reason})
        top_k = opts.top_k or self.retrieval.config.top_k
        with span("retrieve", {"tenant": tenant_id, "route": decision.route}):
            hits = await self.retrieval.search_hits(tenant_id, question, top_k, filters, decision)
            groups = group_hits(hits, top_k)
        evidence = [EvidenceItem.from_hit(h) for g in groups for h in g.hits]
        trace.event("retrieval_result", {"groups": len(groups), "chunks": len(evidence)})

        if not evidence:
            result = AnswerResult(answer=NO_EVIDENCE_ANSWER, confidence=0.0, ladder_step="no_evidence")
            trace.event("no_evidence", {})
        else:
            with span("generate", {"evidence": len(evidence)}):
                result = await self.generator.generate(
                    question, evidence, max_tokens=opts.max_tokens, temperature=opts.temperature, trace=trace
                )

        result.latency_ms = int((time.time() - t0) * 1000)
        if use_cache and version is not None:
            try:
                await self.cache.set(
                    tenant_id,
                    question,
                    result.model_dump(exclude={"latency_ms", "used_cache"}),
                    opts.max_tokens,
                    version=version,
                )
            except RedisError as exc:
                logger.warning("Answer cache store failed: %s", exc)
        trace.end(output={"used_cache": False, "latency_ms": result.latency_ms, "step": result.ladder_step})
        return result

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #
    async def delete_document(self, tenant_id: str, document_id: str) -> int:
        removed = await self.store.delete_by_parent(tenant_id, document_id)
        await self._invalidate(tenant_id)
        return removed

    async def clear_tenant(self, tenant_id: str) -> int:
        removed = await self.store.clear_tenant(tenant_id)
        await self._invalidate(tenant_id)
        return removed

    async def list_documents(self, tenant_id: str) -> List[Document]:
        return await self.store.list_documents(tenant_id)

    async def update_document_metadata(self, tenant_id: str, document_id: str, patch: Mapping[str, Any]) -> int:
        updated = await self.store.update_document_metadata(tenant_id, document_id, patch)
        await self._invalidate(tenant_id)
        return updated

    async def health(self) -> Dict[str, Any]:
        return {"vector_store": await self.store.health(), "model": settings.OPENAI_MODEL}
