"""Document ingestion: text -> chunks -> embeddings -> tenant collection.

Main functions:
- chunk_metadata: typed per-chunk metadata from a request and a span
- email_to_request: render an email as searchable text with email metadata
- IngestionPipeline.ingest / ingest_email: end-to-end ingestion of one document

The caller supplies already-extracted text; file-format parsing happens upstream.
"""
import json
import logging
from typing import Any, Dict, List, Optional

from docqa.chunking import Chunker, chunk_stats
from docqa.embedding import Embedder
from docqa.errors import ValidationError
from docqa.models import ChunkMetadata, TextSpan
from docqa.schemas import EmailIngestRequest, IngestRequest, IngestResult
from docqa.store_manager import VectorStoreManager, build_records
from docqa.utils import chunk_id, new_document_id, utc_now_iso

logger = logging.getLogger(__name__)

_TYPED_KEYS = ("subject", "sender_email", "sender_domain")


def _domain(email: str) -> str:
    return email.split("@", 1)[1].lower() if "@" in email else ""


def _extra_attributes(metadata: Dict[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, v in metadata.items():
        if k in _TYPED_KEYS or v is None:
            continue
        out[k] = json.dumps(v, default=str) if isinstance(v, (dict, list, tuple)) else str(v)
    return out


def chunk_metadata(
    request: IngestRequest,
    tenant_id: str,
    document_id: str,
    created_at: str,
    span: TextSpan,
    index: int,
    total: int,
) -> ChunkMetadata:
    meta = request.metadata
    sender = meta.get("sender_email")
    return ChunkMetadata(
        document_id=document_id,
        tenant_id=tenant_id,
        chunk_index=index,
        total_chunks=total,
        start=span.start,
        end=span.end,
        filename=request.filename,
        file_type=request.file_type,
        created_at=created_at,
        document_type=request.document_type,
        subject=meta.get("subject"),
        sender_email=sender,
        sender_domain=meta.get("sender_domain") or (_domain(sender) if sender else None),
        extra=_extra_attributes(meta),
    )


def email_to_request(email: EmailIngestRequest) -> IngestRequest:
    """Render an email as searchable text plus typed email metadata."""
    parts: List[str] = []
    if email.subject:
        parts.append(f"Subject: {email.subject}")
    parts.append(f"From: {email.sender_email}")
    if email.receiver_emails:
        parts.append(f"To: {', '.join(email.receiver_emails)}")
    if email.cc_emails:
        parts.append(f"CC: {', '.join(email.cc_emails)}")
    if email.time_received:
        parts.append(f"Received: {email.time_received}")
    if email.body.strip():
        parts.append(f"Body: {email.body.strip()}")
    if email.attachments:
        parts.append(f"Attachments: {', '.join(email.attachments)}")

    metadata: Dict[str, Any] = {
        "subject": email.subject or None,
        "sender_email": email.sender_email.lower(),
        "sender_domain": _domain(email.sender_email),
        "receiver_emails": ", ".join(email.receiver_emails),
        "time_received": email.time_received,
        "has_attachments": bool(email.attachments),
    }
    return IngestRequest(
        text="\n\n".join(parts),
        filename=email.subject or f"email from {email.sender_email}",
        file_type="email",
        document_type="email",
        metadata=metadata,
    )


class IngestionPipeline:
    """Chunk, embed and store documents for a tenant.

    Args:
        store: VectorStoreManager receiving the chunk records.
        embedder: Embedding client.
        chunker: Chunker; defaults to one configured from settings.
    """

    def __init__(self, store: VectorStoreManager, embedder: Embedder, chunker: Optional[Chunker] = None):
        self.store = store
        self.embedder = embedder
        self.chunker = chunker or Chunker()

    async def ingest(self, tenant_id: str, request: IngestRequest) -> IngestResult:
        """Ingest one document and return its id and chunk statistics.

        Raises:
            ValidationError: The document has no text.
        """
        if not request.text or not request.text.strip():
            raise ValidationError(f"Document {request.filename!r} contains no text")

        document_id = new_document_id()
        created_at = utc_now_iso()
        spans = self.chunker.chunk(request.text)
        stats = chunk_stats(spans)
        logger.info(
            "Ingesting %s for tenant %s: %d chunks (avg %d chars)",
            request.filename, tenant_id, stats.count, stats.average_size,
        )

        texts = [s.text for s in spans]
        vectors = await self.embedder.embed(texts)
        records = build_records(
            ids=[chunk_id(document_id, i) for i in range(len(spans))],
            texts=texts,
            embeddings=vectors,
            metadatas=[
                chunk_metadata(request, tenant_id, document_id, created_at, s, i, len(spans))
                for i, s in enumerate(spans)
            ],
        )
        await self.store.insert(tenant_id, records)
        return IngestResult(
            document_id=document_id,
            tenant_id=tenant_id,
            filename=request.filename,
            chunks=len(records),
            average_chunk_size=stats.average_size,
        )

    async def ingest_email(self, tenant_id: str, email: EmailIngestRequest) -> IngestResult:
        return await self.ingest(tenant_id, email_to_request(email))
