"""Pydantic request/response schemas for the pipeline boundaries.

Defines the public contracts consumed by an outer HTTP or CLI layer:
- IngestRequest: extracted document text plus its metadata.
- EmailIngestRequest: one email's headers and body.
- IngestResult: what an ingestion produced.
- AnswerOptions: per-question knobs for answer generation.
- EvidencePreview: evidence snippet reference returned alongside answers.
- AnswerResult: the generated answer with provenance and confidence.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class IngestRequest(BaseModel):
    """One document, already extracted from its source format.

    Attributes:
        text: Full document text.
        filename: Original filename (display only).
        file_type: Source format, e.g. 'pdf', 'txt', 'email'.
        document_type: 'document' or 'email'.
        metadata: Extra attributes stored with every chunk (subject,
            sender_email, ... are recognised and typed).
    """
    text: str
    filename: str = "untitled"
    file_type: str = "txt"
    document_type: str = "document"
    metadata: Dict[str, Any] = Field(default_factory=dict)


class EmailIngestRequest(BaseModel):
    """One email; converted to an IngestRequest with typed email metadata."""
    sender_email: str = Field(..., min_length=3)
    subject: str = ""
    body: str = ""
    receiver_emails: List[str] = Field(default_factory=list)
    cc_emails: List[str] = Field(default_factory=list)
    time_received: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)


class IngestResult(BaseModel):
    document_id: str
    tenant_id: str
    filename: str
    chunks: int
    average_chunk_size: int = 0


class AnswerOptions(BaseModel):
    """Options for answering a question.

    Attributes:
        top_k: Number of document groups to retrieve.
        filters: Metadata filters, e.g. ``{"sender_email": "a@b.com"}``.
        max_tokens: Optional cap on the number of tokens for the generated answer.
        temperature: Optional sampling temperature override.
        use_cache: Serve and store answers in the answer cache when enabled.
    """
    top_k: Optional[int] = Field(default=None, ge=1, le=100)
    filters: Dict[str, Any] = Field(default_factory=dict)
    max_tokens: Optional[int] = Field(
        default=None,
        ge=64,
        le=8192,
        description="Desired maximum tokens for the answer (overrides server default)",
    )
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    use_cache: bool = True


class EvidencePreview(BaseModel):
    """A reference to a supporting chunk for an answer.

    Attributes:
        id: Chunk id.
        document_id: Parent document id.
        filename: Parent document filename, when known.
        preview: First characters of the chunk text.
        distance: Vector distance of the chunk to the question.
        truncated: Whether the chunk was cut to fit the context budget.
    """
    id: str
    document_id: str
    filename: Optional[str] = None
    preview: str
    distance: float
    truncated: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AnswerResult(BaseModel):
    """Answer returned by the pipeline.

    Attributes:
        answer: The generated answer text.
        evidence: Evidence previews for the chunks the answer was built from.
        confidence: clamp(1 - mean distance of used evidence, 0, 1).
        tokens_used: Total tokens reported by the completion service.
        truncated: Whether any evidence was dropped or cut.
        ladder_step: Name of the retry-ladder step that produced the answer.
        documents_used: Evidence items sent to the model.
        documents_available: Evidence items retrieved.
        route: Prompt variant ('standard', 'email' or 'structured').
        latency_ms: End-to-end latency for the request in milliseconds.
        used_cache: Whether the answer was served from cache.
    """
    answer: str
    evidence: List[EvidencePreview] = Field(default_factory=list)
    confidence: float = 0.0
    tokens_used: int = 0
    truncated: bool = False
    ladder_step: str = "initial"
    documents_used: int = 0
    documents_available: int = 0
    model: str = ""
    route: str = "standard"
    latency_ms: int = 0
    used_cache: bool = False
