"""Domain models for the retrieval pipeline.

Defines the entities that flow between the chunker, the vector store manager,
the retrieval aggregator and the context budgeter:
- Document / ChunkMetadata: an ingested source and the typed metadata stored with
  each of its chunks (flattened to primitive scalars at the store boundary).
- TextSpan / ChunkStats: chunker output and diagnostics.
- ChunkRecord: one row handed to the vector store (id, text, embedding, metadata).
- SearchHit / DocumentGroup: chunk-level hits and their parent-document aggregation.
- EvidenceItem / ContextBundle: evidence selected to fit a prompt budget.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

MAX_EXTRA_ATTRIBUTES = 32


@dataclass(frozen=True)
class TextSpan:
    """A chunk produced by the chunker.

    ``text`` is trimmed; ``start``/``end`` are the raw window offsets in the source.
    """
    text: str
    start: int
    end: int


@dataclass(frozen=True)
class ChunkStats:
    count: int = 0
    average_size: int = 0
    min_size: int = 0
    max_size: int = 0
    total_length: int = 0


@dataclass
class Document:
    """One ingested source file or email."""
    document_id: str
    tenant_id: str
    filename: str
    file_type: str
    created_at: str
    document_type: str = "document"
    chunk_count: int = 0


@dataclass
class ChunkMetadata:
    """Typed metadata stored alongside each chunk.

    Known fields are explicit; anything else goes into ``extra``, a bounded map
    of string attributes.
    """
    document_id: str
    tenant_id: str
    chunk_index: int
    total_chunks: int
    start: int
    end: int
    filename: str = ""
    file_type: str = ""
    created_at: str = ""
    document_type: str = "document"
    subject: Optional[str] = None
    sender_email: Optional[str] = None
    sender_domain: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if len(self.extra) > MAX_EXTRA_ATTRIBUTES:
            kept = sorted(self.extra)[:MAX_EXTRA_ATTRIBUTES]
            self.extra = {k: self.extra[k] for k in kept}

    def to_dict(self) -> Dict[str, Any]:
        """Flatten to a single-level dict; extra attributes never shadow known fields."""
        out: Dict[str, Any] = {
            k: str(v) for k, v in self.extra.items() if k not in _KNOWN_FIELDS
        }
        for name in _KNOWN_FIELDS:
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


_KNOWN_FIELDS = (
    "document_id",
    "tenant_id",
    "chunk_index",
    "total_chunks",
    "start",
    "end",
    "filename",
    "file_type",
    "created_at",
    "document_type",
    "subject",
    "sender_email",
    "sender_domain",
)


@dataclass
class ChunkRecord:
    id: str
    text: str
    embedding: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchHit:
    """A chunk returned by a similarity query.

    ``score`` starts as the similarity and may be replaced by a re-ranking blend.
    """
    id: str
    text: str
    metadata: Dict[str, Any]
    distance: float
    score: Optional[float] = None

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance

    @property
    def rank_score(self) -> float:
        return self.similarity if self.score is None else self.score

    @property
    def document_id(self) -> str:
        return str(self.metadata.get("document_id") or self.id)


@dataclass
class DocumentGroup:
    """Hits that share a parent document, ranked by the sum of member similarities."""
    document_id: str
    filename: str
    hits: List[SearchHit] = field(default_factory=list)
    score: float = 0.0

    @property
    def chunk_count(self) -> int:
        return len(self.hits)

    @property
    def best_distance(self) -> float:
        return min((h.distance for h in self.hits), default=1.0)


@dataclass
class EvidenceItem:
    id: str
    text: str
    distance: float
    metadata: Dict[str, Any] = field(default_factory=dict)
    truncated: bool = False

    @classmethod
    def from_hit(cls, hit: SearchHit) -> "EvidenceItem":
        return cls(id=hit.id, text=hit.text, distance=hit.distance, metadata=dict(hit.metadata))


@dataclass
class ContextBundle:
    """Evidence selected to accompany a question."""
    items: List[EvidenceItem]
    truncated: bool
    dropped: int
    estimated_tokens: int
    available_tokens: int

    @property
    def is_empty(self) -> bool:
        return not self.items
