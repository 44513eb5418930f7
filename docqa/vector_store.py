"""Vector store service contract and its Chroma implementation.

The pipeline talks to the store through two small protocols:

- VectorStoreService: collection CRUD (list / get / create / delete).
- CollectionHandle: add / query / get / delete / update / count on one collection.

ChromaVectorService implements them on top of ``chromadb.AsyncHttpClient``.
Backend exceptions are classified at this boundary (classify_error) so the
rest of the pipeline only sees the docqa error taxonomy:

- 422 / unprocessable / embedding-dimension mismatch -> SchemaConflictError
- "already exists" on create -> CollectionExistsError
- 404 / "does not exist" -> NotFoundError
- 429 -> RateLimitError, timeouts -> ServiceTimeoutError
- anything else -> VectorStoreError
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import chromadb

from docqa.config import settings
from docqa.errors import (
    CollectionExistsError,
    DocQAError,
    NotFoundError,
    RateLimitError,
    SchemaConflictError,
    ServiceTimeoutError,
    VectorStoreError,
)

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """Nearest-neighbour result for a single query embedding."""
    ids: List[str] = field(default_factory=list)
    documents: List[str] = field(default_factory=list)
    metadatas: List[Dict[str, Any]] = field(default_factory=list)
    distances: List[float] = field(default_factory=list)


@dataclass
class GetResult:
    ids: List[str] = field(default_factory=list)
    documents: List[str] = field(default_factory=list)
    metadatas: List[Dict[str, Any]] = field(default_factory=list)


class CollectionHandle(Protocol):
    name: str

    async def add(
        self,
        ids: List[str],
        embeddings: List[List[float]],
        documents: List[str],
        metadatas: List[Dict[str, Any]],
    ) -> None: ...

    async def query(self, embedding: List[float], k: int, where: Optional[Dict[str, Any]] = None) -> QueryResult: ...

    async def get(
        self,
        where: Optional[Dict[str, Any]] = None,
        ids: Optional[List[str]] = None,
        limit: Optional[int] = None,
    ) -> GetResult: ...

    async def delete(self, ids: List[str]) -> None: ...

    async def update(self, ids: List[str], metadatas: List[Dict[str, Any]]) -> None: ...

    async def count(self) -> int: ...


class VectorStoreService(Protocol):
    async def list_collections(self) -> List[str]: ...

    async def get_collection(self, name: str) -> CollectionHandle: ...

    async def create_collection(self, name: str, metadata: Dict[str, Any]) -> CollectionHandle: ...

    async def delete_collection(self, name: str) -> None: ...


def build_where(filters: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Convert a flat ``{field: value}`` filter map into a Chroma ``where`` clause.

    None values are ignored; several conditions are combined with ``$and``.
    Values that are already operator dicts (e.g. ``{"$in": [...]}``) pass through.
    """
    if not filters:
        return None
    conds = [{k: v} for k, v in filters.items() if v is not None and not k.startswith("$")]
    conds.extend({k: v} for k, v in filters.items() if k.startswith("$"))
    if not conds:
        return None
    if len(conds) == 1:
        return conds[0]
    return {"$and": conds}


def classify_error(exc: Exception) -> DocQAError:
    """Translate a backend exception into the docqa error taxonomy."""
    if isinstance(exc, DocQAError):
        return exc
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None) or getattr(exc, "status_code", None)
    name = type(exc).__name__
    msg = str(exc)
    low = msg.lower()

    if status == 422 or "unprocessable" in low or "dimension" in low or name == "InvalidDimensionException":
        return SchemaConflictError(f"Vector store rejected batch: {msg}")
    if "already exists" in low or "unique" in name.lower():
        return CollectionExistsError(msg)
    if status == 404 or "does not exist" in low or name == "NotFoundError":
        return NotFoundError(msg)
    if status == 429:
        return RateLimitError(f"Vector store rate limit: {msg}")
    if "timeout" in name.lower() or "timed out" in low:
        return ServiceTimeoutError(f"Vector store timeout: {msg}")
    return VectorStoreError(f"Vector store request failed: {msg}")


def _first(result: Dict[str, Any], key: str) -> List[Any]:
    """Unwrap the per-query nesting Chroma uses for query() results."""
    rows = result.get(key) or []
    return list(rows[0]) if rows else []


class ChromaCollection:
    """CollectionHandle backed by a chromadb async collection."""

    def __init__(self, collection: Any):
        self._c = collection
        self.name = collection.name

    async def add(self, ids, embeddings, documents, metadatas) -> None:
        try:
            await self._c.add(ids=ids, embeddings=embeddings, documents=documents, metadatas=metadatas)
        except Exception as exc:
            raise classify_error(exc) from exc

    async def query(self, embedding, k, where=None) -> QueryResult:
        try:
            available = await self._c.count()
            n = min(k, available)
            if n <= 0:
                return QueryResult()
            res = await self._c.query(
                query_embeddings=[embedding],
                n_results=n,
                where=where,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as exc:
            raise classify_error(exc) from exc
        return QueryResult(
            ids=_first(res, "ids"),
            documents=[d or "" for d in _first(res, "documents")],
            metadatas=[m or {} for m in _first(res, "metadatas")],
            distances=[float(d) for d in _first(res, "distances")],
        )

    async def get(self, where=None, ids=None, limit=None) -> GetResult:
        try:
            res = await self._c.get(where=where, ids=ids, limit=limit, include=["documents", "metadatas"])
        except Exception as exc:
            raise classify_error(exc) from exc
        return GetResult(
            ids=list(res.get("ids") or []),
            documents=[d or "" for d in (res.get("documents") or [])],
            metadatas=[m or {} for m in (res.get("metadatas") or [])],
        )

    async def delete(self, ids) -> None:
        if not ids:
            return
        try:
            await self._c.delete(ids=ids)
        except Exception as exc:
            raise classify_error(exc) from exc

    async def update(self, ids, metadatas) -> None:
        try:
            await self._c.update(ids=ids, metadatas=metadatas)
        except Exception as exc:
            raise classify_error(exc) from exc

    async def count(self) -> int:
        try:
            return int(await self._c.count())
        except Exception as exc:
            raise classify_error(exc) from exc


class ChromaVectorService:
    """VectorStoreService over a Chroma server (``chromadb.AsyncHttpClient``).

    The HTTP client is created lazily on first use. Collections use cosine
    distance so similarity = 1 - distance lands in [0, 1] for normalized vectors.
    """

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None, client: Any = None):
        self.host = host or settings.CHROMA_HOST
        self.port = port or settings.CHROMA_PORT
        self._client = client
        self._lock = asyncio.Lock()

    async def client(self) -> Any:
        if self._client is None:
            async with self._lock:
                if self._client is None:
                    try:
                        self._client = await chromadb.AsyncHttpClient(host=self.host, port=self.port)
                    except Exception as exc:
                        raise classify_error(exc) from exc
                    logger.info("Chroma: connected to %s:%d", self.host, self.port)
        return self._client

    async def list_collections(self) -> List[str]:
        client = await self.client()
        try:
            cols = await client.list_collections()
        except Exception as exc:
            raise classify_error(exc) from exc
        # chromadb < 0.6 returns Collection objects, newer releases return names
        return [getattr(c, "name", c) for c in cols]

    async def get_collection(self, name: str) -> ChromaCollection:
        client = await self.client()
        try:
            return ChromaCollection(await client.get_collection(name=name))
        except Exception as exc:
            raise classify_error(exc) from exc

    async def create_collection(self, name: str, metadata: Dict[str, Any]) -> ChromaCollection:
        client = await self.client()
        meta = {"hnsw:space": "cosine", **(metadata or {})}
        try:
            return ChromaCollection(await client.create_collection(name=name, metadata=meta))
        except Exception as exc:
            raise classify_error(exc) from exc

    async def delete_collection(self, name: str) -> None:
        client = await self.client()
        try:
            await client.delete_collection(name=name)
        except Exception as exc:
            raise classify_error(exc) from exc
