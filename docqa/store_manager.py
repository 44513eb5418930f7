"""Tenant-scoped vector collections: resolution, validated inserts, deletes.

Provides:
- flatten_metadata: metadata -> primitive scalar map accepted by the store
- build_records: column lists -> ChunkRecords (length-checked)
- VectorStoreManager: one collection per tenant with a concurrency-safe
  handle cache, batched inserts with a single schema-conflict reset, and
  delete / clear / list / patch operations.

Each tenant owns exactly one collection, so isolation is structural: no
query ever runs against another tenant's collection.
"""
import asyncio
import json
import logging
import math
import time
from collections import OrderedDict
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from docqa.config import StoreConfig
from docqa.errors import (
    CollectionExistsError,
    DocQAError,
    NotFoundError,
    PartialDeleteError,
    SchemaConflictError,
    ValidationError,
)
from docqa.models import ChunkMetadata, ChunkRecord, Document
from docqa.utils import sanitize_collection_name, utc_now_iso
from docqa.vector_store import CollectionHandle, VectorStoreService

logger = logging.getLogger(__name__)

# Chunk-identity fields that a metadata patch may not rewrite
PROTECTED_FIELDS = frozenset({"document_id", "tenant_id", "chunk_index", "total_chunks", "start", "end"})


def flatten_metadata(
    metadata: Union[ChunkMetadata, Mapping[str, Any], None],
    max_value_length: int = 1000,
) -> Dict[str, Any]:
    """Flatten metadata into the scalar types a vector store accepts.

    - dict / list / tuple values become JSON strings
    - strings are truncated to ``max_value_length``
    - bool / int / float pass through (non-finite floats become strings)
    - None values are dropped; anything else is stringified
    """
    if metadata is None:
        return {}
    if isinstance(metadata, ChunkMetadata):
        metadata = metadata.to_dict()
    out: Dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        if isinstance(value, bool) or isinstance(value, int):
            out[key] = value
        elif isinstance(value, float):
            out[key] = value if math.isfinite(value) else str(value)
        elif isinstance(value, str):
            out[key] = value[:max_value_length]
        elif isinstance(value, (dict, list, tuple)):
            out[key] = json.dumps(value, default=str)
        else:
            out[key] = str(value)[:max_value_length]
    return out


def build_records(
    ids: Sequence[str],
    texts: Sequence[str],
    embeddings: Sequence[Sequence[float]],
    metadatas: Optional[Sequence[Any]] = None,
) -> List[ChunkRecord]:
    """Zip parallel column lists into ChunkRecords; lengths must match."""
    metadatas = metadatas if metadatas is not None else [None] * len(ids)
    lengths = {len(ids), len(texts), len(embeddings), len(metadatas)}
    if len(lengths) != 1:
        raise ValidationError(
            f"Mismatched batch lengths: ids={len(ids)} texts={len(texts)} "
            f"embeddings={len(embeddings)} metadatas={len(metadatas)}"
        )
    return [
        ChunkRecord(id=i, text=t, embedding=list(e), metadata=m if m is not None else {})
        for i, t, e, m in zip(ids, texts, embeddings, metadatas)
    ]


class VectorStoreManager:
    """Maps tenants onto collections and guards every write to the store.

    Args:
        service: VectorStoreService implementation (Chroma in production).
        config: StoreConfig; defaults to values from settings.
    """

    def __init__(self, service: VectorStoreService, config: Optional[StoreConfig] = None):
        self.service = service
        self.config = config or StoreConfig.from_settings()
        self._collections: Dict[str, CollectionHandle] = {}
        self._lock = asyncio.Lock()

    def collection_name(self, tenant_id: str) -> str:
        try:
            return sanitize_collection_name(tenant_id, self.config.collection_prefix)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

    # ------------------------------------------------------------------ #
    # Collection resolution
    # ------------------------------------------------------------------ #
    async def resolve_collection(self, tenant_id: str) -> CollectionHandle:
        """Return the tenant's collection handle, creating the collection if needed.

        A concurrent creator winning the race is not an error: the existing
        collection is fetched instead. The cache keeps the first handle stored
        for a tenant.
        """
        name = self.collection_name(tenant_id)
        cached = self._collections.get(tenant_id)
        if cached is not None:
            return cached

        handle = await self._open_or_create(name, tenant_id)
        async with self._lock:
            return self._collections.setdefault(tenant_id, handle)

    async def _open_or_create(self, name: str, tenant_id: str) -> CollectionHandle:
        if name in await self.service.list_collections():
            try:
                return await self.service.get_collection(name)
            except NotFoundError:
                logger.info("Collection %s vanished between list and get; recreating", name)
        try:
            handle = await self.service.create_collection(
                name, {"tenant_id": tenant_id, "created_at": utc_now_iso()}
            )
            logger.info("Created collection %s for tenant %s", name, tenant_id)
            return handle
        except CollectionExistsError:
            logger.debug("Collection %s was created concurrently; fetching it", name)
            return await self.service.get_collection(name)

    async def _evict(self, tenant_id: str) -> None:
        async with self._lock:
            self._collections.pop(tenant_id, None)

    async def _reset_collection(self, tenant_id: str) -> CollectionHandle:
        """Drop and recreate the tenant's collection, refreshing the cache."""
        name = self.collection_name(tenant_id)
        await self._evict(tenant_id)
        try:
            await self.service.delete_collection(name)
        except NotFoundError:
            logger.debug("Collection %s already absent during reset", name)
        return await self.resolve_collection(tenant_id)

    # ------------------------------------------------------------------ #
    # Inserts
    # ------------------------------------------------------------------ #
    def _validate(self, record: ChunkRecord) -> ChunkRecord:
        cfg = self.config
        rid = record.id
        if not isinstance(rid, str) or not rid.strip():
            raise ValidationError("Record id must be a non-empty string")
        if len(rid) > cfg.max_id_length:
            raise ValidationError(f"Record id longer than {cfg.max_id_length} characters: {rid[:40]}...")

        emb = record.embedding
        if emb is None or len(emb) == 0:
            raise ValidationError(f"Record {rid}: embedding is empty")
        for x in emb:
            if isinstance(x, bool) or not isinstance(x, (int, float)) or not math.isfinite(x):
                raise ValidationError(f"Record {rid}: embedding contains a non-finite or non-numeric value")

        text = (record.text or "").strip() or cfg.empty_text_placeholder
        if len(text) > cfg.max_text_length:
            text = text[:cfg.max_text_length]

        return ChunkRecord(
            id=rid,
            text=text,
            embedding=[float(x) for x in emb],
            metadata=flatten_metadata(record.metadata, cfg.max_metadata_value_length),
        )

    async def _add_batches(self, tenant_id: str, records: List[ChunkRecord]) -> None:
        coll = await self.resolve_collection(tenant_id)
        size = self.config.batch_size
        total = math.ceil(len(records) / size)
        for n, i in enumerate(range(0, len(records), size), start=1):
            batch = records[i:i + size]
            await coll.add(
                ids=[r.id for r in batch],
                embeddings=[r.embedding for r in batch],
                documents=[r.text for r in batch],
                metadatas=[r.metadata for r in batch],
            )
            logger.debug("Inserted sub-batch %d/%d (%d records) into %s", n, total, len(batch), coll.name)
            if n < total and self.config.batch_pause_seconds > 0:
                await asyncio.sleep(self.config.batch_pause_seconds)

    async def insert(self, tenant_id: str, records: Sequence[ChunkRecord]) -> int:
        """Validate and insert records into the tenant's collection.

        Args:
            tenant_id: Owning tenant.
            records: Chunk records with embeddings.

        Returns:
            int: Number of records inserted.

        Raises:
            ValidationError: Malformed record (id, embedding) or duplicate ids.
            SchemaConflictError: The store rejected the batch again after one
                drop-and-recreate of the collection.
        """
        if not records:
            return 0
        clean = [self._validate(r) for r in records]
        ids = [r.id for r in clean]
        if len(set(ids)) != len(ids):
            raise ValidationError("Duplicate record ids in insert batch")

        started = time.monotonic()
        try:
            await self._add_batches(tenant_id, clean)
        except SchemaConflictError as exc:
            # Backend drift (e.g. embedding dimension changed): one destructive recovery
            logger.warning(
                "Schema conflict inserting %d records for tenant %s (%s); resetting collection",
                len(clean), tenant_id, exc,
            )
            await self._reset_collection(tenant_id)
            try:
                await self._add_batches(tenant_id, clean)
            except SchemaConflictError as retry_exc:
                raise SchemaConflictError(
                    f"Insert rejected again after collection reset: {retry_exc}", step="insert_after_reset"
                ) from retry_exc

        elapsed = time.monotonic() - started
        if elapsed > self.config.insert_warn_seconds:
            logger.warning(
                "Insert of %d records for tenant %s took %.1fs (advisory limit %.0fs)",
                len(clean), tenant_id, elapsed, self.config.insert_warn_seconds,
            )
        else:
            logger.info("Inserted %d records for tenant %s in %.2fs", len(clean), tenant_id, elapsed)
        return len(clean)

    # ------------------------------------------------------------------ #
    # Deletes / maintenance
    # ------------------------------------------------------------------ #
    async def delete_by_parent(self, tenant_id: str, document_id: str) -> int:
        """Delete every chunk of one document; returns the number of chunks removed.

        Raises:
            NotFoundError: No chunk of the document exists for this tenant.
            PartialDeleteError: The batch delete failed and some ids may remain.
        """
        coll = await self.resolve_collection(tenant_id)
        found = await coll.get(where={"document_id": document_id})
        ids = found.ids
        if not ids:
            raise NotFoundError(f"Document {document_id} not found for tenant {tenant_id}")

        try:
            await coll.delete(ids)
        except DocQAError as exc:
            deleted = 0
            try:
                remaining = await coll.get(ids=ids)
                deleted = len(ids) - len(remaining.ids)
            except DocQAError:
                logger.warning("Could not verify delete of document %s", document_id)
            raise PartialDeleteError(
                f"Delete of document {document_id} failed after {deleted}/{len(ids)} chunks: {exc}",
                requested=ids,
                deleted=deleted,
            ) from exc

        logger.info("Deleted %d chunks of document %s for tenant %s", len(ids), document_id, tenant_id)
        return len(ids)

    async def clear_tenant(self, tenant_id: str) -> int:
        """Drop every chunk the tenant owns by recreating its collection."""
        coll = await self.resolve_collection(tenant_id)
        removed = await coll.count()
        await self._reset_collection(tenant_id)
        logger.info("Cleared %d chunks for tenant %s", removed, tenant_id)
        return removed

    async def count(self, tenant_id: str) -> int:
        coll = await self.resolve_collection(tenant_id)
        return await coll.count()

    async def list_documents(self, tenant_id: str) -> List[Document]:
        """Group the tenant's chunks by parent document, newest first."""
        coll = await self.resolve_collection(tenant_id)
        rows = await coll.get()
        docs: "OrderedDict[str, Document]" = OrderedDict()
        for cid, meta in zip(rows.ids, rows.metadatas):
            doc_id = str(meta.get("document_id") or cid)
            doc = docs.get(doc_id)
            if doc is None:
                doc = docs[doc_id] = Document(
                    document_id=doc_id,
                    tenant_id=tenant_id,
                    filename=str(meta.get("filename", "")),
                    file_type=str(meta.get("file_type", "")),
                    created_at=str(meta.get("created_at", "")),
                    document_type=str(meta.get("document_type", "document")),
                )
            doc.chunk_count += 1
        return sorted(docs.values(), key=lambda d: d.created_at, reverse=True)

    async def update_document_metadata(self, tenant_id: str, document_id: str, patch: Mapping[str, Any]) -> int:
        """Merge ``patch`` into the metadata of every chunk of a document.

        Returns:
            int: Number of chunks updated.
        """
        blocked = PROTECTED_FIELDS.intersection(patch)
        if blocked:
            raise ValidationError(f"Cannot modify protected metadata fields: {sorted(blocked)}")
        coll = await self.resolve_collection(tenant_id)
        found = await coll.get(where={"document_id": document_id})
        if not found.ids:
            raise NotFoundError(f"Document {document_id} not found for tenant {tenant_id}")
        flat_patch = flatten_metadata(patch, self.config.max_metadata_value_length)
        merged = [{**meta, **flat_patch} for meta in found.metadatas]
        await coll.update(found.ids, merged)
        return len(found.ids)

    async def health(self) -> Dict[str, Any]:
        """Report backend reachability and how many collections exist."""
        try:
            names = await self.service.list_collections()
        except DocQAError as exc:
            logger.error("Vector store health check failed: %s", exc)
            return {"status": "unavailable", "error": str(exc), "cached_tenants": len(self._collections)}
        prefix = self.config.collection_prefix + "_"
        return {
            "status": "ok",
            "collections": sum(1 for n in names if n.startswith(prefix)),
            "cached_tenants": len(self._collections),
        }
