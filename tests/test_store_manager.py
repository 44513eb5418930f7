"""Tests for tenant collections, validated inserts and deletes."""

import asyncio
import json
import math

import pytest
from conftest import FakeVectorService, embed_text

from docqa.config import StoreConfig
from docqa.errors import NotFoundError, PartialDeleteError, SchemaConflictError, ValidationError
from docqa.models import ChunkMetadata, ChunkRecord
from docqa.store_manager import VectorStoreManager, build_records, flatten_metadata


def _records(doc_id: str, n: int, tenant: str = "t1", text: str = "chunk text"):
    return [
        ChunkRecord(
            id=f"{doc_id}_chunk_{i}",
            text=f"{text} {i}",
            embedding=embed_text(f"{text} {i}"),
            metadata=ChunkMetadata(
                document_id=doc_id, tenant_id=tenant, chunk_index=i, total_chunks=n, start=i * 10, end=i * 10 + 10,
                filename=f"{doc_id}.txt",
            ),
        )
        for i in range(n)
    ]


@pytest.fixture
def manager(vector_service, store_config) -> VectorStoreManager:
    return VectorStoreManager(vector_service, store_config)


class TestResolveCollection:
    @pytest.mark.asyncio
    async def test_creates_once_and_caches(self, manager, vector_service):
        a = await manager.resolve_collection("tenant-a")
        b = await manager.resolve_collection("tenant-a")
        assert a is b
        assert vector_service.create_calls == 1
        assert a.name == "test_tenant-a"

    @pytest.mark.asyncio
    async def test_reuses_existing_collection(self, store_config):
        service = FakeVectorService()
        await service.create_collection("test_tenant-a", {})
        manager = VectorStoreManager(service, store_config)
        await manager.resolve_collection("tenant-a")
        assert service.create_calls == 1
        assert service.get_calls == 1

    @pytest.mark.asyncio
    async def test_create_race_falls_back_to_get(self, manager, vector_service):
        vector_service.race_on_create = True
        handle = await manager.resolve_collection("tenant-a")
        assert handle is vector_service.collections["test_tenant-a"]
        assert vector_service.get_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_first_access_shares_one_collection(self, manager, vector_service):
        handles = await asyncio.gather(*(manager.resolve_collection("tenant-a") for _ in range(10)))
        assert len(vector_service.collections) == 1
        assert all(h is handles[0] for h in handles)

    @pytest.mark.asyncio
    async def test_empty_tenant_rejected(self, manager):
        with pytest.raises(ValidationError):
            await manager.resolve_collection("")


class TestInsert:
    @pytest.mark.asyncio
    async def test_inserts_and_flattens_metadata(self, manager, vector_service):
        assert await manager.insert("t1", _records("doc1", 3)) == 3
        coll = vector_service.collections["test_t1"]
        row = coll.rows["doc1_chunk_1"]
        assert row["metadata"]["document_id"] == "doc1"
        assert row["metadata"]["chunk_index"] == 1
        assert "subject" not in row["metadata"]

    @pytest.mark.asyncio
    async def test_splits_into_sub_batches(self, vector_service):
        manager = VectorStoreManager(vector_service, StoreConfig(collection_prefix="test", batch_size=4, batch_pause_seconds=0))
        await manager.insert("t1", _records("doc1", 10))
        coll = vector_service.collections["test_t1"]
        assert coll.add_calls == 3
        assert len(coll.rows) == 10

    @pytest.mark.asyncio
    async def test_schema_conflict_resets_once_and_retries(self, manager, vector_service):
        await manager.insert("t1", _records("old", 2))
        vector_service.schema_conflicts = 1

        assert await manager.insert("t1", _records("doc1", 3)) == 3

        assert vector_service.delete_calls == 1
        coll = vector_service.collections["test_t1"]
        # reset drops earlier data; the retried batch is all that remains
        assert sorted(coll.rows) == ["doc1_chunk_0", "doc1_chunk_1", "doc1_chunk_2"]
        assert await manager.resolve_collection("t1") is coll

    @pytest.mark.asyncio
    async def test_second_schema_conflict_is_fatal(self, manager, vector_service):
        vector_service.schema_conflicts = 2
        with pytest.raises(SchemaConflictError) as exc:
            await manager.insert("t1", _records("doc1", 2))
        assert exc.value.step == "insert_after_reset"
        assert vector_service.delete_calls == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "record",
        [
            ChunkRecord(id="", text="x", embedding=[0.1]),
            ChunkRecord(id="x" * 257, text="x", embedding=[0.1]),
            ChunkRecord(id="ok", text="x", embedding=[]),
            ChunkRecord(id="ok", text="x", embedding=[0.1, math.nan]),
            ChunkRecord(id="ok", text="x", embedding=[0.1, math.inf]),
            ChunkRecord(id="ok", text="x", embedding=[0.1, "0.2"]),
        ],
    )
    async def test_invalid_records_rejected(self, manager, vector_service, record):
        with pytest.raises(ValidationError):
            await manager.insert("t1", [record])
        assert not vector_service.collections.get("test_t1") or not vector_service.collections["test_t1"].rows

    @pytest.mark.asyncio
    async def test_duplicate_ids_rejected(self, manager):
        recs = _records("doc1", 2)
        recs[1].id = recs[0].id
        with pytest.raises(ValidationError):
            await manager.insert("t1", recs)

    @pytest.mark.asyncio
    async def test_empty_text_placeholder_and_cap(self, vector_service):
        manager = VectorStoreManager(
            vector_service, StoreConfig(collection_prefix="test", batch_pause_seconds=0, max_text_length=50)
        )
        await manager.insert(
            "t1",
            [
                ChunkRecord(id="a", text="   ", embedding=[1.0, 0.0]),
                ChunkRecord(id="b", text="y" * 80, embedding=[0.0, 1.0]),
            ],
        )
        rows = vector_service.collections["test_t1"].rows
        assert rows["a"]["document"] == "[empty content]"
        assert len(rows["b"]["document"]) == 50

    @pytest.mark.asyncio
    async def test_empty_batch_is_noop(self, manager, vector_service):
        assert await manager.insert("t1", []) == 0
        assert vector_service.create_calls == 0


class TestFlattenAndBuild:
    def test_flatten_metadata(self):
        flat = flatten_metadata(
            {"a": {"x": 1}, "b": [1, 2], "c": "s" * 2000, "d": True, "e": 3, "f": 1.5, "g": None, "h": math.inf},
            max_value_length=1000,
        )
        assert json.loads(flat["a"]) == {"x": 1}
        assert json.loads(flat["b"]) == [1, 2]
        assert len(flat["c"]) == 1000
        assert flat["d"] is True and flat["e"] == 3 and flat["f"] == 1.5
        assert "g" not in flat
        assert flat["h"] == "inf"

    def test_chunk_metadata_extra_never_shadows_known_fields(self):
        meta = ChunkMetadata(
            document_id="d", tenant_id="t", chunk_index=0, total_chunks=1, start=0, end=5,
            extra={"document_id": "evil", "project": "apollo"},
        )
        flat = flatten_metadata(meta)
        assert flat["document_id"] == "d"
        assert flat["project"] == "apollo"

    def test_extra_attributes_are_bounded(self):
        meta = ChunkMetadata(
            document_id="d", tenant_id="t", chunk_index=0, total_chunks=1, start=0, end=5,
            extra={f"k{i:02d}": "v" for i in range(50)},
        )
        assert len(meta.extra) == 32

    def test_build_records_length_mismatch(self):
        with pytest.raises(ValidationError):
            build_records(["a", "b"], ["x"], [[0.1], [0.2]])

    def test_build_records(self):
        recs = build_records(["a"], ["x"], [[0.1]], [{"k": "v"}])
        assert recs[0].id == "a" and recs[0].metadata == {"k": "v"}


class TestDeleteAndMaintenance:
    @pytest.mark.asyncio
    async def test_delete_by_parent_leaves_siblings(self, manager, vector_service):
        await manager.insert("t1", _records("doc1", 3) + _records("doc2", 2))
        assert await manager.delete_by_parent("t1", "doc1") == 3
        rows = vector_service.collections["test_t1"].rows
        assert sorted(rows) == ["doc2_chunk_0", "doc2_chunk_1"]

    @pytest.mark.asyncio
    async def test_delete_is_tenant_scoped(self, manager, vector_service):
        await manager.insert("t1", _records("doc1", 2, tenant="t1"))
        await manager.insert("t2", _records("doc1", 2, tenant="t2"))
        await manager.delete_by_parent("t1", "doc1")
        assert len(vector_service.collections["test_t2"].rows) == 2

    @pytest.mark.asyncio
    async def test_delete_missing_document(self, manager):
        await manager.insert("t1", _records("doc1", 1))
        with pytest.raises(NotFoundError):
            await manager.delete_by_parent("t1", "nope")

    @pytest.mark.asyncio
    async def test_partial_delete_reported(self, manager, vector_service):
        await manager.insert("t1", _records("doc1", 3))
        vector_service.collections["test_t1"].fail_delete = True
        with pytest.raises(PartialDeleteError) as exc:
            await manager.delete_by_parent("t1", "doc1")
        assert len(exc.value.requested) == 3
        assert exc.value.deleted == 1

    @pytest.mark.asyncio
    async def test_clear_tenant(self, manager, vector_service):
        await manager.insert("t1", _records("doc1", 3))
        assert await manager.clear_tenant("t1") == 3
        assert await manager.count("t1") == 0
        assert "test_t1" in vector_service.collections

    @pytest.mark.asyncio
    async def test_list_documents(self, manager):
        await manager.insert("t1", _records("doc1", 3) + _records("doc2", 1))
        docs = {d.document_id: d for d in await manager.list_documents("t1")}
        assert docs["doc1"].chunk_count == 3
        assert docs["doc2"].chunk_count == 1
        assert docs["doc1"].filename == "doc1.txt"

    @pytest.mark.asyncio
    async def test_update_document_metadata(self, manager, vector_service):
        await manager.insert("t1", _records("doc1", 2) + _records("doc2", 1))
        assert await manager.update_document_metadata("t1", "doc1", {"label": "finance"}) == 2
        rows = vector_service.collections["test_t1"].rows
        assert rows["doc1_chunk_0"]["metadata"]["label"] == "finance"
        assert "label" not in rows["doc2_chunk_0"]["metadata"]

    @pytest.mark.asyncio
    async def test_update_rejects_protected_fields(self, manager):
        await manager.insert("t1", _records("doc1", 1))
        with pytest.raises(ValidationError):
            await manager.update_document_metadata("t1", "doc1", {"document_id": "other"})

    @pytest.mark.asyncio
    async def test_health(self, manager, vector_service):
        await manager.resolve_collection("t1")
        assert (await manager.health())["status"] == "ok"
        vector_service.fail_list = True
        assert (await manager.health())["status"] == "unavailable"
