"""Tests for the ingestion pipeline and the text-file ingestor."""

import pytest

from docqa.cache import AnswerCache
from docqa.chunking import Chunker
from docqa.ingestion.ingest_files import collect_files, file_to_request, ingest_files
from docqa.ingestion.pipeline import IngestionPipeline, email_to_request
from docqa.schemas import EmailIngestRequest, IngestRequest
from docqa.service import DocQAService
from docqa.store_manager import VectorStoreManager

TEXT = " ".join(f"Sentence number {i} talks about quarterly revenue." for i in range(40))


@pytest.fixture
def pipeline(vector_service, store_config, embedder, chunker_config):
    return IngestionPipeline(VectorStoreManager(vector_service, store_config), embedder, Chunker(chunker_config))


class TestPipeline:
    @pytest.mark.asyncio
    async def test_chunks_are_stored_with_metadata(self, pipeline, vector_service, embedder):
        result = await pipeline.ingest(
            "acme",
            IngestRequest(text=TEXT, filename="q3.txt", file_type="txt", metadata={"project": "apollo", "tags": ["a"]}),
        )
        rows = vector_service.collections["test_acme"].rows
        assert result.chunks == len(rows) > 1
        assert result.average_chunk_size > 0
        assert len(embedder.calls) == 1

        for i in range(result.chunks):
            meta = rows[f"{result.document_id}_chunk_{i}"]["metadata"]
            assert meta["chunk_index"] == i
            assert meta["total_chunks"] == result.chunks
            assert meta["tenant_id"] == "acme"
            assert meta["filename"] == "q3.txt"
            assert meta["project"] == "apollo"
            assert meta["tags"] == '["a"]'
            assert TEXT[meta["start"]:meta["end"]].strip() == rows[f"{result.document_id}_chunk_{i}"]["document"]
        assert len({r["metadata"]["created_at"] for r in rows.values()}) == 1

    @pytest.mark.asyncio
    async def test_each_ingest_gets_a_new_document_id(self, pipeline):
        a = await pipeline.ingest("acme", IngestRequest(text="same text"))
        b = await pipeline.ingest("acme", IngestRequest(text="same text"))
        assert a.document_id != b.document_id

    @pytest.mark.asyncio
    async def test_email(self, pipeline, vector_service):
        result = await pipeline.ingest_email(
            "acme",
            EmailIngestRequest(
                sender_email="Carol@Example.org",
                subject="Renewal",
                body="Let's renew the contract.",
                receiver_emails=["dave@acme.com"],
                attachments=["contract.pdf"],
            ),
        )
        row = vector_service.collections["test_acme"].rows[f"{result.document_id}_chunk_0"]
        meta = row["metadata"]
        assert meta["document_type"] == "email"
        assert meta["sender_email"] == "carol@example.org"
        assert meta["sender_domain"] == "example.org"
        assert meta["subject"] == "Renewal"
        assert meta["has_attachments"] == "True"
        assert result.filename == "Renewal"


class TestEmailRendering:
    def test_text_layout(self):
        req = email_to_request(
            EmailIngestRequest(
                sender_email="a@b.com",
                subject="Hello",
                body="  Body text  ",
                receiver_emails=["c@d.com", "e@f.com"],
                cc_emails=["g@h.com"],
                time_received="2024-05-01T10:00:00Z",
            )
        )
        assert req.text == (
            "Subject: Hello\n\nFrom: a@b.com\n\nTo: c@d.com, e@f.com\n\nCC: g@h.com\n\n"
            "Received: 2024-05-01T10:00:00Z\n\nBody: Body text"
        )
        assert req.file_type == "email"

    def test_subjectless_email(self):
        req = email_to_request(EmailIngestRequest(sender_email="a@b.com", body="hi"))
        assert req.filename == "email from a@b.com"
        assert req.metadata["subject"] is None


class TestFileIngestor:
    def test_collect_files(self, tmp_path):
        (tmp_path / "docs").mkdir()
        (tmp_path / "docs" / "a.txt").write_text("alpha", encoding="utf-8")
        (tmp_path / "docs" / "b.MD").write_text("beta", encoding="utf-8")
        (tmp_path / "docs" / "c.pdf").write_bytes(b"%PDF")
        single = tmp_path / "single.bin"
        single.write_text("explicit files are always taken", encoding="utf-8")

        files = collect_files([str(tmp_path / "docs"), str(single), str(tmp_path / "missing")])
        assert [f.name for f in files] == ["a.txt", "b.MD", "single.bin"]

    def test_file_to_request(self, tmp_path):
        path = tmp_path / "notes.md"
        path.write_text("# Notes", encoding="utf-8")
        req = file_to_request(path)
        assert req.filename == "notes.md"
        assert req.file_type == "md"
        assert req.metadata["source_path"] == str(path)

    @pytest.mark.asyncio
    async def test_ingest_files_skips_empty(self, tmp_path, vector_service, embedder, store_config, chunker_config):
        good = tmp_path / "good.txt"
        good.write_text(TEXT, encoding="utf-8")
        empty = tmp_path / "empty.txt"
        empty.write_text("   ", encoding="utf-8")
        service = DocQAService(
            vector_service=vector_service,
            embedder=embedder,
            cache=AnswerCache(enabled=False),
            store_config=store_config,
            chunker_config=chunker_config,
        )
        total = await ingest_files(service, "acme", [empty, good])
        assert total == len(vector_service.collections["test_acme"].rows) > 0
