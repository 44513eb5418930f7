"""Plain-text file ingestor.

Reads UTF-8 text files (or every matching file under a directory), and ingests
each one as a document for a tenant: chunk, embed with OpenAI embeddings, and
insert into the tenant's Chroma collection.

Format extraction (PDF, DOCX, OCR) happens upstream; convert those files to
text before running this tool.

Usage:
  python -m docqa.ingestion.ingest_files --tenant acme docs/ notes.md

Configuration:
- Vector store: docqa.config.settings.CHROMA_HOST, CHROMA_PORT
- Embeddings: docqa.config.settings.OPENAI_EMBEDDING_MODEL
- Chunk params: docqa.config.settings.CHUNK_SIZE, CHUNK_OVERLAP
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path
from typing import Iterable, List, Sequence

from docqa.errors import ValidationError
from docqa.schemas import IngestRequest
from docqa.service import DocQAService

logger = logging.getLogger(__name__)

TEXT_SUFFIXES = (".txt", ".md", ".markdown", ".rst", ".csv", ".json", ".html", ".eml")


def collect_files(paths: Sequence[str], suffixes: Iterable[str] = TEXT_SUFFIXES) -> List[Path]:
    """Expand files and directories into a sorted, de-duplicated file list."""
    wanted = tuple(s.lower() for s in suffixes)
    found = set()
    for raw in paths:
        p = Path(raw)
        if p.is_dir():
            found.update(f for f in p.rglob("*") if f.is_file() and f.suffix.lower() in wanted)
        elif p.is_file():
            found.add(p)
        else:
            logger.warning("Skipping %s: not a file or directory", raw)
    return sorted(found)


def file_to_request(path: Path) -> IngestRequest:
    text = path.read_text(encoding="utf-8", errors="replace")
    return IngestRequest(
        text=text,
        filename=path.name,
        file_type=path.suffix.lstrip(".").lower() or "txt",
        metadata={"source_path": str(path)},
    )


async def ingest_files(service: DocQAService, tenant_id: str, files: Sequence[Path]) -> int:
    """Ingest files one by one; returns the total number of chunks stored.

    A file that fails validation (e.g. empty) is logged and skipped; service
    failures abort the run.
    """
    total = 0
    for path in files:
        try:
            result = await service.ingest(tenant_id, file_to_request(path))
        except ValidationError as exc:
            logger.warning("Skipping %s: %s", path, exc)
            continue
        logger.info("Ingested %s -> %s (%d chunks)", path, result.document_id, result.chunks)
        total += result.chunks
    return total


def main():
    parser = argparse.ArgumentParser(description="Ingest plain-text files for a tenant.")
    parser.add_argument("--tenant", required=True, help="Tenant id owning the documents")
    parser.add_argument("paths", nargs="+", help="Files or directories to ingest")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: INFO)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    files = collect_files(args.paths)
    logger.info("Starting ingestion of %d files for tenant %s", len(files), args.tenant)

    try:
        total = asyncio.run(ingest_files(DocQAService(), args.tenant, files))
        logger.info("Completed ingestion: files=%d, chunks=%d", len(files), total)
        print(f"[INGEST-FILES] {args.tenant} -> {total} chunks from {len(files)} files")
    except Exception:
        logger.exception("Ingestion failed for tenant %s", args.tenant)
        raise


if __name__ == "__main__":
    main()
