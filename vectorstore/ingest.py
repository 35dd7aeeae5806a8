"""Ingestion steps: pages → embeddings-ready chunk file → embedding output file.

Usage (via the main pipeline):
  python pipeline.py prepare
  python pipeline.py embed --all
"""

import logging
import time
from pathlib import Path
from typing import Optional, Union

from errors import ValidationError
from processors.deduplicator import PageDeduplicator
from schemas.chunk import Chunk
from schemas.embedding import EmbeddingRecord
from schemas.page import PageDocument, ProcessedPage
from scrapers.utils import load_records, save_json
from vectorstore.chunker import Chunker
from vectorstore.embedder import EmbeddingPipeline, ProgressCallback
from vectorstore.store import VectorStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data loading
# ---------------------------------------------------------------------------

def load_pages(path: Union[str, Path]) -> list[PageDocument]:
    """Load pages from a crawl results file (``{url, title, content, links}``)
    or a processed-pages file (``{file, content, meta}``)."""
    filepath = Path(path)
    if not filepath.exists():
        raise ValidationError("pages", f"file not found: {filepath}")

    documents = []
    skipped = 0
    for item in load_records(filepath):
        if not isinstance(item, dict) or not item.get("content"):
            skipped += 1
            continue
        if "file" in item and "url" not in item:
            documents.append(ProcessedPage.model_validate(item).to_document())
        else:
            documents.append(
                PageDocument(
                    url=item.get("url", ""),
                    title=item.get("title") or "",
                    text=item["content"],
                    links=item.get("links") or [],
                )
            )
    logger.info("Loaded %d pages from %s (skipped %d without content)", len(documents), filepath, skipped)
    return documents


def load_chunks(path: Union[str, Path]) -> list[Chunk]:
    filepath = Path(path)
    if not filepath.exists():
        raise ValidationError("file", f"chunk file not found: {filepath}")
    chunks = [Chunk.model_validate(item) for item in load_records(filepath)]
    if not chunks:
        raise ValidationError("file", f"no chunks found in {filepath}")
    return chunks


def write_chunks(chunks: list[Chunk], path: Union[str, Path]) -> Path:
    """Write the embeddings-ready chunk file."""
    data = [c.model_dump(mode="json", exclude={"token_estimate"}) for c in chunks]
    filepath = save_json(data, path)
    logger.info("Saved %d chunks for embeddings to %s", len(chunks), filepath)
    return filepath


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def prepare_chunks(
    documents: list[PageDocument],
    chunker: Chunker,
    deduplicator: Optional[PageDeduplicator] = None,
) -> list[Chunk]:
    """Deduplicate pages, then chunk them."""
    t0 = time.perf_counter()
    if deduplicator is not None:
        documents = deduplicator.deduplicate(documents)
    chunks = chunker.chunk_documents(documents)
    logger.info(
        "Prepared %d chunks from %d pages in %.1fs",
        len(chunks), len(documents), time.perf_counter() - t0,
    )
    return chunks


def select_chunks(
    chunks: list[Chunk],
    embed_all: bool = False,
    chunk_index: Optional[int] = None,
) -> list[Chunk]:
    """Choose what to embed: everything, one chunk by index, or the first chunk."""
    if embed_all:
        return list(chunks)
    if chunk_index is not None and chunk_index >= 0:
        for chunk in chunks:
            if chunk.chunk_index == chunk_index:
                return [chunk]
        raise ValidationError("chunk", f"chunk index {chunk_index} not found in file")
    return chunks[:1]


def embed_chunks(
    chunks: list[Chunk],
    pipeline: EmbeddingPipeline,
    output_path: Optional[Union[str, Path]] = None,
    progress: Optional[ProgressCallback] = None,
) -> list[EmbeddingRecord]:
    """Embed chunks and, when ``output_path`` is given, write the embedding output file."""
    t0 = time.perf_counter()
    records = pipeline.embed_all(chunks, progress=progress)
    elapsed = time.perf_counter() - t0
    failed = sum(1 for r in records if not r.ok)
    logger.info(
        "Embedding step done: %d records (%d failed) in %.1fs",
        len(records), failed, elapsed,
    )
    if output_path:
        VectorStore.save(records, output_path)
    return records
