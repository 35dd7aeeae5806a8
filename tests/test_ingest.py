"""Tests for the ingestion steps between the crawl output and the vector store."""

from unittest.mock import MagicMock

import orjson
import pytest

from errors import ValidationError
from processors.deduplicator import PageDeduplicator
from schemas.chunk import Chunk
from schemas.page import PageDocument
from vectorstore.chunker import Chunker
from vectorstore.embedder import EmbeddingPipeline
from vectorstore.ingest import (
    embed_chunks,
    load_chunks,
    load_pages,
    prepare_chunks,
    select_chunks,
    write_chunks,
)
from vectorstore.store import VectorStore

PROSE = (
    "Customers can return any unused item within thirty days of delivery. "
    "Refunds are sent to the original payment method after inspection. "
    "Shipping costs are not refunded unless the item arrived damaged."
)


def _chunk(i: int) -> Chunk:
    return Chunk(
        id=f"https://example.com/#chunk_{i}",
        source_url="https://example.com/",
        content=f"content {i}",
        chunk_index=i,
        total_chunks=3,
    )


class TestLoadPages:
    def test_crawl_results_format(self, tmp_path):
        path = tmp_path / "crawl_results.json"
        path.write_bytes(orjson.dumps([
            {"url": "https://example.com/a", "title": "A", "content": "Body A", "links": []},
            {"url": "https://example.com/b", "title": "B", "content": ""},
        ]))

        docs = load_pages(path)

        assert [(d.url, d.title, d.text) for d in docs] == [("https://example.com/a", "A", "Body A")]

    def test_processed_pages_format(self, tmp_path):
        path = tmp_path / "processed_pages.json"
        path.write_bytes(orjson.dumps([
            {"file": "a.html", "content": "Body", "meta": {"canonical_url": "https://example.com/a"}},
        ]))

        assert load_pages(path)[0].url == "https://example.com/a"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_pages(tmp_path / "missing.json")


class TestChunkFile:
    def test_write_then_load(self, tmp_path):
        path = tmp_path / "embeddings_ready.json"
        chunks = [_chunk(i) for i in range(3)]

        write_chunks(chunks, path)

        data = orjson.loads(path.read_bytes())
        assert "token_estimate" not in data[0]
        assert set(data[0]) == {"id", "source_url", "title", "content", "chunk_index", "total_chunks", "metadata"}
        assert [c.id for c in load_chunks(path)] == [c.id for c in chunks]

    def test_missing_or_empty_chunk_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_chunks(tmp_path / "missing.json")

        empty = tmp_path / "empty.json"
        empty.write_bytes(b"[]")
        with pytest.raises(ValidationError):
            load_chunks(empty)


class TestSelectChunks:
    CHUNKS = [_chunk(i) for i in range(3)]

    def test_all(self):
        assert select_chunks(self.CHUNKS, embed_all=True) == self.CHUNKS

    def test_by_index(self):
        assert select_chunks(self.CHUNKS, chunk_index=2) == [self.CHUNKS[2]]

    def test_unknown_index(self):
        with pytest.raises(ValidationError):
            select_chunks(self.CHUNKS, chunk_index=9)

    def test_default_is_first_chunk(self):
        assert select_chunks(self.CHUNKS) == [self.CHUNKS[0]]


class TestSteps:
    def test_prepare_chunks_dedupes_pages(self):
        docs = [
            PageDocument(url="https://example.com/returns", title="Returns", text=PROSE),
            PageDocument(url="https://example.com/returns/", title="Returns", text=PROSE),
        ]

        chunks = prepare_chunks(docs, Chunker(max_tokens=500), PageDeduplicator())

        assert len(chunks) == 1
        assert chunks[0].id == "https://example.com/returns#chunk_0"

    def test_embed_chunks_writes_the_store_file(self, tmp_path):
        client = MagicMock()
        client.embedding.return_value = [0.6, 0.8]
        pipeline = EmbeddingPipeline(client, "embed-model", rate=0)
        out = tmp_path / "embeddings.json"

        records = embed_chunks([_chunk(i) for i in range(3)], pipeline, output_path=out)

        assert len(records) == 3
        store = VectorStore.load(out)
        assert len(store) == 3
        assert store.dimension == 2
