"""Unit tests for the vector store file and similarity search."""

import math

import orjson
import pytest

from errors import ValidationError
from rag.search import cosine_similarity, dedup_keys, record_content, search_similar
from schemas.embedding import EmbeddingRecord
from vectorstore.store import VectorStore


def _record(id_: str, vector, content: str = "", **kwargs) -> EmbeddingRecord:
    return EmbeddingRecord(id=id_, embedding=list(vector), content=content or f"content of {id_}", **kwargs)


class TestCosineSimilarity:
    def test_identical(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite(self):
        assert cosine_similarity([1.0, 1.0], [-1.0, -1.0]) == pytest.approx(-1.0)

    def test_degenerate_inputs_score_zero(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0]) == 0.0
        assert cosine_similarity([], []) == 0.0
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    @pytest.mark.parametrize(
        "a, b",
        [
            ([0.3, -1.2, 4.5], [2.0, 0.7, -0.1]),
            ([1e-3, 3e8, 7.0], [5.0, -2e7, 0.25]),
            ([1.0, 2.0], [0.0, 0.0]),
            ([1.0], [1.0, 2.0]),
        ],
    )
    def test_symmetric(self, a, b):
        assert cosine_similarity(a, b) == cosine_similarity(b, a)

    def test_result_is_bounded(self):
        value = cosine_similarity([1e-3, 3e8, 7.0], [1e-3, 3e8, 7.0])
        assert -1.0 <= value <= 1.0


class TestRecordHelpers:
    def test_content_falls_back_to_metadata(self):
        record = EmbeddingRecord(id="a", metadata={"content": "from metadata"})
        assert record_content(record) == "from metadata"

    def test_dedup_keys(self):
        keys = dedup_keys(_record("a", [1.0], content="Hello"))
        assert keys[0] == "id:a"
        assert keys[1].startswith("content:")

        anonymous = EmbeddingRecord(id="", chunk_index=7)
        assert dedup_keys(anonymous) == ["chunk:7"]


class TestSearchSimilar:
    QUERY = [1.0, 0.0]

    def _vector(self, similarity: float) -> list[float]:
        return [similarity, math.sqrt(1 - similarity ** 2)]

    def test_orders_by_similarity_and_limits(self):
        records = [_record(f"r{i}", self._vector(s)) for i, s in enumerate([0.75, 0.95, 0.85, 0.99])]

        results = search_similar(self.QUERY, records, top_k=3, threshold=0.7)

        assert [r.record.id for r in results] == ["r3", "r1", "r2"]
        sims = [r.similarity for r in results]
        assert sims == sorted(sims, reverse=True)

    def test_threshold_filters(self):
        records = [_record("low", self._vector(0.5)), _record("high", self._vector(0.9))]

        results = search_similar(self.QUERY, records, top_k=5, threshold=0.7)

        assert [r.record.id for r in results] == ["high"]
        assert all(r.similarity >= 0.7 for r in results)

    def test_nothing_above_threshold(self):
        records = [_record(f"r{i}", self._vector(0.6)) for i in range(5)]
        assert search_similar(self.QUERY, records, top_k=5, threshold=0.7) == []

    def test_ties_keep_store_order(self):
        records = [_record(f"r{i}", [2.0, 0.0]) for i in range(4)]

        results = search_similar(self.QUERY, records, top_k=4, threshold=0.0)

        assert [r.record.id for r in results] == ["r0", "r1", "r2", "r3"]

    def test_identical_content_is_returned_once(self):
        records = [
            _record("page-a#chunk_0", [1.0, 0.0], content="Refunds are issued within thirty days."),
            _record("page-b#chunk_3", [1.0, 0.0], content="Refunds are  issued within thirty days."),
            _record("page-c#chunk_1", self._vector(0.9), content="Exchanges are free."),
        ]

        results = search_similar(self.QUERY, records, top_k=5, threshold=0.7)

        assert [r.record.id for r in results] == ["page-a#chunk_0", "page-c#chunk_1"]

    def test_duplicate_ids_are_returned_once(self):
        records = [
            _record("same", [1.0, 0.0], content="first"),
            _record("same", self._vector(0.9), content="second"),
        ]
        results = search_similar(self.QUERY, records, top_k=5, threshold=0.0)
        assert len(results) == 1

    def test_duplicates_do_not_use_up_top_k(self):
        records = [_record(f"dup{i}", [1.0, 0.0], content="same text") for i in range(5)]
        records.append(_record("other", self._vector(0.9), content="other text"))

        results = search_similar(self.QUERY, records, top_k=2, threshold=0.7)

        assert [r.record.id for r in results] == ["dup0", "other"]

    def test_non_positive_top_k_means_no_limit(self):
        records = [_record(f"r{i}", self._vector(0.9)) for i in range(10)]
        assert len(search_similar(self.QUERY, records, top_k=0, threshold=0.5)) == 10

    def test_records_without_vectors_are_ignored(self):
        records = [EmbeddingRecord(id="empty", content="x"), _record("ok", [1.0, 0.0])]
        assert [r.record.id for r in search_similar(self.QUERY, records, threshold=0.0)] == ["ok"]


class TestVectorStore:
    def test_load_keeps_only_successful_records(self, tmp_path):
        path = tmp_path / "embeddings.json"
        path.write_bytes(orjson.dumps([
            {"id": "a", "chunk_index": 0, "content": "A", "metadata": {}, "embedding": [0.1, 0.2]},
            {"id": "b", "chunk_index": 1, "content": "B", "metadata": {}, "error": "network error"},
            {"id": "c", "chunk_index": 2, "content": "C", "metadata": {}, "embedding": []},
        ]))

        store = VectorStore.load(path)

        assert [r.id for r in store] == ["a"]
        assert len(store) == 1
        assert store.dimension == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError):
            VectorStore.load(tmp_path / "nope.json")

    def test_save_writes_failed_records_without_null_error(self, tmp_path):
        path = tmp_path / "embeddings.json"
        VectorStore.save(
            [_record("a", [0.1]), EmbeddingRecord(id="b", content="B", error="cancelled")],
            path,
        )

        data = orjson.loads(path.read_bytes())
        assert "error" not in data[0]
        assert data[1]["error"] == "cancelled"
        assert [r.id for r in VectorStore.load(path)] == ["a"]

    def test_mixed_dimensions_pick_the_majority(self):
        store = VectorStore([_record("a", [1.0, 0.0]), _record("b", [1.0, 0.0]), _record("c", [1.0])])
        assert store.dimension == 2
