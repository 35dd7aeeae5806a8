"""Linear-scan cosine similarity search over the vector store."""

import logging
import math
from dataclasses import dataclass
from typing import Iterable, Sequence

from processors.deduplicator import content_key
from schemas.embedding import EmbeddingRecord

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """A store record with its similarity to the query (higher = more relevant)."""
    record: EmbeddingRecord
    similarity: float


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0 for mismatched lengths or a zero-norm vector."""
    if len(a) != len(b) or not a:
        return 0.0

    dot = norm_a = norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return max(-1.0, min(1.0, dot / (math.sqrt(norm_a) * math.sqrt(norm_b))))


def record_content(record: EmbeddingRecord) -> str:
    """Record text, falling back to a ``content`` field inside the metadata."""
    if record.content:
        return record.content
    fallback = record.metadata.get("content")
    return fallback if isinstance(fallback, str) else ""


def dedup_keys(record: EmbeddingRecord) -> list[str]:
    """Keys under which a record counts as already taken: its id and its content key."""
    keys = []
    if record.id:
        keys.append(f"id:{record.id}")
    content = record_content(record)
    if content:
        keys.append(f"content:{content_key(content)}")
    if not keys:
        keys.append(f"chunk:{record.chunk_index}")
    return keys


def search_similar(
    query_vector: Sequence[float],
    records: Iterable[EmbeddingRecord],
    top_k: int = 5,
    threshold: float = 0.7,
) -> list[SearchResult]:
    """Rank records against the query vector.

    Candidates below ``threshold`` are dropped, the rest are stably sorted by
    similarity (ties keep store order), duplicates by id or content are
    skipped, and at most ``top_k`` results are returned (``top_k <= 0`` means
    no limit).
    """
    candidates = []
    for record in records:
        if not record.embedding:
            continue
        similarity = cosine_similarity(query_vector, record.embedding)
        if similarity >= threshold:
            candidates.append(SearchResult(record=record, similarity=similarity))

    candidates.sort(key=lambda c: c.similarity, reverse=True)

    seen: set[str] = set()
    results = []
    for candidate in candidates:
        if top_k > 0 and len(results) >= top_k:
            break
        keys = dedup_keys(candidate.record)
        if any(k in seen for k in keys):
            continue
        seen.update(keys)
        results.append(candidate)

    logger.debug(
        "Search: %d candidates above %.2f, returning %d", len(candidates), threshold, len(results)
    )
    return results
