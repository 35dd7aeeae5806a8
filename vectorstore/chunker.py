"""Sentence-boundary chunking engine for crawled pages.

Sentences are accumulated into a chunk until the estimated token count (word
count times a fixed multiplier) would exceed the maximum, then a new chunk is
started. Completed chunks pass through a quality predicate and a run-scoped
content-key deduplicator before they are given an id, so dropped chunks never
consume an ordinal.
"""

import logging
import re
import time
from datetime import datetime, timezone
from typing import Optional

from processors.deduplicator import ContentDeduplicator
from processors.quality_filter import ChunkQualityFilter, QualityPredicate, filter_texts
from schemas.chunk import Chunk
from schemas.page import PageDocument

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_MAX_TOKENS = 500
TOKEN_MULTIPLIER = 1.3

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def estimate_tokens(text: str, multiplier: float = TOKEN_MULTIPLIER) -> int:
    return int(len(text.split()) * multiplier)


def split_sentences(text: str) -> list[str]:
    """Split on sentence-ending punctuation followed by whitespace."""
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(text) if s.strip()]


class Chunker:
    """Splits page documents into bounded, filtered, deduplicated chunks."""

    def __init__(
        self,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        token_multiplier: float = TOKEN_MULTIPLIER,
        quality_filter: Optional[QualityPredicate] = None,
        deduplicator: Optional[ContentDeduplicator] = None,
    ):
        self.max_tokens = max_tokens
        self.token_multiplier = token_multiplier
        self.quality_filter = quality_filter if quality_filter is not None else ChunkQualityFilter()
        self.deduplicator = deduplicator if deduplicator is not None else ContentDeduplicator()
        self.dropped: dict[str, int] = {}

    def chunk(self, document: PageDocument, max_tokens: Optional[int] = None) -> list[Chunk]:
        """Chunk a single document. Ids are ``{url}#chunk_{i}`` over the kept chunks."""
        if not document.text or not document.text.strip():
            return []

        texts = self.split_text(document.text, max_tokens or self.max_tokens)
        kept, reasons = filter_texts(texts, self.quality_filter)
        for reason, count in reasons.items():
            self.dropped[reason] = self.dropped.get(reason, 0) + count

        unique = []
        for text in kept:
            if self.deduplicator.add(text):
                unique.append(text)
            else:
                self.dropped["duplicate"] = self.dropped.get("duplicate", 0) + 1

        crawled_at = datetime.now(timezone.utc).isoformat(timespec="seconds")
        chunks = []
        for i, text in enumerate(unique):
            tokens = estimate_tokens(text, self.token_multiplier)
            chunks.append(
                Chunk(
                    id=f"{document.url}#chunk_{i}",
                    source_url=document.url,
                    title=document.title,
                    content=text,
                    chunk_index=i,
                    total_chunks=len(unique),
                    token_estimate=tokens,
                    metadata={"crawled_at": crawled_at, "token_estimate": tokens},
                )
            )
        return chunks

    def chunk_documents(self, documents: list[PageDocument]) -> list[Chunk]:
        """Chunk a batch of documents."""
        all_chunks = []
        total = len(documents)
        log_interval = max(1, total // 20)  # Log every ~5%
        start_all = time.perf_counter()

        for i, document in enumerate(documents):
            all_chunks.extend(self.chunk(document))
            if (i + 1) % log_interval == 0 or (i + 1) == total:
                logger.debug(
                    "Chunking progress: %d/%d pages (%3.0f%%), %d chunks",
                    i + 1, total, (i + 1) / total * 100, len(all_chunks),
                )

        logger.info(
            "Chunked %d pages into %d chunks (avg %.1f chunks/page) in %.1fs. Dropped: %s",
            total, len(all_chunks),
            len(all_chunks) / max(total, 1),
            time.perf_counter() - start_all,
            self.dropped,
        )
        return all_chunks

    # -------------------------------------------------------------------
    # Core splitting utilities
    # -------------------------------------------------------------------

    def split_text(self, text: str, max_tokens: int) -> list[str]:
        """Accumulate sentences into chunks under the token estimate."""
        chunks: list[str] = []
        current: list[str] = []
        current_words = 0

        for sentence in split_sentences(text):
            for piece in self._bound(sentence, max_tokens):
                words = len(piece.split())
                if current and int((current_words + words) * self.token_multiplier) > max_tokens:
                    chunks.append(" ".join(current))
                    current, current_words = [], 0
                current.append(piece)
                current_words += words

        if current:
            chunks.append(" ".join(current))
        return chunks

    def _bound(self, sentence: str, max_tokens: int) -> list[str]:
        """Hard split a single sentence that alone exceeds the maximum."""
        words = sentence.split()
        if int(len(words) * self.token_multiplier) <= max_tokens:
            return [sentence]
        window = max(1, int(max_tokens / self.token_multiplier))
        return [" ".join(words[i : i + window]) for i in range(0, len(words), window)]
