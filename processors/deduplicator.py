"""Deduplication of crawled content.

Handles two levels of deduplication:
1. Page level, before chunking: exact URL dedup, then near-duplicate text
   detection using MinHash LSH (datasketch).
2. Chunk level, during chunking: a fixed-length content key per chunk, so
   boilerplate repeated on every page is stored once per run.
"""

import hashlib
import logging
import re
import threading

from datasketch import MinHash, MinHashLSH

from schemas.page import PageDocument
from scrapers.utils import normalize_url

logger = logging.getLogger(__name__)

CONTENT_KEY_CHARS = 200

_WHITESPACE = re.compile(r"\s+")


def content_key(text: str, max_chars: int = CONTENT_KEY_CHARS) -> str:
    """Dedup key for a chunk: lowercased, whitespace-collapsed text (cut to
    ``max_chars`` for long chunks), hashed to a fixed length."""
    normalized = _WHITESPACE.sub(" ", text.lower()).strip()
    return hashlib.sha256(normalized[:max_chars].encode("utf-8")).hexdigest()


class ContentDeduplicator:
    """Run-scoped set of seen content keys. Thread-safe."""

    def __init__(self, max_chars: int = CONTENT_KEY_CHARS):
        self.max_chars = max_chars
        self._seen: set[str] = set()
        self._lock = threading.Lock()

    def add(self, text: str) -> bool:
        """Record ``text``; return False if its key was already seen."""
        key = content_key(text, self.max_chars)
        with self._lock:
            if key in self._seen:
                return False
            self._seen.add(key)
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)


class PageDeduplicator:
    """Removes duplicate and near-duplicate pages before chunking."""

    def __init__(
        self,
        similarity_threshold: float = 0.7,
        num_perm: int = 128,
    ):
        """Initialize the deduplicator.

        Args:
            similarity_threshold: Jaccard similarity threshold for near-duplicates.
                0.7 means 70% similar content is considered a duplicate.
            num_perm: Number of permutation functions for MinHash.
        """
        self.similarity_threshold = similarity_threshold
        self.num_perm = num_perm

    def deduplicate(self, documents: list[PageDocument]) -> list[PageDocument]:
        """Remove duplicate pages, keeping the first occurrence.

        Applies dedup in order:
        1. Exact URL dedup (normalized)
        2. Near-duplicate text dedup (MinHash LSH)
        """
        initial_count = len(documents)

        documents = self._url_dedup(documents)
        after_url = len(documents)

        documents = self._minhash_dedup(documents)
        after_minhash = len(documents)

        logger.info(
            "Page deduplication: %d → %d (URL: -%d, MinHash: -%d)",
            initial_count,
            after_minhash,
            initial_count - after_url,
            after_url - after_minhash,
        )
        return documents

    def _url_dedup(self, documents: list[PageDocument]) -> list[PageDocument]:
        seen_urls: set[str] = set()
        unique = []
        for doc in documents:
            url = normalize_url(doc.url) or doc.url
            if url not in seen_urls:
                seen_urls.add(url)
                unique.append(doc)
        return unique

    def _minhash_dedup(self, documents: list[PageDocument]) -> list[PageDocument]:
        if len(documents) <= 1:
            return documents

        lsh = MinHashLSH(threshold=self.similarity_threshold, num_perm=self.num_perm)
        unique = []

        for i, doc in enumerate(documents):
            # Too short to shingle; leave for the chunk-level key
            if len(doc.text.split()) < 3:
                unique.append(doc)
                continue

            mh = self._text_to_minhash(doc.text)
            if lsh.query(mh):
                logger.debug("Near-duplicate page dropped: %s", doc.url)
                continue
            lsh.insert(str(i), mh)
            unique.append(doc)

        return unique

    def _text_to_minhash(self, text: str) -> MinHash:
        """Convert text to a MinHash using word-level 3-shingles."""
        mh = MinHash(num_perm=self.num_perm)
        words = text.lower().split()

        for i in range(len(words) - 2):
            shingle = " ".join(words[i : i + 3])
            mh.update(shingle.encode("utf-8"))

        return mh
