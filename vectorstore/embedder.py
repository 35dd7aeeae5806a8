"""Concurrent, batched, globally rate-limited embedding generation.

Workers pull up to ``batch_size`` chunks at a time from a shared queue and
embed them one by one through the inference client. Every call first takes a
permit from a single shared ``RateLimiter``, so the aggregate request rate is
bounded no matter how many workers run.

Every input chunk yields exactly one output record: a vector on success, an
``error`` string otherwise (including ``"cancelled"`` for chunks that never
started because the run was cancelled).
"""

import logging
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from errors import SiteKBError, ValidationError
from inference.client import OllamaClient
from schemas.chunk import Chunk
from schemas.embedding import EmbeddingRecord

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_WORKERS = 4
DEFAULT_RATE = 5.0  # requests per second

CANCELLED = "cancelled"

ProgressCallback = Callable[[int, int], None]


class RateLimiter:
    """Single shared token source issuing one permit per interval.

    The first permit is immediate; permit ``k`` is issued no earlier than
    ``k / rate`` seconds after it. A rate of zero or less disables limiting.
    """

    def __init__(
        self,
        rate: float,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.rate = rate
        self.interval = 1.0 / rate if rate > 0 else 0.0
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_permit: Optional[float] = None

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def acquire(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """Wait for a permit. Returns False if cancelled while waiting."""
        if not self.enabled:
            return not (cancel_event is not None and cancel_event.is_set())

        with self._lock:
            now = self._clock()
            slot = now if self._next_permit is None else max(now, self._next_permit)
            self._next_permit = slot + self.interval

        pause = slot - now
        if cancel_event is not None:
            if pause > 0 and cancel_event.wait(pause):
                return False
            return not cancel_event.is_set()
        if pause > 0:
            self._sleep(pause)
        return True


def dedupe_by_id(chunks: list[Chunk]) -> tuple[list[Chunk], int]:
    """Keep the first chunk per id. Returns (unique chunks, duplicates removed)."""
    seen: set[str] = set()
    unique = []
    for chunk in chunks:
        if chunk.id in seen:
            continue
        seen.add(chunk.id)
        unique.append(chunk)
    return unique, len(chunks) - len(unique)


class EmbeddingPipeline:
    """Embed chunks with a fixed worker pool and a global rate limit."""

    def __init__(
        self,
        client: OllamaClient,
        model: str,
        workers: int = DEFAULT_WORKERS,
        batch_size: int = DEFAULT_BATCH_SIZE,
        rate: float = DEFAULT_RATE,
        cancel_event: Optional[threading.Event] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        self.client = client
        self.model = model
        self.workers = workers if workers > 0 else DEFAULT_WORKERS
        self.batch_size = batch_size if batch_size > 0 else 1
        self.rate_limiter = rate_limiter or RateLimiter(rate)
        self.cancel_event = cancel_event or threading.Event()

        self._progress_lock = threading.Lock()
        self.processed = 0

    def embed_all(
        self,
        chunks: list[Chunk],
        model: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> list[EmbeddingRecord]:
        """Embed every chunk (deduplicated by id) and return one record per chunk.

        ``model`` overrides the pipeline's model for this run. Records come
        back in input order. ``progress(processed, total)`` is called after
        each batch with a monotonically increasing count.
        """
        model = self.model if model is None else model
        if not model:
            raise ValidationError("model", "model cannot be empty")

        unique, duplicates = dedupe_by_id(chunks)
        if duplicates:
            logger.info("Removed %d duplicate chunks, %d unique chunks remaining", duplicates, len(unique))
        if not unique:
            return []

        jobs: queue.Queue = queue.Queue()
        for index, chunk in enumerate(unique):
            jobs.put((index, chunk))
        results: list[Optional[EmbeddingRecord]] = [None] * len(unique)
        total = len(unique)
        self.processed = 0

        start = time.time()
        workers = min(self.workers, total)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="embed") as pool:
            futures = [
                pool.submit(self._worker, jobs, results, model, total, progress)
                for _ in range(workers)
            ]
            for future in futures:
                future.result()

        records = [
            record if record is not None else self._error_record(chunk, CANCELLED)
            for record, chunk in zip(results, unique)
        ]
        elapsed = time.time() - start
        failed = sum(1 for r in records if not r.ok)
        logger.info(
            "Embedded %d chunks (%d failed) in %.1fs (%.1f chunks/sec)",
            total - failed, failed, elapsed, total / max(elapsed, 0.001),
        )
        return records

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _worker(
        self,
        jobs: queue.Queue,
        results: list,
        model: str,
        total: int,
        progress: Optional[ProgressCallback],
    ) -> None:
        while True:
            batch = []
            while len(batch) < self.batch_size:
                try:
                    batch.append(jobs.get_nowait())
                except queue.Empty:
                    break
            if not batch:
                return

            for index, chunk in batch:
                results[index] = self._embed_one(chunk, model)

            with self._progress_lock:
                self.processed += len(batch)
                logger.debug("Embedding progress %d/%d", self.processed, total)
                if progress is not None:
                    progress(self.processed, total)

    def _embed_one(self, chunk: Chunk, model: str) -> EmbeddingRecord:
        if self.cancel_event.is_set() or not self.rate_limiter.acquire(self.cancel_event):
            return self._error_record(chunk, CANCELLED)
        try:
            vector = self.client.embedding(model, chunk.content)
        except SiteKBError as e:
            logger.warning("Error embedding chunk %s: %s", chunk.id, e)
            return self._error_record(chunk, str(e))
        except Exception as e:
            logger.exception("Unexpected error embedding chunk %s", chunk.id)
            return self._error_record(chunk, f"{type(e).__name__}: {e}")
        return EmbeddingRecord(
            id=chunk.id,
            chunk_index=chunk.chunk_index,
            content=chunk.content,
            metadata=self._metadata(chunk),
            embedding=vector,
        )

    def _error_record(self, chunk: Chunk, error: str) -> EmbeddingRecord:
        return EmbeddingRecord(
            id=chunk.id,
            chunk_index=chunk.chunk_index,
            content=chunk.content,
            metadata=self._metadata(chunk),
            error=error,
        )

    @staticmethod
    def _metadata(chunk: Chunk) -> dict:
        metadata = dict(chunk.metadata)
        metadata.setdefault("source_url", chunk.source_url)
        if chunk.title:
            metadata.setdefault("title", chunk.title)
        return metadata
