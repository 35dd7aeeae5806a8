"""Fixed-size fetch worker pool draining a shared Frontier.

Each worker loops ``frontier.get() -> fetcher.fetch() -> frontier.task_done()``
until the frontier drains or the cancellation event is set. A cancelled crawl
still returns (and writes) every page gathered so far.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

from schemas.page import PageDocument
from scrapers.fetcher import Fetcher, FetchResult
from scrapers.frontier import Frontier
from scrapers.utils import save_json

logger = logging.getLogger(__name__)


@dataclass
class CrawlStats:
    fetched: int = 0
    failed: int = 0
    skipped: dict[str, int] = field(default_factory=dict)
    links_added: int = 0
    elapsed: float = 0.0
    cancelled: bool = False


class Crawler:
    def __init__(
        self,
        fetcher: Fetcher,
        frontier: Frontier,
        workers: int = 4,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.fetcher = fetcher
        self.frontier = frontier
        self.workers = max(1, workers)
        self.cancel_event = cancel_event or threading.Event()
        self.stats = CrawlStats()
        self._documents: list[PageDocument] = []
        self._lock = threading.Lock()

    def run(self) -> list[PageDocument]:
        """Crawl until the frontier drains or the run is cancelled."""
        start = time.time()
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="fetch") as pool:
            futures = [pool.submit(self._worker) for _ in range(self.workers)]
            for future in futures:
                future.result()

        self.stats.elapsed = time.time() - start
        self.stats.cancelled = self.cancel_event.is_set()
        logger.info(
            "Crawl %s: %d fetched, %d failed, skipped %s, %.1fs",
            "cancelled" if self.stats.cancelled else "finished",
            self.stats.fetched,
            self.stats.failed,
            self.stats.skipped,
            self.stats.elapsed,
        )
        with self._lock:
            return list(self._documents)

    def _worker(self) -> None:
        while True:
            record = self.frontier.get()
            if record is None:
                return
            links: list[str] = []
            try:
                result = self.fetcher.fetch(record.normalized)
            except Exception as e:
                logger.exception("Unexpected error fetching %s", record.normalized)
                result = FetchResult(url=record.normalized, error=e)
            self._record(result)
            if result.ok and not self.cancel_event.is_set():
                links = result.document.links
            added = self.frontier.task_done(record, links)
            with self._lock:
                self.stats.links_added += added

    def _record(self, result: FetchResult) -> None:
        with self._lock:
            if result.ok:
                self._documents.append(result.document)
                self.stats.fetched += 1
                if self.stats.fetched % 50 == 0:
                    logger.info("Crawled %d pages so far...", self.stats.fetched)
            elif result.error is not None:
                self.stats.failed += 1
            else:
                self.stats.skipped[result.skipped] = self.stats.skipped.get(result.skipped, 0) + 1


def write_crawl_results(documents: list[PageDocument], path: Union[str, Path]) -> Path:
    """Write the crawl results file: ``[{url, title, content, links}]``."""
    data = [
        {"url": doc.url, "title": doc.title, "content": doc.text, "links": doc.links}
        for doc in documents
    ]
    filepath = save_json(data, path)
    logger.info("Saved %d crawled pages to %s", len(data), filepath)
    return filepath
