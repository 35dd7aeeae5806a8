"""URL frontier: seeded worklist with at-most-once admission and BFS expansion.

Admission is serialized under one condition variable so a normalized URL is
scheduled at most once per run. Drain detection uses an in-flight counter:
``get`` returns ``None`` once the queue is empty and no worker still holds a
URL that could produce more links.
"""

import logging
import threading
from collections import deque
from typing import Callable, Iterable, Optional

from schemas.page import UrlRecord
from scrapers.robots import ComplianceCache
from scrapers.utils import host_key, normalize_url

logger = logging.getLogger(__name__)


class Frontier:
    """Thread-safe BFS worklist shared by the fetch workers."""

    def __init__(
        self,
        accept: Optional[Callable[[str], bool]] = None,
        compliance: Optional[ComplianceCache] = None,
        max_pages: int = 0,
        same_host: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.accept = accept
        self.compliance = compliance
        self.max_pages = max_pages
        self.same_host = same_host
        self.cancel_event = cancel_event

        self._cond = threading.Condition()
        self._queue: deque[UrlRecord] = deque()
        self._seen: set[str] = set()
        self._visited: set[str] = set()
        self._hosts: set[str] = set()
        self._in_flight = 0
        self._admitted = 0
        self._closed = False

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def seed(self, urls: Iterable[str]) -> int:
        """Admit the seed URLs at depth 0. Seed hosts become the crawl scope."""
        added = 0
        for url in urls:
            normalized = normalize_url(url)
            if normalized and self.same_host:
                with self._cond:
                    self._hosts.add(host_key(normalized))
            if self.enqueue(url, depth=0):
                added += 1
        logger.info("Seeded frontier with %d URLs", added)
        return added

    def enqueue(self, url: str, depth: int = 0, base_url: Optional[str] = None) -> bool:
        """Admit a URL if it is new, crawlable, in scope and allowed by robots.txt."""
        normalized = normalize_url(url, base_url)
        if not normalized:
            return False
        if self.accept is not None and not self.accept(normalized):
            return False

        with self._cond:
            if not self._accepting() or normalized in self._seen:
                return False
            if self.same_host and self._hosts and host_key(normalized) not in self._hosts:
                return False

        # Robots lookups may hit the network; keep them outside the lock
        if self.compliance is not None and not self.compliance.is_allowed(normalized):
            with self._cond:
                self._seen.add(normalized)
            logger.debug("Frontier rejected (robots.txt): %s", normalized)
            return False

        with self._cond:
            if not self._accepting() or normalized in self._seen:
                return False
            self._seen.add(normalized)
            self._admitted += 1
            self._queue.append(UrlRecord(raw=url, normalized=normalized, depth=depth))
            self._cond.notify()
        return True

    def _accepting(self) -> bool:
        if self._closed or self._cancelled():
            return False
        return not self.max_pages or self._admitted < self.max_pages

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Consumption
    # ------------------------------------------------------------------

    def get(self, poll_interval: float = 0.25) -> Optional[UrlRecord]:
        """Block until a URL is available. ``None`` means drained or cancelled.

        ``poll_interval`` only bounds how long a waiting worker takes to notice
        an external cancellation event.
        """
        with self._cond:
            while True:
                if self._closed or self._cancelled():
                    return None
                if self._queue:
                    self._in_flight += 1
                    return self._queue.popleft()
                if self._in_flight == 0:
                    return None
                self._cond.wait(poll_interval)

    def task_done(self, record: UrlRecord, links: Iterable[str] = ()) -> int:
        """Mark a fetch attempt finished and admit its outbound links.

        Links are admitted before the in-flight count drops so other workers
        cannot mistake the gap for a drained frontier.
        """
        added = 0
        try:
            for link in links:
                if self.enqueue(link, depth=record.depth + 1):
                    added += 1
        finally:
            with self._cond:
                record.visited = True
                self._visited.add(record.normalized)
                self._in_flight -= 1
                self._cond.notify_all()
        return added

    def close(self) -> None:
        """Stop admitting and wake every waiting worker."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def visited(self) -> set[str]:
        with self._cond:
            return set(self._visited)

    @property
    def admitted(self) -> int:
        with self._cond:
            return self._admitted

    def is_seen(self, url: str) -> bool:
        normalized = normalize_url(url)
        with self._cond:
            return normalized in self._seen
