"""Page fetcher: normalization, exclusion rules, robots compliance, paced
retrieval with retry, and extraction of title / content / links.

``Fetcher.fetch`` never raises for a single bad URL. The returned
``FetchResult`` carries a document, a skip reason, or the error, so one page
cannot take down a worker.
"""

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from errors import FetchError
from schemas.page import PageDocument
from scrapers.robots import ComplianceCache
from scrapers.utils import (
    DEFAULT_HEADERS,
    host_key,
    is_crawlable,
    normalize_url,
    parse_page,
    sanitize_filename,
)

logger = logging.getLogger(__name__)

_HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


class _Cancelled(Exception):
    """The run was cancelled while a request waited for its host slot."""


class HostPacer:
    """Enforces a minimum delay between requests to the same host.

    Slots are reserved under a lock and slept outside it, so workers hitting
    different hosts never wait on each other while a single host sees at most
    one request per interval no matter how many workers there are.
    """

    def __init__(
        self,
        min_delay: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_delay = min_delay
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: dict[str, float] = {}

    def wait(
        self,
        host: str,
        delay: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Block until ``host`` may be requested again.

        Returns False if ``cancel_event`` is set before the slot comes up; the
        caller must then drop the request rather than send it unpaced.
        """
        interval = max(self.min_delay, delay or 0.0)
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_slot.get(host, 0.0))
            self._next_slot[host] = slot + interval
        pause = slot - now
        if cancel_event is not None:
            if pause > 0:
                cancel_event.wait(pause)
            return not cancel_event.is_set()
        if pause > 0:
            self._sleep(pause)
        return True


@dataclass
class FetchResult:
    url: str
    document: Optional[PageDocument] = None
    skipped: str = ""
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.document is not None


class Fetcher:
    """Fetches and parses a single page at a time; safe to share across threads."""

    def __init__(
        self,
        compliance: Optional[ComplianceCache] = None,
        session: Optional[requests.Session] = None,
        pacer: Optional[HostPacer] = None,
        timeout: float = 20.0,
        retries: int = 3,
        backoff: float = 0.5,
        snapshot_dir: Optional[Union[str, Path]] = None,
        exclude_hosts: Iterable[str] = (),
        exclude_paths: Iterable[str] = (),
        max_content_chars: int = 50_000,
        user_agent: str = DEFAULT_HEADERS["User-Agent"],
        cancel_event: Optional[threading.Event] = None,
    ):
        self.compliance = compliance
        self.session = session or requests.Session()
        self.pacer = pacer or HostPacer()
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff = backoff
        self.snapshot_dir = Path(snapshot_dir) if snapshot_dir else None
        self.exclude_hosts = list(exclude_hosts)
        self.exclude_paths = list(exclude_paths)
        self.max_content_chars = max_content_chars
        self.headers = {**DEFAULT_HEADERS, "User-Agent": user_agent}
        self.cancel_event = cancel_event

        if self.snapshot_dir:
            self.snapshot_dir.mkdir(parents=True, exist_ok=True)

    def accepts(self, url: str) -> bool:
        """Exclusion rules shared with the frontier (no network)."""
        return is_crawlable(url, self.exclude_hosts, self.exclude_paths)

    def fetch(self, url: str) -> FetchResult:
        """Fetch one URL and return its parsed document, skip reason, or error."""
        normalized = normalize_url(url)
        if not normalized:
            return FetchResult(url=url, skipped="invalid url")
        if not self.accepts(normalized):
            logger.debug("Skipping excluded URL: %s", normalized)
            return FetchResult(url=normalized, skipped="excluded")

        crawl_delay = None
        if self.compliance is not None:
            if not self.compliance.is_allowed(normalized):
                logger.debug("Disallowed by robots.txt: %s", normalized)
                return FetchResult(url=normalized, skipped="disallowed by robots.txt")
            crawl_delay = self.compliance.crawl_delay(normalized)

        try:
            response = self._get(normalized, crawl_delay)
        except _Cancelled:
            logger.debug("Cancelled before request: %s", normalized)
            return FetchResult(url=normalized, skipped="cancelled")
        except FetchError as e:
            logger.warning("%s", e)
            return FetchResult(url=normalized, error=e)

        # Redirects land on a URL the rules have not seen yet; relative links
        # resolve against the URL actually served
        final_url = normalize_url(response.url) or normalized
        if final_url != normalized:
            skipped = self._screen_redirect(final_url)
            if skipped:
                response.close()
                logger.debug("Redirect %s -> %s skipped: %s", normalized, final_url, skipped)
                return FetchResult(url=normalized, skipped=skipped)

        content_type = response.headers.get("Content-Type", "")
        if not any(ct in content_type.lower() for ct in _HTML_CONTENT_TYPES):
            response.close()
            logger.debug("Skipping non-HTML content (%s): %s", content_type or "unknown", normalized)
            return FetchResult(url=normalized, skipped="non-html content")

        html = response.text
        snapshot_path = self._write_snapshot(final_url, html)
        title, text, links = parse_page(html, response.url or final_url, self.max_content_chars)
        document = PageDocument(
            url=final_url,
            title=title,
            text=text,
            links=links,
            snapshot_path=str(snapshot_path) if snapshot_path else None,
        )
        return FetchResult(url=normalized, document=document)

    def _screen_redirect(self, url: str) -> str:
        if not self.accepts(url):
            return "excluded"
        if self.compliance is not None and not self.compliance.is_allowed(url):
            return "disallowed by robots.txt"
        return ""

    # ------------------------------------------------------------------
    # HTTP with retry
    # ------------------------------------------------------------------

    def _retrying(self) -> Retrying:
        stop = stop_after_attempt(self.retries)
        if self.cancel_event is not None:
            stop = stop | stop_when_event_set(self.cancel_event)
        return Retrying(
            stop=stop,
            wait=wait_exponential(multiplier=self.backoff, max=10),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
            before_sleep=lambda retry_state: logger.debug(
                "Retry %d after error: %s",
                retry_state.attempt_number,
                retry_state.outcome.exception() if retry_state.outcome else "unknown",
            ),
            reraise=True,
        )

    def _get(self, url: str, crawl_delay: Optional[float]) -> requests.Response:
        try:
            response = self._retrying()(self._request, url, crawl_delay)
        except (requests.ConnectionError, requests.Timeout) as e:
            raise FetchError(url, f"network error after retries: {e}") from e
        except requests.RequestException as e:
            raise FetchError(url, str(e)) from e

        if not 200 <= response.status_code < 300:
            response.close()
            raise FetchError(url, f"status {response.status_code}", status_code=response.status_code)
        return response

    def _request(self, url: str, crawl_delay: Optional[float]) -> requests.Response:
        if not self.pacer.wait(host_key(url), crawl_delay, self.cancel_event):
            raise _Cancelled(url)
        return self.session.get(url, headers=self.headers, timeout=self.timeout)

    def _write_snapshot(self, url: str, html: str) -> Optional[Path]:
        if not self.snapshot_dir:
            return None
        path = self.snapshot_dir / f"{sanitize_filename(url)}.html"
        try:
            path.write_text(html, encoding="utf-8")
        except OSError as e:
            logger.warning("Could not write HTML snapshot for %s: %s", url, e)
            return None
        return path
