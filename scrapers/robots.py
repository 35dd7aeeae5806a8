"""Per-host robots.txt compliance cache.

One ``ComplianceCache`` is created per crawl run and shared by all fetch
workers. Policies are cached by host (scheme-agnostic) with a positive TTL; a
failed policy fetch is cached negatively for a shorter TTL and fails open so a
flaky robots.txt never blocks the whole crawl.

Concurrent lookups for the same uncached host wait on a single in-flight
fetch (a ``Future`` keyed by host) instead of each issuing a request.

The cache is mirrored to a JSON side file so independently launched crawl
processes reuse what earlier runs learned. Writes go through a single
background writer and never block ``is_allowed``.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Union
from urllib.parse import urlparse
from urllib.robotparser import RobotFileParser

import orjson
import requests

from errors import PolicyFetchError
from scrapers.utils import DEFAULT_HEADERS, save_json

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30 * 60
DEFAULT_NEGATIVE_TTL = 10 * 60


@dataclass
class RobotsPolicy:
    """Cached robots rules for one host."""

    parser: Optional[RobotFileParser]
    body: str
    fetched_at: float
    failed: bool = False

    def is_fresh(self, now: float, ttl: float, negative_ttl: float) -> bool:
        age = now - self.fetched_at
        if self.failed:
            return age < negative_ttl
        return self.parser is not None and age < ttl


def parse_rules(body: str) -> RobotFileParser:
    parser = RobotFileParser()
    parser.parse(body.splitlines())
    return parser


def _to_iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _from_iso(value: str) -> float:
    return datetime.fromisoformat(value).timestamp()


def _newer_or_equal(entry: dict, other) -> bool:
    """True if side-file ``entry`` was fetched no earlier than ``other``."""
    if not isinstance(other, dict):
        return True
    try:
        theirs = _from_iso(other.get("fetched_at", ""))
    except (TypeError, ValueError):
        return True
    return _from_iso(entry["fetched_at"]) >= theirs


class RobotsCacheFile:
    """JSON side file: host -> {body, fetched_at, failed}."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> dict[str, dict]:
        if not self.path.exists():
            return {}
        try:
            data = orjson.loads(self.path.read_bytes())
        except ValueError as e:
            logger.warning("Could not parse robots cache file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def save(self, entries: dict[str, dict]) -> None:
        save_json(entries, self.path)


class ComplianceCache:
    """Shared robots.txt policy cache with single-flight fetches."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        user_agent: str = DEFAULT_HEADERS["User-Agent"],
        ttl: float = DEFAULT_TTL,
        negative_ttl: float = DEFAULT_NEGATIVE_TTL,
        storage: Optional[RobotsCacheFile] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 10.0,
    ):
        self.session = session or requests.Session()
        self.user_agent = user_agent
        self.ttl = ttl
        self.negative_ttl = negative_ttl
        self.storage = storage
        self.timeout = timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._policies: dict[str, RobotsPolicy] = {}
        self._file_entries: dict[str, dict] = {}
        self._inflight: dict[str, Future] = {}
        self._failure_logged: set[str] = set()
        self._writer: Optional[ThreadPoolExecutor] = None
        self.fetch_count = 0

        if storage is not None:
            self._writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="robots-cache-writer")
            self._load_file_cache()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_allowed(self, url: str) -> bool:
        """Return whether robots.txt for the URL's host allows fetching it.

        URLs without a host are never allowed. Hosts whose policy could not be
        fetched are allowed (fail-open).
        """
        parsed = urlparse(url)
        if not parsed.netloc:
            return False
        policy = self._policy_for(parsed.scheme or "https", parsed.netloc.lower())
        if policy is None or policy.failed or policy.parser is None:
            return True
        return policy.parser.can_fetch(self.user_agent, url)

    def crawl_delay(self, url: str) -> Optional[float]:
        """Crawl-delay requested by the host for our user agent, if any."""
        parsed = urlparse(url)
        if not parsed.netloc:
            return None
        policy = self._policy_for(parsed.scheme or "https", parsed.netloc.lower())
        if policy is None or policy.parser is None:
            return None
        delay = policy.parser.crawl_delay(self.user_agent)
        return float(delay) if delay is not None else None

    def close(self) -> None:
        """Flush the side file and stop the writer thread."""
        if self._writer is None:
            return
        self._schedule_write()
        self._writer.shutdown(wait=True)
        self._writer = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # ------------------------------------------------------------------
    # Lookup + single-flight fetch
    # ------------------------------------------------------------------

    def _policy_for(self, scheme: str, host: str) -> Optional[RobotsPolicy]:
        with self._lock:
            policy = self._policies.get(host)
            if policy is not None and policy.is_fresh(self._clock(), self.ttl, self.negative_ttl):
                return policy
            future = self._inflight.get(host)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[host] = future

        if not owner:
            return future.result()

        policy = None
        try:
            policy = self._fetch(scheme, host)
        finally:
            with self._lock:
                self._inflight.pop(host, None)
                if policy is not None:
                    self._policies[host] = policy
            # Waiters fail open if the fetch blew up unexpectedly
            future.set_result(policy)
        return policy

    def _fetch(self, scheme: str, host: str) -> RobotsPolicy:
        robots_url = f"{scheme}://{host}/robots.txt"
        with self._lock:
            self.fetch_count += 1
        try:
            response = self.session.get(
                robots_url,
                headers={"User-Agent": self.user_agent},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            return self._failed(host, PolicyFetchError(host, e))

        if response.status_code >= 500:
            return self._failed(host, PolicyFetchError(host, f"HTTP {response.status_code}"))

        # 4xx means there is no robots.txt: everything is allowed
        body = response.text if response.status_code < 400 else ""
        try:
            parser = parse_rules(body)
        except (ValueError, UnicodeError) as e:
            return self._failed(host, PolicyFetchError(host, e))

        policy = RobotsPolicy(parser=parser, body=body, fetched_at=self._clock())
        logger.debug("Cached robots.txt for %s (%d bytes)", host, len(body))
        self._remember(host, policy)
        return policy

    def _failed(self, host: str, error: PolicyFetchError) -> RobotsPolicy:
        with self._lock:
            first = host not in self._failure_logged
            self._failure_logged.add(host)
        if first:
            logger.warning("%s (allowing host for %.0fs)", error, self.negative_ttl)
        policy = RobotsPolicy(parser=None, body="", fetched_at=self._clock(), failed=True)
        self._remember(host, policy)
        return policy

    # ------------------------------------------------------------------
    # Side-file persistence
    # ------------------------------------------------------------------

    def _load_file_cache(self) -> None:
        now = self._clock()
        loaded = 0
        for host, raw in self.storage.load().items():
            if not isinstance(raw, dict):
                continue
            try:
                fetched_at = _from_iso(raw.get("fetched_at", ""))
            except (TypeError, ValueError):
                continue
            self._file_entries[host] = raw
            failed = bool(raw.get("failed"))
            body = raw.get("body") or ""
            parser = None if failed else parse_rules(body)
            policy = RobotsPolicy(parser=parser, body=body, fetched_at=fetched_at, failed=failed)
            if policy.is_fresh(now, self.ttl, self.negative_ttl):
                self._policies[host] = policy
                loaded += 1
        if loaded:
            logger.info("Loaded %d robots policies from %s", loaded, self.storage.path)

    def _remember(self, host: str, policy: RobotsPolicy) -> None:
        if self._writer is None:
            return
        with self._lock:
            self._file_entries[host] = {
                "body": policy.body,
                "fetched_at": _to_iso(policy.fetched_at),
                "failed": policy.failed,
            }
        self._schedule_write()

    def _schedule_write(self) -> None:
        writer = self._writer
        if writer is None:
            return
        try:
            writer.submit(self._write_file)
        except RuntimeError:
            # Writer already shut down; the final flush covered this entry
            pass

    def _write_file(self) -> None:
        with self._lock:
            ours = dict(self._file_entries)
        # Other crawls may share the side file: keep their hosts and any
        # entry they refreshed more recently than we did
        merged = self.storage.load()
        for host, entry in ours.items():
            if _newer_or_equal(entry, merged.get(host)):
                merged[host] = entry
        try:
            self.storage.save(merged)
        except OSError as e:
            logger.warning("Could not write robots cache %s: %s", self.storage.path, e)
