"""Seed discovery: URL list files and sitemap.xml."""

import logging
from pathlib import Path
from typing import Iterable, Optional, Union
from urllib.parse import urlparse

import requests
from bs4 import BeautifulSoup

from scrapers.utils import DEFAULT_HEADERS, normalize_url, read_url_file

logger = logging.getLogger(__name__)


def sitemap_url_for(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}/sitemap.xml"


def parse_sitemap(xml: str) -> tuple[list[str], list[str]]:
    """Split a sitemap document into (page URLs, nested sitemap URLs)."""
    soup = BeautifulSoup(xml, "xml")
    pages, nested = [], []
    for loc in soup.find_all("loc"):
        value = loc.get_text(strip=True)
        if not value:
            continue
        if loc.parent is not None and loc.parent.name == "sitemap":
            nested.append(value)
        else:
            pages.append(value)
    return pages, nested


class SitemapReader:
    """Reads page URLs from a sitemap, following sitemap indexes one level deep."""

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 20.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def read(self, sitemap_url: str) -> list[str]:
        xml = self._get(sitemap_url)
        if xml is None:
            return []
        pages, nested = parse_sitemap(xml)
        for child_url in nested:
            child = self._get(child_url)
            if child is None:
                continue
            child_pages, _ = parse_sitemap(child)
            pages.extend(child_pages)
        logger.info("Found %d URLs in %s", len(pages), sitemap_url)
        return pages

    def _get(self, url: str) -> Optional[str]:
        try:
            response = self.session.get(url, headers=DEFAULT_HEADERS, timeout=self.timeout)
        except requests.RequestException as e:
            logger.warning("Could not fetch sitemap %s: %s", url, e)
            return None
        if response.status_code != 200:
            logger.debug("No sitemap at %s (HTTP %d)", url, response.status_code)
            return None
        return response.text


def discover_seeds(
    urls: Iterable[str] = (),
    url_file: Optional[Union[str, Path]] = None,
    use_sitemap: bool = False,
    reader: Optional[SitemapReader] = None,
) -> list[str]:
    """Collect seed URLs from explicit URLs, a URL list file, and the sites' sitemaps.

    Seeds are normalized and de-duplicated in first-seen order.
    """
    candidates = list(urls)
    if url_file:
        candidates.extend(read_url_file(url_file))

    if use_sitemap:
        reader = reader or SitemapReader()
        sitemaps = dict.fromkeys(sitemap_url_for(u) for u in candidates if normalize_url(u))
        for sitemap in sitemaps:
            candidates.extend(reader.read(sitemap))

    seeds = []
    seen: set[str] = set()
    for url in candidates:
        normalized = normalize_url(url)
        if normalized and normalized not in seen:
            seen.add(normalized)
            seeds.append(normalized)
    return seeds
