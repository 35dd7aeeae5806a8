"""Content extractor for raw HTML snapshots.

Turns the crawler's raw HTML directory into processed pages: page chrome is
removed, share/tag/copyright trailers are stripped, whitespace is collapsed,
and structured data (JSON-LD, Open Graph, canonical URL, title) is kept in
``meta`` so later stages can recover the page URL.
"""

import logging
import re
from pathlib import Path
from typing import Union

import orjson
from bs4 import BeautifulSoup

from schemas.page import ProcessedPage

logger = logging.getLogger(__name__)

_UNWANTED_TAGS = ["script", "style", "nav", "header", "footer", "aside", "form", "iframe", "noscript"]
_UNWANTED_CLASSES = ["sidebar", "widget", "advertisement", "social-share"]


class ContentExtractor:
    """Cleans raw HTML pages into plain text plus structured metadata."""

    def __init__(self):
        # Trailers that run to the end of their line
        self._strip_patterns = [
            re.compile(pattern, re.IGNORECASE)
            for pattern in (
                r"Share this:.*",
                r"Like this:.*",
                r"Related posts:.*",
                r"Tags:.*",
                r"Categories:.*",
                r"Copyright.*",
                r"All rights reserved.*",
            )
        ]

    def clean_html(self, html: str) -> str:
        """Strip page chrome and return the remaining text, whitespace-collapsed."""
        soup = BeautifulSoup(html, "lxml")
        for tag in soup.find_all(_UNWANTED_TAGS):
            tag.decompose()
        for cls in _UNWANTED_CLASSES:
            for tag in soup.find_all(class_=cls):
                tag.decompose()
        return self.clean_text(soup.get_text("\n"))

    def clean_text(self, text: str) -> str:
        for pattern in self._strip_patterns:
            text = pattern.sub("", text)
        return re.sub(r"\s+", " ", text).strip()

    def extract_structured_data(self, html: str) -> dict:
        """JSON-LD blocks, Open Graph properties, canonical URL and title."""
        soup = BeautifulSoup(html, "lxml")
        meta: dict = {}

        json_ld = []
        for script in soup.find_all("script", type="application/ld+json"):
            raw = script.get_text().strip()
            if not raw:
                continue
            try:
                json_ld.append(orjson.loads(raw))
            except orjson.JSONDecodeError:
                logger.debug("Skipping malformed JSON-LD block")
        if json_ld:
            meta["json_ld"] = json_ld

        open_graph = {}
        for tag in soup.find_all("meta"):
            prop = tag.get("property") or ""
            if prop.startswith("og:"):
                open_graph[prop[3:]] = tag.get("content", "")
        if open_graph:
            meta["open_graph"] = open_graph

        canonical = soup.find("link", rel="canonical")
        if canonical and canonical.get("href"):
            meta["canonical_url"] = canonical["href"].strip()

        title_tag = soup.find("title")
        if title_tag and title_tag.get_text(strip=True):
            meta["title"] = title_tag.get_text(strip=True)

        return meta

    def process_file(self, path: Union[str, Path]) -> ProcessedPage:
        filepath = Path(path)
        html = filepath.read_text(encoding="utf-8", errors="replace")
        return ProcessedPage(
            file=filepath.name,
            content=self.clean_html(html),
            meta=self.extract_structured_data(html),
        )

    def process_dir(self, raw_dir: Union[str, Path]) -> list[ProcessedPage]:
        """Process every ``*.html`` snapshot in a directory, in name order."""
        pages = []
        for filepath in sorted(Path(raw_dir).glob("*.html")):
            try:
                pages.append(self.process_file(filepath))
            except OSError as e:
                logger.warning("Could not read %s: %s", filepath, e)
        logger.info("Processed %d raw HTML files from %s", len(pages), raw_dir)
        return pages
