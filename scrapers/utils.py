"""Shared crawl utilities: URL normalization, exclusion rules, HTML extraction, JSON IO."""

import logging
import re
from pathlib import Path
from typing import Iterable, Optional, Union
from urllib.parse import urljoin, urlparse, urlunparse

import orjson
from bs4 import BeautifulSoup, Tag
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    "User-Agent": "sitekb-crawler/1.0 (knowledge base research bot)",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

# Static assets and other non-content URLs
_SKIP_EXTENSIONS = re.compile(
    r"\.(pdf|jpg|jpeg|png|gif|css|js|ico|svg|woff2?|zip)$", re.IGNORECASE
)
_SKIP_PATHS = re.compile(r"/(wp-admin|wp-content|feed|rss)(/|$)", re.IGNORECASE)

_CONTENT_SELECTORS = ["main", "article", "[role='main']", ".content", "#content"]
_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


# ---------------------------------------------------------------------------
# URLs
# ---------------------------------------------------------------------------

def normalize_url(url: str, base_url: Optional[str] = None) -> str:
    """Normalize a URL: resolve relative, lowercase scheme/host, drop fragment,
    collapse trailing slashes.

    Returns an empty string for anything that is not an absolute http(s) URL.
    Normalizing an already-normalized URL returns it unchanged.
    """
    url = (url or "").strip()
    if not url:
        return ""
    if base_url:
        url = urljoin(base_url, url)
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https") or not parsed.netloc:
        return ""
    path = parsed.path.rstrip("/") or "/"
    return urlunparse((scheme, parsed.netloc.lower(), path, parsed.params, parsed.query, ""))


def host_key(url: str) -> str:
    """Host part of a URL, used as the scheme-agnostic cache key."""
    return urlparse(url).netloc.lower()


def is_crawlable(
    url: str,
    exclude_hosts: Iterable[str] = (),
    exclude_paths: Iterable[str] = (),
) -> bool:
    """Return False for assets, admin/feed paths, fragment and mailto links,
    and URLs on excluded hosts or paths (regexes, case-insensitive)."""
    if not url or "#" in url or url.lower().startswith("mailto:"):
        return False
    parsed = urlparse(url)
    if parsed.scheme and parsed.scheme.lower() not in ("http", "https"):
        return False
    if _SKIP_EXTENSIONS.search(parsed.path) or _SKIP_PATHS.search(parsed.path):
        return False
    for pattern in exclude_hosts:
        if re.search(pattern, parsed.netloc, re.IGNORECASE):
            return False
    for pattern in exclude_paths:
        if re.search(pattern, parsed.path, re.IGNORECASE):
            return False
    return True


def sanitize_filename(url: str) -> str:
    """Make a filesystem-safe name from a URL."""
    return _UNSAFE_FILENAME_CHARS.sub("_", url)


def read_url_file(path: Union[str, Path]) -> list[str]:
    """Return the non-empty trimmed lines of a URL list file."""
    lines = Path(path).read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip()]


# ---------------------------------------------------------------------------
# HTML extraction
# ---------------------------------------------------------------------------

def parse_page(html: str, url: str, max_chars: int = 50_000) -> tuple[str, str, list[str]]:
    """Parse an HTML page once and return (title, text, links).

    Links are collected from the whole document before the content region is
    stripped of navigation, so site menus still feed the frontier.
    """
    soup = BeautifulSoup(html, "lxml")
    links = _collect_links(soup, url)
    title, text = _extract_from_soup(soup)
    if len(text) > max_chars:
        text = text[:max_chars]
    return title, text, links


def _collect_links(soup: BeautifulSoup, base_url: str) -> list[str]:
    seen: set[str] = set()
    links = []
    for a_tag in soup.find_all("a", href=True):
        href = a_tag["href"].strip()
        if not href or href.startswith("#"):
            continue
        full_url = normalize_url(href, base_url)
        if full_url and full_url not in seen:
            seen.add(full_url)
            links.append(full_url)
    return links


def _extract_from_soup(soup: BeautifulSoup) -> tuple[str, str]:
    title = ""
    title_tag = soup.find("title")
    if title_tag:
        title = title_tag.get_text(strip=True)
    if not title:
        h1 = soup.find("h1")
        if h1:
            title = h1.get_text(strip=True)

    # Find main content area
    content_area = None
    for selector in _CONTENT_SELECTORS:
        content_area = soup.select_one(selector)
        if content_area:
            break
    if not content_area:
        content_area = soup.find("body")
    if not content_area:
        return title, ""

    # Remove unwanted elements
    for tag_name in ["nav", "header", "footer", "aside", "script", "style", "noscript"]:
        for tag in content_area.find_all(tag_name):
            tag.decompose()

    # Remove cookie banners, overlays, etc.
    for class_pattern in ["cookie", "banner", "popup", "modal", "overlay", "sidebar"]:
        for tag in content_area.find_all(class_=re.compile(class_pattern, re.I)):
            tag.decompose()

    text = _extract_structured_text(content_area)
    return title, text.strip()


def _extract_structured_text(element: Tag) -> str:
    """Extract text from an element, keeping headings, lists and tables readable."""
    parts = []

    for child in element.children:
        if isinstance(child, str):
            text = child.strip()
            if text:
                parts.append(text)
            continue

        if not isinstance(child, Tag):
            continue

        tag = child.name

        if tag == "pre":
            parts.append(f"\n```\n{child.get_text()}\n```\n")

        elif tag == "table":
            parts.append(_extract_table(child))

        elif tag in ("h1", "h2", "h3", "h4", "h5", "h6"):
            parts.append(f"\n{child.get_text(strip=True)}\n")

        elif tag in ("ul", "ol"):
            for li in child.find_all("li", recursive=False):
                parts.append(f"- {li.get_text(' ', strip=True)}")

        # Containers: recurse
        elif tag in ("p", "div", "section", "article", "main", "blockquote"):
            inner = _extract_structured_text(child)
            if inner.strip():
                parts.append(inner)

        else:
            text = child.get_text(" ", strip=True)
            if text:
                parts.append(text)

    return "\n".join(parts)


def _extract_table(table: Tag) -> str:
    """Extract a table as markdown."""
    rows = []
    for tr in table.find_all("tr"):
        cells = [cell.get_text(strip=True) for cell in tr.find_all(["th", "td"])]
        if cells:
            rows.append("| " + " | ".join(cells) + " |")

    if not rows:
        return ""

    if len(rows) > 1:
        num_cols = rows[0].count("|") - 1
        separator = "| " + " | ".join(["---"] * num_cols) + " |"
        rows.insert(1, separator)

    return "\n" + "\n".join(rows) + "\n"


# ---------------------------------------------------------------------------
# JSON artifacts
# ---------------------------------------------------------------------------

def save_json(data, path: Union[str, Path]) -> Path:
    """Write JSON atomically (temp file + rename), creating parent dirs."""
    filepath = Path(path)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    tmp = filepath.with_name(filepath.name + ".tmp")
    tmp.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2))
    tmp.replace(filepath)
    return filepath


def save_records(records: list, path: Union[str, Path]) -> Path:
    """Save a list of Pydantic model instances (or plain dicts) to a JSON file."""
    data = [r.model_dump(mode="json") if isinstance(r, BaseModel) else r for r in records]
    filepath = save_json(data, path)
    logger.info("Saved %d records to %s", len(records), filepath)
    return filepath


def load_records(path: Union[str, Path]) -> list[dict]:
    """Load records from a JSON file. A missing file yields an empty list."""
    filepath = Path(path)
    if not filepath.exists():
        return []
    data = orjson.loads(filepath.read_bytes())
    return data if isinstance(data, list) else [data]
