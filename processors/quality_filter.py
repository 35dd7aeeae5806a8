"""Quality filter for chunk text.

Filters out:
- Chunks shorter than a minimum word count
- Chunks dominated by boilerplate/navigation phrases
- Chunks whose tokens are mostly navigation markers (links, separators, menu words)

The filter is a plain predicate returning a drop reason (empty string to keep),
so the Chunker accepts any ``Callable[[str], str]`` with the same contract.
"""

import logging
import re
from typing import Callable, Iterable, Optional

logger = logging.getLogger(__name__)

QualityPredicate = Callable[[str], str]

DEFAULT_BOILERPLATE_PHRASES = (
    "skip to content",
    "table of contents",
    "cookie policy",
    "privacy policy",
    "terms of service",
    "subscribe to newsletter",
    "all rights reserved",
    "share this",
    "related posts",
    "read more",
    "leave a comment",
)

DEFAULT_NAV_MARKERS = frozenset({
    "home", "menu", "search", "login", "logout", "next", "previous", "prev",
    "back", "top", "|", "»", "«", "›", "‹", ">", "<", "→", "←", "·", "•",
})

_URLISH = re.compile(r"^(https?://|/|www\.)", re.IGNORECASE)


class ChunkQualityFilter:
    """Default low-quality chunk predicate."""

    def __init__(
        self,
        min_words: int = 8,
        boilerplate_phrases: Iterable[str] = DEFAULT_BOILERPLATE_PHRASES,
        max_boilerplate_hits: int = 3,
        nav_markers: Iterable[str] = DEFAULT_NAV_MARKERS,
        max_nav_ratio: float = 0.3,
    ):
        """Initialize the filter.

        Args:
            min_words: Minimum word count to keep a chunk.
            boilerplate_phrases: Lowercase phrases that signal page chrome.
            max_boilerplate_hits: Distinct phrase hits at which a chunk is dropped.
            nav_markers: Tokens counted as navigation markers.
            max_nav_ratio: Maximum share of navigation-marker tokens (0-1).
        """
        self.min_words = min_words
        self.boilerplate_phrases = [p.lower() for p in boilerplate_phrases]
        self.max_boilerplate_hits = max_boilerplate_hits
        self.nav_markers = frozenset(m.lower() for m in nav_markers)
        self.max_nav_ratio = max_nav_ratio

    def __call__(self, text: str) -> str:
        """Return the drop reason for ``text``, or an empty string to keep it."""
        words = text.split()
        if len(words) < self.min_words:
            return "too_short"

        if self._boilerplate_hits(text) >= self.max_boilerplate_hits:
            return "boilerplate"

        if self._nav_ratio(words) > self.max_nav_ratio:
            return "navigation"

        return ""

    def _boilerplate_hits(self, text: str) -> int:
        text_lower = text.lower()
        return sum(1 for phrase in self.boilerplate_phrases if phrase in text_lower)

    def _nav_ratio(self, words: list[str]) -> float:
        if not words:
            return 0.0
        markers = sum(
            1 for w in words
            if w.lower().strip(".,:;") in self.nav_markers or _URLISH.match(w)
        )
        return markers / len(words)


def filter_texts(
    texts: list[str], predicate: Optional[QualityPredicate] = None
) -> tuple[list[str], dict[str, int]]:
    """Apply a quality predicate to a list of texts.

    Returns:
        (kept texts, {reason: count} for the dropped ones)
    """
    predicate = predicate or ChunkQualityFilter()
    kept = []
    removed_reasons: dict[str, int] = {}
    for text in texts:
        reason = predicate(text)
        if reason:
            removed_reasons[reason] = removed_reasons.get(reason, 0) + 1
            continue
        kept.append(text)
    logger.debug("Quality filter: kept %d / %d. Removed: %s", len(kept), len(texts), removed_reasons)
    return kept, removed_reasons
