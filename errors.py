"""Exception taxonomy shared by the crawl, embedding and RAG stages.

Network-class failures while fetching pages and embedding chunks are recorded
per item by the workers; validation and inference errors raised at the
boundary propagate to the caller.
"""

from typing import Optional


class SiteKBError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(SiteKBError):
    """Input rejected before any network activity."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"validation error for {field}: {message}")


class FetchError(SiteKBError):
    """Permanent failure to fetch a page (non-2xx, exhausted retries)."""

    def __init__(self, url: str, reason: str, status_code: Optional[int] = None):
        self.url = url
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"fetch failed for {url}: {reason}")


class PolicyFetchError(SiteKBError):
    """The robots policy for a host could not be fetched or parsed."""

    def __init__(self, host: str, cause: object):
        self.host = host
        self.cause = cause
        super().__init__(f"could not fetch robots.txt for {host}: {cause}")


class InferenceError(SiteKBError):
    """Failure talking to the inference service (embedding or generation)."""


class NetworkError(InferenceError):
    """Transport-level failure during an inference call."""

    def __init__(self, operation: str, cause: object):
        self.operation = operation
        self.cause = cause
        super().__init__(f"network error during {operation}: {cause}")


class APIError(InferenceError):
    """Non-2xx response from the inference service."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"API request failed with status {status_code}: {message}")
