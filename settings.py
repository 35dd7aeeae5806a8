"""Runtime configuration for the crawl → chunk → embed → RAG pipeline.

Every field defaults from an environment variable so a ``.env`` file next to
``pipeline.py`` (loaded by the entry point) is enough to configure a run.
Components never read the environment themselves; they receive these values
through their constructors.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_str(name: str, default: str) -> str:
    return os.environ.get(name, default)


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, default))


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    # ------------------------------------------------------------------
    # Inference service
    # ------------------------------------------------------------------
    ollama_url: str = field(default_factory=lambda: _env_str("OLLAMA_URL", "http://localhost:11434"))
    embed_model: str = field(default_factory=lambda: _env_str("EMBED_MODEL", ""))
    chat_model: str = field(default_factory=lambda: _env_str("CHAT_MODEL", ""))
    inference_timeout: float = field(default_factory=lambda: _env_float("INFERENCE_TIMEOUT", 120.0))

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    data_dir: Path = field(default_factory=lambda: Path(_env_str("SITEKB_DATA_DIR", "data")))

    # ------------------------------------------------------------------
    # Crawl
    # ------------------------------------------------------------------
    user_agent: str = field(
        default_factory=lambda: _env_str("USER_AGENT", "sitekb-crawler/1.0 (knowledge base research bot)")
    )
    fetch_workers: int = field(default_factory=lambda: _env_int("FETCH_WORKERS", 4))
    fetch_timeout: float = field(default_factory=lambda: _env_float("FETCH_TIMEOUT", 20.0))
    fetch_retries: int = field(default_factory=lambda: _env_int("FETCH_RETRIES", 3))
    fetch_backoff: float = field(default_factory=lambda: _env_float("FETCH_BACKOFF", 0.5))
    host_delay: float = field(default_factory=lambda: _env_float("HOST_DELAY", 0.5))
    max_pages: int = field(default_factory=lambda: _env_int("MAX_PAGES", 500))
    max_content_chars: int = field(default_factory=lambda: _env_int("MAX_CONTENT_CHARS", 50_000))
    robots_ttl: float = field(default_factory=lambda: _env_float("ROBOTS_TTL", 30 * 60))
    robots_negative_ttl: float = field(default_factory=lambda: _env_float("ROBOTS_NEGATIVE_TTL", 10 * 60))
    exclude_hosts: list[str] = field(default_factory=lambda: _env_list("EXCLUDE_HOSTS"))
    exclude_paths: list[str] = field(default_factory=lambda: _env_list("EXCLUDE_PATHS"))

    # ------------------------------------------------------------------
    # Chunking
    # ------------------------------------------------------------------
    chunk_max_tokens: int = field(default_factory=lambda: _env_int("CHUNK_MAX_TOKENS", 500))
    min_chunk_words: int = field(default_factory=lambda: _env_int("MIN_CHUNK_WORDS", 8))

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------
    embed_batch_size: int = field(default_factory=lambda: _env_int("EMBED_BATCH_SIZE", 10))
    embed_concurrency: int = field(default_factory=lambda: _env_int("EMBED_CONCURRENCY", 4))
    embed_rate: float = field(default_factory=lambda: _env_float("EMBED_RATE", 5.0))

    # ------------------------------------------------------------------
    # Search / RAG
    # ------------------------------------------------------------------
    search_top_k: int = field(default_factory=lambda: _env_int("SEARCH_TOP_K", 5))
    search_threshold: float = field(default_factory=lambda: _env_float("SEARCH_THRESHOLD", 0.7))
    rag_context_size: int = field(default_factory=lambda: _env_int("RAG_CONTEXT_SIZE", 3))
    rag_threshold: float = field(default_factory=lambda: _env_float("RAG_THRESHOLD", 0.0))
    rag_max_context_chars: int = field(default_factory=lambda: _env_int("RAG_MAX_CONTEXT_CHARS", 8000))
    rag_progressive: bool = field(default_factory=lambda: _env_bool("RAG_PROGRESSIVE", False))
    rag_timeout: float = field(default_factory=lambda: _env_float("RAG_TIMEOUT", 0.0))

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    @property
    def raw_html_dir(self) -> Path:
        return self.data_dir / "raw_html"

    @property
    def crawl_results_path(self) -> Path:
        return self.data_dir / "crawl_results.json"

    @property
    def robots_cache_path(self) -> Path:
        return self.data_dir / "robots_cache.json"

    @property
    def processed_pages_path(self) -> Path:
        return self.data_dir / "processed" / "processed_pages.json"

    @property
    def chunks_path(self) -> Path:
        return self.data_dir / "embeddings" / "embeddings_ready.json"

    @property
    def embeddings_path(self) -> Path:
        return self.data_dir / "embeddings" / "embeddings.json"

    def ensure_dirs(self) -> None:
        """Create the data directory tree if it does not exist."""
        for path in (
            self.data_dir,
            self.raw_html_dir,
            self.processed_pages_path.parent,
            self.chunks_path.parent,
        ):
            path.mkdir(parents=True, exist_ok=True)
