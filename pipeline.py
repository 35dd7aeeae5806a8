#!/usr/bin/env python3
"""Main pipeline orchestrator: crawl a site, build a knowledge base, ask it questions.

Usage:
  python pipeline.py crawl https://example.com            # Crawl from a seed URL
  python pipeline.py crawl --urls seeds.txt --sitemap     # Seeds from a file + sitemap.xml

  python pipeline.py process                              # Raw HTML snapshots -> processed pages
  python pipeline.py prepare                              # Pages -> embeddings-ready chunks
  python pipeline.py prepare --from-processed             # Use processed pages instead of crawl results

  python pipeline.py embed --all                          # Embed every chunk
  python pipeline.py embed --chunk 3                      # Embed one chunk by index
  python pipeline.py embed "some text"                    # Embed a single text

  python pipeline.py search "refund policy" --top-k 5     # Similarity search
  python pipeline.py rag "What is the refund policy?"     # Retrieval-augmented answer
  python pipeline.py models                               # List available models

Ctrl-C during crawl or embed stops the run after in-flight items finish;
everything gathered so far is still written.
"""

import argparse
import logging
import signal
import sys
import threading
from typing import Optional

from dotenv import load_dotenv

from errors import SiteKBError, ValidationError
from inference.client import OllamaClient
from inference.models import ModelCapability, get_model_info, select_model
from settings import Settings

load_dotenv()

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def install_cancel_handlers(cancel_event: threading.Event) -> None:
    """SIGINT/SIGTERM set the shared cancellation event instead of killing the run."""

    def handler(signum, frame):
        if not cancel_event.is_set():
            logger.warning("Cancellation requested; finishing in-flight work and saving partial results")
        cancel_event.set()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


def build_settings(args) -> Settings:
    """Settings from the environment, overridden by any CLI flags that were given."""
    settings = Settings()
    overrides = {
        "data_dir": getattr(args, "data_dir", None),
        "fetch_workers": getattr(args, "workers", None),
        "max_pages": getattr(args, "max_pages", None),
        "host_delay": getattr(args, "delay", None),
        "chunk_max_tokens": getattr(args, "max_tokens", None),
        "min_chunk_words": getattr(args, "min_words", None),
        "embed_batch_size": getattr(args, "batch_size", None),
        "embed_concurrency": getattr(args, "concurrency", None),
        "embed_rate": getattr(args, "rate", None),
        "search_top_k": getattr(args, "top_k", None),
        "search_threshold": getattr(args, "threshold", None),
        "rag_context_size": getattr(args, "context_size", None),
        "rag_threshold": getattr(args, "similarity_threshold", None),
        "rag_max_context_chars": getattr(args, "max_context_length", None),
        "rag_timeout": getattr(args, "timeout", None),
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(settings, name, type(getattr(settings, name))(value))
    if getattr(args, "progressive", False):
        settings.rag_progressive = True
    settings.exclude_hosts += getattr(args, "exclude_host", None) or []
    settings.exclude_paths += getattr(args, "exclude_path", None) or []
    return settings


def make_client(settings: Settings) -> OllamaClient:
    return OllamaClient(settings.ollama_url, timeout=settings.inference_timeout)


def resolve_model(client: OllamaClient, configured: Optional[str], capability: ModelCapability) -> str:
    """Use the configured model, or pick one from what the service has installed."""
    if configured:
        return configured
    available = client.list_models()
    if not available:
        raise ValidationError("model", "no models found; install one with 'ollama pull <model-name>'")
    selected = select_model(available, capability)
    if not selected:
        raise ValidationError("model", f"no suitable {capability.value} model found")
    logger.info("Using %s model: %s", capability.value, selected)
    return selected


# ---------------------------------------------------------------------------
# CRAWL
# ---------------------------------------------------------------------------

def cmd_crawl(args):
    """Crawl from seed URLs and write raw snapshots plus the crawl results file."""
    from scrapers.crawler import Crawler, write_crawl_results
    from scrapers.discovery import discover_seeds
    from scrapers.fetcher import Fetcher, HostPacer
    from scrapers.frontier import Frontier
    from scrapers.robots import ComplianceCache, RobotsCacheFile

    settings = build_settings(args)
    settings.ensure_dirs()

    seeds = discover_seeds(args.urls, url_file=args.url_file, use_sitemap=args.sitemap)
    if not seeds:
        raise ValidationError("urls", "no seed URLs given (pass URLs or --urls FILE)")

    cancel_event = threading.Event()
    install_cancel_handlers(cancel_event)

    compliance = ComplianceCache(
        user_agent=settings.user_agent,
        ttl=settings.robots_ttl,
        negative_ttl=settings.robots_negative_ttl,
        storage=RobotsCacheFile(settings.robots_cache_path),
    )
    try:
        fetcher = Fetcher(
            compliance=compliance,
            pacer=HostPacer(min_delay=settings.host_delay),
            timeout=settings.fetch_timeout,
            retries=settings.fetch_retries,
            backoff=settings.fetch_backoff,
            snapshot_dir=settings.raw_html_dir,
            exclude_hosts=settings.exclude_hosts,
            exclude_paths=settings.exclude_paths,
            max_content_chars=settings.max_content_chars,
            user_agent=settings.user_agent,
            cancel_event=cancel_event,
        )
        frontier = Frontier(
            accept=fetcher.accepts,
            compliance=compliance,
            max_pages=settings.max_pages,
            same_host=not args.all_hosts,
            cancel_event=cancel_event,
        )
        frontier.seed(seeds)

        crawler = Crawler(fetcher, frontier, workers=settings.fetch_workers, cancel_event=cancel_event)
        documents = crawler.run()
        write_crawl_results(documents, settings.crawl_results_path)
    finally:
        compliance.close()


# ---------------------------------------------------------------------------
# PROCESS / PREPARE
# ---------------------------------------------------------------------------

def cmd_process(args):
    """Clean raw HTML snapshots into the processed-pages file."""
    from processors.content_extractor import ContentExtractor
    from scrapers.utils import save_records

    settings = build_settings(args)
    if not settings.raw_html_dir.exists():
        raise ValidationError("raw_html", f"directory not found: {settings.raw_html_dir}")
    pages = ContentExtractor().process_dir(settings.raw_html_dir)
    save_records(pages, settings.processed_pages_path)


def cmd_prepare(args):
    """Deduplicate pages and chunk them into the embeddings-ready file."""
    from processors.deduplicator import PageDeduplicator
    from processors.quality_filter import ChunkQualityFilter
    from vectorstore.chunker import Chunker
    from vectorstore.ingest import load_pages, prepare_chunks, write_chunks

    settings = build_settings(args)
    source = args.input or (
        settings.processed_pages_path if args.from_processed else settings.crawl_results_path
    )
    documents = load_pages(source)
    chunker = Chunker(
        max_tokens=settings.chunk_max_tokens,
        quality_filter=ChunkQualityFilter(min_words=settings.min_chunk_words),
    )
    chunks = prepare_chunks(documents, chunker, PageDeduplicator())
    write_chunks(chunks, args.output or settings.chunks_path)


# ---------------------------------------------------------------------------
# EMBED
# ---------------------------------------------------------------------------

def cmd_embed(args):
    """Embed chunks from the chunk file, or a single text given on the command line."""
    from vectorstore.embedder import EmbeddingPipeline
    from vectorstore.ingest import embed_chunks, load_chunks, select_chunks

    settings = build_settings(args)
    client = make_client(settings)

    if args.text and not args.file:
        text = " ".join(args.text)
        model = resolve_model(client, args.model or settings.embed_model, ModelCapability.EMBEDDING)
        vector = client.embedding(model, text)
        logger.info("Embedding vector (dimension: %d)", len(vector))
        print("[" + ", ".join(f"{v:.6f}" for v in vector) + "]")
        return

    chunks = load_chunks(args.file or settings.chunks_path)
    to_embed = select_chunks(chunks, embed_all=args.all, chunk_index=args.chunk)
    model = resolve_model(client, args.model or settings.embed_model, ModelCapability.EMBEDDING)

    cancel_event = threading.Event()
    install_cancel_handlers(cancel_event)
    pipeline = EmbeddingPipeline(
        client,
        model,
        workers=settings.embed_concurrency,
        batch_size=settings.embed_batch_size,
        rate=settings.embed_rate,
        cancel_event=cancel_event,
    )

    def progress(processed: int, total: int) -> None:
        logger.info("Embedding progress %d/%d (%3.0f%%)", processed, total, processed / total * 100)

    embed_chunks(to_embed, pipeline, output_path=args.out or settings.embeddings_path, progress=progress)


# ---------------------------------------------------------------------------
# SEARCH / RAG
# ---------------------------------------------------------------------------

def cmd_search(args):
    """Rank stored chunks against a query."""
    from rag.search import record_content, search_similar
    from vectorstore.store import VectorStore

    settings = build_settings(args)
    store = VectorStore.load(args.embeddings or settings.embeddings_path)
    client = make_client(settings)
    model = resolve_model(client, args.model or settings.embed_model, ModelCapability.EMBEDDING)

    query = " ".join(args.query)
    query_vector = client.embedding(model, query)
    results = search_similar(query_vector, store.records, settings.search_top_k, settings.search_threshold)

    print(f"\nSearch results for: \"{query}\"")
    print("=" * 50)
    if not results:
        print(f"No results found above similarity threshold {settings.search_threshold:.3f}")
        return

    for i, result in enumerate(results, 1):
        record = result.record
        print(f"\n[{i}] Chunk {record.chunk_index} (Similarity: {result.similarity:.4f})")
        print(f"    ID: {record.id}")
        content = record_content(record)
        if content:
            preview = content[:200].replace("\n", " ")
            print(f"    Content: {preview}{'...' if len(content) > 200 else ''}")
        if record.metadata:
            print(f"    Metadata: {record.metadata}")


def cmd_rag(args):
    """Answer a question from the stored chunks."""
    from rag.query_engine import RagEngine
    from vectorstore.store import VectorStore

    settings = build_settings(args)
    store = VectorStore.load(args.embeddings or settings.embeddings_path)
    client = make_client(settings)
    embed_model = resolve_model(client, settings.embed_model, ModelCapability.EMBEDDING)
    chat_model = resolve_model(client, args.model or settings.chat_model, ModelCapability.RAG)

    cancel_event = threading.Event()
    install_cancel_handlers(cancel_event)
    engine = RagEngine(
        client,
        store,
        embed_model=embed_model,
        chat_model=chat_model,
        context_size=settings.rag_context_size,
        threshold=settings.rag_threshold,
        max_context_chars=settings.rag_max_context_chars,
        progressive=settings.rag_progressive,
        timeout=settings.rag_timeout,
        cancel_event=cancel_event,
    )

    question = " ".join(args.question)
    if args.no_stream:
        result = engine.answer(question)
    else:
        print("Thinking...")
        result = engine.answer(question, sink=lambda chunk: print(chunk.message.content, end="", flush=True))
        print()

    if result.no_context:
        print(f"{result.answer} for question: {question}")
        print(
            f"Try lowering the similarity threshold (current: {result.plan.threshold:.2f}) "
            "or asking a different question."
        )
        return

    print("=" * 60)
    if args.no_stream:
        print(f"Answer: {result.answer}")

    logger.info(
        "Context used: %d chunks (threshold %.2f, %d characters); timings %s",
        len(result.results), result.plan.threshold, len(result.context), result.timings,
    )
    for i, used in enumerate(result.results, 1):
        logger.debug("  [%d] %s (similarity: %.3f)", i, used.record.id, used.similarity)


# ---------------------------------------------------------------------------
# MODELS
# ---------------------------------------------------------------------------

def cmd_models(args):
    """List the models the inference service has available."""
    settings = build_settings(args)
    models = make_client(settings).list_models()
    if not models:
        print("No models found. Install one with 'ollama pull <model-name>'")
        return
    print("Available models:")
    for name in models:
        info = get_model_info(name)
        if info:
            caps = ", ".join(c.value for c in info.capabilities)
            print(f"  - {name}  [{caps}] priority {info.priority}")
        else:
            print(f"  - {name}")


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Site knowledge base pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--data-dir", default=None, help="Data directory (default: $SITEKB_DATA_DIR or ./data)")
    subparsers = parser.add_subparsers(dest="command", help="Pipeline command")

    # Crawl
    crawl_parser = subparsers.add_parser("crawl", help="Crawl a site politely")
    crawl_parser.add_argument("urls", nargs="*", help="Seed URLs")
    crawl_parser.add_argument("--urls", dest="url_file", default=None, help="File with one seed URL per line")
    crawl_parser.add_argument("--sitemap", action="store_true", help="Also seed from each site's sitemap.xml")
    crawl_parser.add_argument("--workers", type=int, default=None, help="Concurrent fetch workers")
    crawl_parser.add_argument("--max-pages", type=int, default=None, help="Maximum URLs to admit")
    crawl_parser.add_argument("--delay", type=float, default=None, help="Minimum seconds between requests to one host")
    crawl_parser.add_argument("--exclude-host", action="append", help="Regex of hosts to skip (repeatable)")
    crawl_parser.add_argument("--exclude-path", action="append", help="Regex of paths to skip (repeatable)")
    crawl_parser.add_argument("--all-hosts", action="store_true", help="Follow links off the seed hosts")

    # Process
    subparsers.add_parser("process", help="Clean raw HTML snapshots into processed pages")

    # Prepare
    prepare_parser = subparsers.add_parser("prepare", help="Chunk pages into the embeddings-ready file")
    prepare_parser.add_argument("--input", default=None, help="Pages file (crawl results or processed pages)")
    prepare_parser.add_argument("--from-processed", action="store_true", help="Read the processed-pages file")
    prepare_parser.add_argument("--output", default=None, help="Chunk file to write")
    prepare_parser.add_argument("--max-tokens", type=int, default=None, help="Maximum estimated tokens per chunk")
    prepare_parser.add_argument("--min-words", type=int, default=None, help="Minimum words per chunk")

    # Embed
    embed_parser = subparsers.add_parser("embed", help="Generate embeddings")
    embed_parser.add_argument("text", nargs="*", help="Text to embed (when not using --file)")
    embed_parser.add_argument("--file", default=None, help="Embeddings-ready chunk file")
    embed_parser.add_argument("--all", action="store_true", help="Embed all chunks in the file")
    embed_parser.add_argument("--chunk", type=int, default=None, help="Embed one chunk index (0-based)")
    embed_parser.add_argument("--out", default=None, help="Embedding output file")
    embed_parser.add_argument("--model", default=None, help="Embedding model")
    embed_parser.add_argument("--batch-size", type=int, default=None, help="Chunks a worker takes at once")
    embed_parser.add_argument("--concurrency", type=int, default=None, help="Concurrent embedding workers")
    embed_parser.add_argument("--rate", type=float, default=None, help="Global requests per second (0 disables)")

    # Search
    search_parser = subparsers.add_parser("search", help="Semantic search over embeddings")
    search_parser.add_argument("query", nargs="+", help="Query text")
    search_parser.add_argument("--embeddings", default=None, help="Embedding output file")
    search_parser.add_argument("--model", default=None, help="Embedding model")
    search_parser.add_argument("--top-k", type=int, default=None, help="Number of results")
    search_parser.add_argument("--threshold", type=float, default=None, help="Minimum similarity (0-1)")

    # RAG
    rag_parser = subparsers.add_parser("rag", help="Answer a question with retrieved context")
    rag_parser.add_argument("question", nargs="+", help="Question text")
    rag_parser.add_argument("--embeddings", default=None, help="Embedding output file")
    rag_parser.add_argument("--model", default=None, help="Chat model")
    rag_parser.add_argument("--context-size", type=int, default=None, help="Context chunks to use")
    rag_parser.add_argument("--similarity-threshold", type=float, default=None, help="0 = auto")
    rag_parser.add_argument("--max-context-length", type=int, default=None, help="Maximum context characters")
    rag_parser.add_argument("--progressive", action="store_true", help="Progressive loading for large contexts")
    rag_parser.add_argument("--timeout", type=float, default=None, help="Answer timeout in seconds (0 = default)")
    rag_parser.add_argument("--no-stream", action="store_true", help="Wait for the complete answer")

    # Models
    subparsers.add_parser("models", help="List available models")

    return parser


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "crawl": cmd_crawl,
        "process": cmd_process,
        "prepare": cmd_prepare,
        "embed": cmd_embed,
        "search": cmd_search,
        "rag": cmd_rag,
        "models": cmd_models,
    }

    try:
        commands[args.command](args)
    except SiteKBError as e:
        logger.error("%s", e)
        sys.exit(1)
    except Exception as e:
        logger.exception("Pipeline error: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
