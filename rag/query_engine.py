"""RAG query engine: embed the question, search, assemble a bounded context,
and hand it to the generation endpoint.

Per-query state machine::

    IDLE -> EMBEDDING_QUERY -> SEARCHING -> ASSEMBLING_CONTEXT
         -> AWAITING_GENERATION -> DONE

``FAILED`` is reachable from ``EMBEDDING_QUERY`` and ``AWAITING_GENERATION``
on an inference error, which is re-raised to the caller. ``SEARCHING`` (or
``ASSEMBLING_CONTEXT`` when no result has any content) goes straight to
``DONE`` with an explicit no-context outcome and no generation call.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from errors import InferenceError, ValidationError
from inference.client import OllamaClient, StreamSink
from inference.models import ChatResponse
from rag.prompts import NO_CONTEXT_ANSWER, build_answer_prompt
from rag.search import SearchResult, dedup_keys, record_content, search_similar
from vectorstore.store import VectorStore

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_SIZE = 3
DEFAULT_MAX_CONTEXT_CHARS = 8000
MIN_USEFUL_REMAINDER = 100
CONTEXT_SEPARATOR = "\n\n"
TRUNCATION_MARK = "..."

# Thresholds used when the caller leaves the threshold at 0 (auto)
AUTO_THRESHOLD = 0.3
AUTO_THRESHOLD_LARGE = 0.5
LARGE_CONTEXT_SIZE = 20
PROGRESSIVE_MIN_CONTEXT = 10
PROGRESSIVE_MIN_TOP_K = 5
PROGRESSIVE_THRESHOLD = 0.5


class QueryState(str, Enum):
    IDLE = "idle"
    EMBEDDING_QUERY = "embedding_query"
    SEARCHING = "searching"
    ASSEMBLING_CONTEXT = "assembling_context"
    AWAITING_GENERATION = "awaiting_generation"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    QueryState.IDLE: {QueryState.EMBEDDING_QUERY},
    QueryState.EMBEDDING_QUERY: {QueryState.SEARCHING, QueryState.FAILED},
    QueryState.SEARCHING: {QueryState.ASSEMBLING_CONTEXT, QueryState.DONE},
    QueryState.ASSEMBLING_CONTEXT: {QueryState.AWAITING_GENERATION, QueryState.DONE},
    QueryState.AWAITING_GENERATION: {QueryState.DONE, QueryState.FAILED},
    QueryState.DONE: set(),
    QueryState.FAILED: set(),
}


@dataclass
class RetrievalPlan:
    top_k: int
    threshold: float
    progressive: bool = False


def resolve_retrieval(
    context_size: int = DEFAULT_CONTEXT_SIZE,
    threshold: float = 0.0,
    progressive: bool = False,
) -> RetrievalPlan:
    """Work out how many results to retrieve and at which similarity threshold.

    A threshold of 0 means auto: 0.5 for context sizes above 20, else 0.3.
    Progressive mode on context sizes above 10 retrieves a third of the request
    (at least 5) and, when the threshold is auto, uses 0.5.
    """
    top_k = context_size
    effective = threshold
    use_progressive = progressive and context_size > PROGRESSIVE_MIN_CONTEXT

    if use_progressive:
        top_k = max(context_size // 3, PROGRESSIVE_MIN_TOP_K)
        if threshold == 0.0:
            effective = PROGRESSIVE_THRESHOLD

    if effective == 0.0:
        effective = AUTO_THRESHOLD_LARGE if context_size > LARGE_CONTEXT_SIZE else AUTO_THRESHOLD

    return RetrievalPlan(top_k=top_k, threshold=effective, progressive=use_progressive)


@dataclass
class RagContext:
    """Selected chunk texts in rank order; ``len(text) <= max_chars`` always holds."""
    query: str
    max_chars: int
    parts: list[str] = field(default_factory=list)
    results: list[SearchResult] = field(default_factory=list)
    truncated: bool = False

    @property
    def text(self) -> str:
        return CONTEXT_SEPARATOR.join(self.parts)

    def __len__(self) -> int:
        return len(self.text)


def assemble(
    query: str,
    results: list[SearchResult],
    max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
    min_remainder: int = MIN_USEFUL_REMAINDER,
) -> RagContext:
    """Build a size-bounded, deduplicated context from ranked results.

    Separators and the truncation mark count against the budget. A chunk that
    would overflow is cut to fit when more than ``min_remainder`` characters
    remain, and assembly stops there.
    """
    context = RagContext(query=query, max_chars=max_context_chars)
    # A cut chunk must at least hold the truncation mark
    min_remainder = max(min_remainder, len(TRUNCATION_MARK))
    total = 0
    seen: set[str] = set()

    for result in results:
        keys = dedup_keys(result.record)
        if any(k in seen for k in keys):
            continue
        seen.update(keys)

        content = record_content(result.record)
        if not content:
            continue

        separator = len(CONTEXT_SEPARATOR) if context.parts else 0
        remaining = max_context_chars - total - separator
        if remaining <= 0:
            break

        if len(content) > remaining:
            if remaining > min_remainder:
                content = content[: remaining - len(TRUNCATION_MARK)] + TRUNCATION_MARK
                context.parts.append(content)
                context.results.append(result)
                context.truncated = True
            break

        context.parts.append(content)
        context.results.append(result)
        total += separator + len(content)

    return context


@dataclass
class RagResult:
    """Complete result of a RAG query."""
    question: str
    answer: str
    state: QueryState
    plan: RetrievalPlan
    results: list[SearchResult] = field(default_factory=list)
    context: Optional[RagContext] = None
    no_context: bool = False
    model: str = ""
    generation: Optional[ChatResponse] = None
    timings: dict = field(default_factory=dict)  # stage -> milliseconds


class RagEngine:
    """Answers questions from a loaded vector store.

    One engine serves one query at a time; ``state`` and ``history`` describe
    the query in progress (or the last one).
    """

    def __init__(
        self,
        client: OllamaClient,
        store: VectorStore,
        embed_model: str,
        chat_model: str,
        context_size: int = DEFAULT_CONTEXT_SIZE,
        threshold: float = 0.0,
        max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS,
        progressive: bool = False,
        timeout: float = 0.0,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.client = client
        self.store = store
        self.embed_model = embed_model
        self.chat_model = chat_model
        self.context_size = context_size
        self.threshold = threshold
        self.max_context_chars = max_context_chars or DEFAULT_MAX_CONTEXT_CHARS
        self.progressive = progressive
        self.timeout = timeout
        self.cancel_event = cancel_event

        self.state = QueryState.IDLE
        self.history: list[QueryState] = [QueryState.IDLE]

    def _transition(self, new_state: QueryState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"invalid query state transition {self.state.value} -> {new_state.value}")
        logger.debug("Query state: %s -> %s", self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)

    def assemble(self, query: str, results: list[SearchResult]) -> RagContext:
        return assemble(query, results, self.max_context_chars)

    def answer(self, question: str, sink: Optional[StreamSink] = None) -> RagResult:
        """Run one query through the state machine.

        With a ``sink`` the answer is streamed and every chunk (including the
        final aggregate chunk) is forwarded as it arrives; without one a single
        completed response is requested.

        Raises:
            ValidationError: empty question or model, before any network call.
            InferenceError: embedding or generation failed (state is FAILED).
        """
        if not question or not question.strip():
            raise ValidationError("question", "question cannot be empty")
        if not self.embed_model:
            raise ValidationError("model", "embedding model cannot be empty")
        if not self.chat_model:
            raise ValidationError("model", "chat model cannot be empty")

        self.state = QueryState.IDLE
        self.history = [QueryState.IDLE]
        timings: dict[str, int] = {}
        t_start = time.time()
        plan = resolve_retrieval(self.context_size, self.threshold, self.progressive)
        if plan.progressive:
            logger.info(
                "Using progressive context loading: starting with %d chunks (threshold: %.2f)",
                plan.top_k, plan.threshold,
            )

        # Embed the question
        self._transition(QueryState.EMBEDDING_QUERY)
        t = time.time()
        try:
            query_vector = self.client.embedding(self.embed_model, question)
        except InferenceError:
            self._transition(QueryState.FAILED)
            raise
        timings["embed_ms"] = int((time.time() - t) * 1000)

        # Search
        self._transition(QueryState.SEARCHING)
        t = time.time()
        results = search_similar(query_vector, self.store.records, plan.top_k, plan.threshold)
        timings["search_ms"] = int((time.time() - t) * 1000)
        logger.info("Search found %d results with threshold %.2f", len(results), plan.threshold)

        if not results:
            self._transition(QueryState.DONE)
            timings["total_ms"] = int((time.time() - t_start) * 1000)
            return RagResult(
                question=question, answer=NO_CONTEXT_ANSWER, state=self.state,
                plan=plan, no_context=True, timings=timings,
            )

        # Assemble
        self._transition(QueryState.ASSEMBLING_CONTEXT)
        t = time.time()
        context = self.assemble(question, results)
        timings["context_ms"] = int((time.time() - t) * 1000)

        if not context.parts:
            logger.warning("Found similar embeddings but none carry content for the context")
            self._transition(QueryState.DONE)
            timings["total_ms"] = int((time.time() - t_start) * 1000)
            return RagResult(
                question=question, answer=NO_CONTEXT_ANSWER, state=self.state,
                plan=plan, results=results, context=context, no_context=True, timings=timings,
            )

        logger.info(
            "Context built: %d characters, %d chunks (max %d)",
            len(context), len(context.parts), self.max_context_chars,
        )

        # Generate
        self._transition(QueryState.AWAITING_GENERATION)
        prompt = build_answer_prompt(question, context.text)
        timeout = self.timeout if self.timeout > 0 else None
        t = time.time()
        try:
            if sink is not None:
                response = self.client.chat_stream(
                    self.chat_model, prompt, sink=sink, timeout=timeout,
                    cancel_event=self.cancel_event,
                )
            else:
                response = self.client.chat(self.chat_model, prompt, timeout=timeout)
        except InferenceError:
            self._transition(QueryState.FAILED)
            raise
        timings["generation_ms"] = int((time.time() - t) * 1000)
        timings["total_ms"] = int((time.time() - t_start) * 1000)

        self._transition(QueryState.DONE)
        return RagResult(
            question=question,
            answer=response.content,
            state=self.state,
            plan=plan,
            results=context.results,
            context=context,
            model=self.chat_model,
            generation=response,
            timings=timings,
        )
