"""Unit tests for rag.query_engine: retrieval planning, context assembly and
the per-query state machine. The inference client is a MagicMock."""

from unittest.mock import MagicMock

import pytest

from errors import APIError, NetworkError, ValidationError
from inference.models import ChatResponse, Message
from rag.prompts import NO_CONTEXT_ANSWER
from rag.query_engine import QueryState, RagEngine, assemble, resolve_retrieval
from rag.search import SearchResult
from schemas.embedding import EmbeddingRecord
from vectorstore.store import VectorStore


def _result(id_: str, content: str, similarity: float = 0.9) -> SearchResult:
    return SearchResult(record=EmbeddingRecord(id=id_, content=content, embedding=[1.0]), similarity=similarity)


def _store(n: int = 3, vector=(1.0, 0.0)) -> VectorStore:
    return VectorStore([
        EmbeddingRecord(id=f"doc#chunk_{i}", chunk_index=i, content=f"Fact number {i} about refunds.", embedding=list(vector))
        for i in range(n)
    ])


def _client(answer: str = "Refunds take thirty days.") -> MagicMock:
    client = MagicMock()
    client.embedding.return_value = [1.0, 0.0]
    client.chat.return_value = ChatResponse(
        model="chat-model", message=Message(role="assistant", content=answer), done=True
    )
    client.chat_stream.return_value = client.chat.return_value
    return client


def _engine(client, store, **kwargs) -> RagEngine:
    return RagEngine(client, store, embed_model="embed-model", chat_model="chat-model", **kwargs)


class TestResolveRetrieval:
    def test_default_auto_threshold(self):
        plan = resolve_retrieval(3, 0.0)
        assert (plan.top_k, plan.threshold, plan.progressive) == (3, 0.3, False)

    def test_large_context_raises_auto_threshold(self):
        plan = resolve_retrieval(25, 0.0)
        assert (plan.top_k, plan.threshold) == (25, 0.5)

    def test_explicit_threshold_is_kept(self):
        assert resolve_retrieval(25, 0.8).threshold == 0.8

    def test_progressive(self):
        plan = resolve_retrieval(60, 0.0, progressive=True)
        assert (plan.top_k, plan.threshold, plan.progressive) == (20, 0.5, True)

    def test_progressive_minimum_top_k(self):
        assert resolve_retrieval(12, 0.0, progressive=True).top_k == 5

    def test_progressive_keeps_explicit_threshold(self):
        plan = resolve_retrieval(60, 0.8, progressive=True)
        assert (plan.top_k, plan.threshold) == (20, 0.8)

    def test_progressive_ignored_for_small_contexts(self):
        plan = resolve_retrieval(8, 0.0, progressive=True)
        assert (plan.top_k, plan.threshold, plan.progressive) == (8, 0.3, False)


class TestAssemble:
    def test_joins_in_rank_order(self):
        context = assemble("q", [_result("a", "alpha"), _result("b", "beta")])
        assert context.text == "alpha\n\nbeta"
        assert not context.truncated

    def test_budget_counts_separators(self):
        results = [_result(str(i), chr(97 + i) * 60) for i in range(3)]

        context = assemble("q", results, max_context_chars=150)

        # 60 + 2 + 60 = 122; 26 left is below the useful remainder
        assert len(context.parts) == 2
        assert len(context) == 122
        assert not context.truncated

    def test_truncates_last_chunk_to_fit(self):
        results = [_result(str(i), chr(97 + i) * 60) for i in range(3)]

        context = assemble("q", results, max_context_chars=150, min_remainder=10)

        assert context.truncated
        assert len(context) == 150
        assert context.parts[-1].endswith("...")

    @pytest.mark.parametrize("budget", [50, 120, 500, 1000])
    def test_never_exceeds_budget(self, budget):
        results = [_result(str(i), f"{i} " + "y" * (40 * i + 30)) for i in range(10)]
        assert len(assemble("q", results, max_context_chars=budget)) <= budget

    @pytest.mark.parametrize("min_remainder", [0, 1, 2])
    def test_tiny_remainder_still_fits_the_budget(self, min_remainder):
        results = [_result("a", "a" * 60), _result("b", "b" * 60)]

        # 60 + 2 leaves 2 characters, too few for "..."
        context = assemble("q", results, max_context_chars=64, min_remainder=min_remainder)

        assert len(context) <= 64
        assert context.parts == ["a" * 60]

    def test_skips_duplicates_and_empty_content(self):
        results = [
            _result("a", "Same text."),
            _result("b", "same   text."),
            _result("a", "Different text, same id."),
            _result("c", ""),
            _result("d", "Unique."),
        ]
        context = assemble("q", results)
        assert context.parts == ["Same text.", "Unique."]


class TestRagEngine:
    def test_answers_with_context(self):
        client = _client()
        engine = _engine(client, _store())

        result = engine.answer("How long do refunds take?")

        assert result.answer == "Refunds take thirty days."
        assert result.state == QueryState.DONE
        assert not result.no_context
        assert engine.history == [
            QueryState.IDLE,
            QueryState.EMBEDDING_QUERY,
            QueryState.SEARCHING,
            QueryState.ASSEMBLING_CONTEXT,
            QueryState.AWAITING_GENERATION,
            QueryState.DONE,
        ]
        model, prompt = client.chat.call_args.args
        assert model == "chat-model"
        assert "Fact number 0 about refunds." in prompt
        assert "Question: How long do refunds take?" in prompt
        assert set(result.timings) >= {"embed_ms", "search_ms", "generation_ms", "total_ms"}

    def test_no_context_skips_generation(self):
        client = _client()
        engine = _engine(client, _store(vector=(0.0, 1.0)))

        result = engine.answer("Unrelated question?")

        assert result.no_context
        assert result.answer == NO_CONTEXT_ANSWER
        assert result.state == QueryState.DONE
        assert engine.history == [QueryState.IDLE, QueryState.EMBEDDING_QUERY, QueryState.SEARCHING, QueryState.DONE]
        client.chat.assert_not_called()
        client.chat_stream.assert_not_called()

    def test_progressive_large_context(self):
        client = _client()
        engine = _engine(client, _store(n=40), context_size=60, progressive=True)

        result = engine.answer("Tell me everything about refunds")

        assert result.plan.top_k == 20
        assert result.plan.threshold == 0.5
        assert len(result.results) <= 20

    def test_context_respects_max_length(self):
        client = _client()
        engine = _engine(client, _store(n=30), context_size=30, max_context_chars=100)

        result = engine.answer("Refunds?")

        assert len(result.context) <= 100

    def test_streaming_forwards_the_sink(self):
        client = _client()
        sink = MagicMock()
        engine = _engine(client, _store(), timeout=45)

        engine.answer("Refunds?", sink=sink)

        client.chat.assert_not_called()
        kwargs = client.chat_stream.call_args.kwargs
        assert kwargs["sink"] is sink
        assert kwargs["timeout"] == 45

    def test_embedding_failure_moves_to_failed(self):
        client = _client()
        client.embedding.side_effect = NetworkError("send request", "connection refused")
        engine = _engine(client, _store())

        with pytest.raises(NetworkError):
            engine.answer("Refunds?")
        assert engine.state == QueryState.FAILED
        client.chat.assert_not_called()

    def test_generation_failure_moves_to_failed(self):
        client = _client()
        client.chat.side_effect = APIError(500, "model crashed")
        engine = _engine(client, _store())

        with pytest.raises(APIError):
            engine.answer("Refunds?")
        assert engine.state == QueryState.FAILED
        assert engine.history[-2:] == [QueryState.AWAITING_GENERATION, QueryState.FAILED]

    @pytest.mark.parametrize("question", ["", "   "])
    def test_empty_question_rejected_before_network(self, question):
        client = _client()
        with pytest.raises(ValidationError):
            _engine(client, _store()).answer(question)
        client.embedding.assert_not_called()

    def test_empty_model_rejected(self):
        client = _client()
        engine = RagEngine(client, _store(), embed_model="embed-model", chat_model="")
        with pytest.raises(ValidationError):
            engine.answer("Refunds?")
        client.embedding.assert_not_called()

    def test_engine_is_reusable(self):
        engine = _engine(_client(), _store())
        engine.answer("First?")
        result = engine.answer("Second?")
        assert result.state == QueryState.DONE
        assert engine.history[0] == QueryState.IDLE

    def test_engine_assemble_uses_its_budget(self):
        engine = _engine(_client(), _store(), max_context_chars=150)
        context = engine.assemble("q", [_result(str(i), chr(97 + i) * 60) for i in range(3)])
        assert len(context.parts) == 2
        assert len(context) == 122
