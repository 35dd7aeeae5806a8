"""Unit tests for inference.client and the model catalogue.

The requests session is a MagicMock; no real HTTP connections are made.
"""

import threading
from unittest.mock import MagicMock

import orjson
import pytest
import requests

from errors import APIError, NetworkError, ValidationError
from inference.client import OllamaClient
from inference.models import ModelCapability, get_model_info, select_model


def _json_response(payload, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = orjson.dumps(payload)
    resp.text = resp.content.decode()
    return resp


def _stream_response(lines) -> MagicMock:
    resp = MagicMock()
    resp.status_code = 200
    resp.iter_lines.return_value = iter(lines)
    return resp


def _line(content: str, done: bool = False, **extra) -> bytes:
    return orjson.dumps({"model": "m", "message": {"role": "assistant", "content": content}, "done": done, **extra})


def _client(session: MagicMock) -> OllamaClient:
    return OllamaClient("http://ollama.local:11434/", session=session)


class TestChat:
    def test_complete_response(self):
        session = MagicMock()
        session.post.return_value = _json_response(
            {"model": "m", "message": {"role": "assistant", "content": "Hi there"}, "done": True, "eval_count": 3}
        )

        response = _client(session).chat("m", "Hello")

        assert response.content == "Hi there"
        assert response.eval_count == 3
        url = session.post.call_args.args[0]
        assert url == "http://ollama.local:11434/api/chat"
        body = orjson.loads(session.post.call_args.kwargs["data"])
        assert body == {"model": "m", "messages": [{"role": "user", "content": "Hello"}], "stream": False}

    @pytest.mark.parametrize("model, prompt", [("", "Hello"), ("m", "")])
    def test_validation_happens_before_any_request(self, model, prompt):
        session = MagicMock()
        with pytest.raises(ValidationError):
            _client(session).chat(model, prompt)
        session.post.assert_not_called()

    def test_non_2xx_raises_api_error(self):
        session = MagicMock()
        session.post.return_value = _json_response({"error": "model not found"}, status_code=404)

        with pytest.raises(APIError) as exc_info:
            _client(session).chat("missing", "Hello")

        assert exc_info.value.status_code == 404
        assert "model not found" in exc_info.value.message

    def test_transport_failure_raises_network_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(NetworkError) as exc_info:
            _client(session).chat("m", "Hello")
        assert exc_info.value.operation == "send request"

    def test_unparseable_body_raises_network_error(self):
        session = MagicMock()
        resp = MagicMock()
        resp.status_code = 200
        resp.content = b"<html>proxy error</html>"
        session.post.return_value = resp

        with pytest.raises(NetworkError) as exc_info:
            _client(session).chat("m", "Hello")
        assert exc_info.value.operation == "unmarshal response"


class TestChatStream:
    def test_aggregates_chunks_and_skips_malformed_lines(self):
        session = MagicMock()
        session.post.return_value = _stream_response([
            _line("Hel"),
            b"not json at all",
            b"",
            _line("lo"),
            _line("", done=True, eval_count=7, total_duration=1000),
        ])
        received = []

        response = _client(session).chat_stream("m", "Hello", sink=received.append)

        assert response.content == "Hello"
        assert response.done
        assert response.eval_count == 7
        assert response.total_duration == 1000
        assert [c.message.content for c in received] == ["Hel", "lo", ""]
        assert received[-1].done
        assert session.post.call_args.kwargs["stream"] is True

    def test_stream_without_final_chunk_is_incomplete(self):
        session = MagicMock()
        session.post.return_value = _stream_response([_line("partial")])

        with pytest.raises(NetworkError) as exc_info:
            _client(session).chat_stream("m", "Hello")
        assert exc_info.value.operation == "incomplete response"

    def test_cancellation_returns_partial_output(self):
        cancel = threading.Event()
        session = MagicMock()
        session.post.return_value = _stream_response([_line("one "), _line("two "), _line("", done=True)])

        def sink(chunk):
            cancel.set()

        response = _client(session).chat_stream("m", "Hello", sink=sink, cancel_event=cancel)

        assert response.content == "one "
        assert not response.done
        session.post.return_value.close.assert_called()

    def test_read_error_raises_network_error(self):
        session = MagicMock()
        resp = MagicMock()
        resp.status_code = 200
        resp.iter_lines.side_effect = requests.ConnectionError("reset")
        session.post.return_value = resp

        with pytest.raises(NetworkError):
            _client(session).chat_stream("m", "Hello")


class TestEmbeddingAndModels:
    def test_embedding(self):
        session = MagicMock()
        session.post.return_value = _json_response({"embedding": [0.1, 0.2, 0.3]})

        vector = _client(session).embedding("embed", "some text")

        assert vector == [0.1, 0.2, 0.3]
        body = orjson.loads(session.post.call_args.kwargs["data"])
        assert body == {"model": "embed", "prompt": "some text"}
        assert session.post.call_args.args[0].endswith("/api/embeddings")

    @pytest.mark.parametrize("model, text", [("", "text"), ("embed", "")])
    def test_embedding_validation(self, model, text):
        session = MagicMock()
        with pytest.raises(ValidationError):
            _client(session).embedding(model, text)
        session.post.assert_not_called()

    def test_list_models(self):
        session = MagicMock()
        session.get.return_value = _json_response({"models": [{"name": "gemma3:4b"}, {"name": "nomic-embed-text"}]})

        assert _client(session).list_models() == ["gemma3:4b", "nomic-embed-text"]


class TestModelCatalogue:
    def test_chat_prefers_highest_priority(self):
        assert select_model(["llama3.1:8b", "gemma3:4b", "embeddinggemma:latest"]) == "gemma3:4b"

    def test_embedding(self):
        assert select_model(["gemma3:4b", "embeddinggemma:latest"], ModelCapability.EMBEDDING) == "embeddinggemma:latest"

    def test_embedding_falls_back_to_name(self):
        assert select_model(["llama3.1:8b", "nomic-embed-text"], ModelCapability.EMBEDDING) == "nomic-embed-text"

    def test_rag_prefers_fast_models(self):
        assert select_model(["gemma3:4b", "llama3.2:3b"], ModelCapability.RAG) == "llama3.2:3b"

    def test_rag_falls_back_to_chat(self):
        assert select_model(["gemma3:4b", "embeddinggemma:latest"], ModelCapability.RAG) == "gemma3:4b"

    def test_unknown_models(self):
        assert select_model(["nomic-embed-text", "mistral:7b"]) == "mistral:7b"

    def test_nothing_available(self):
        assert select_model([], ModelCapability.CHAT) == ""

    def test_get_model_info_matches_variants(self):
        assert get_model_info("gemma3:4b").priority == 95
        assert get_model_info("registry.local/gemma3:4b").name == "gemma3:4b"
        assert get_model_info("unknown:1b") is None
