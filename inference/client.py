"""HTTP client for an Ollama-compatible inference service.

Three operations are used by the pipeline: chat (complete or streamed),
embedding, and model listing. Inputs are validated before any request is
made; transport failures raise ``NetworkError`` and non-2xx responses raise
``APIError``.
"""

import logging
import threading
import time
from typing import Callable, Optional

import orjson
import requests
from pydantic import ValidationError as SchemaError

from errors import APIError, NetworkError, ValidationError
from inference.models import (
    ChatRequest,
    ChatResponse,
    EmbeddingRequest,
    EmbeddingResponse,
    Message,
    ModelsResponse,
    StreamChunk,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_TIMEOUT = 120.0  # model loading can take a while
DEFAULT_STREAM_TIMEOUT = 300.0

StreamSink = Callable[[StreamChunk], None]


class OllamaClient:
    """Client for the chat, embeddings and tags endpoints."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def chat(self, model: str, prompt: str, timeout: Optional[float] = None) -> ChatResponse:
        """Send a single-turn chat request and return the completed response."""
        request = self._chat_request(model, prompt, stream=False)
        response = self._post("/api/chat", request.model_dump(), timeout or self.timeout)
        return self._parse(response, ChatResponse)

    def chat_stream(
        self,
        model: str,
        prompt: str,
        sink: Optional[StreamSink] = None,
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ChatResponse:
        """Stream a chat response, invoking ``sink`` once per chunk.

        The final chunk (``done=True``) carries the aggregate timing and token
        counts; the returned ``ChatResponse`` combines it with the full text.
        Malformed lines are skipped. Setting ``cancel_event`` stops reading,
        releases the connection and returns what arrived so far with
        ``done=False``.
        """
        request = self._chat_request(model, prompt, stream=True)
        budget = timeout or DEFAULT_STREAM_TIMEOUT
        deadline = time.monotonic() + budget
        response = self._post("/api/chat", request.model_dump(), budget, stream=True)

        parts: list[str] = []
        final: Optional[StreamChunk] = None
        try:
            for line in response.iter_lines():
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("Generation cancelled after %d chunks", len(parts))
                    return ChatResponse(model=model, message=Message(role="assistant", content="".join(parts)))
                if time.monotonic() > deadline:
                    raise NetworkError("read stream", f"timed out after {budget:.0f}s")
                if not line:
                    continue
                try:
                    chunk = StreamChunk.model_validate(orjson.loads(line))
                except (orjson.JSONDecodeError, SchemaError):
                    logger.debug("Skipping malformed stream line: %.80r", line)
                    continue

                if sink is not None:
                    sink(chunk)
                parts.append(chunk.message.content)
                if chunk.done:
                    final = chunk
                    break
        except requests.RequestException as e:
            raise NetworkError("read stream", e) from e
        finally:
            response.close()

        if final is None:
            raise NetworkError("incomplete response", "no final chunk received")

        return ChatResponse(
            model=final.model,
            created_at=final.created_at,
            message=Message(role="assistant", content="".join(parts)),
            done=True,
            total_duration=final.total_duration,
            load_duration=final.load_duration,
            prompt_eval_count=final.prompt_eval_count,
            prompt_eval_duration=final.prompt_eval_duration,
            eval_count=final.eval_count,
            eval_duration=final.eval_duration,
        )

    # ------------------------------------------------------------------
    # Embeddings / models
    # ------------------------------------------------------------------

    def embedding(self, model: str, text: str, timeout: Optional[float] = None) -> list[float]:
        """Embed one text and return its vector."""
        if not model:
            raise ValidationError("model", "model cannot be empty")
        if not text:
            raise ValidationError("text", "text cannot be empty")

        request = EmbeddingRequest(model=model, prompt=text)
        response = self._post("/api/embeddings", request.model_dump(), timeout or self.timeout)
        return self._parse(response, EmbeddingResponse).embedding

    def list_models(self) -> list[str]:
        """Names of the models the service has available."""
        try:
            response = self.session.get(f"{self.base_url}/api/tags", timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError("send request", e) from e
        self._raise_for_status(response)
        return [m.name for m in self._parse(response, ModelsResponse).models]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _chat_request(model: str, prompt: str, stream: bool) -> ChatRequest:
        if not model:
            raise ValidationError("model", "model cannot be empty")
        if not prompt:
            raise ValidationError("prompt", "prompt cannot be empty")
        return ChatRequest(
            model=model,
            messages=[Message(role="user", content=prompt)],
            stream=stream,
        )

    def _post(self, path: str, payload: dict, timeout: float, stream: bool = False) -> requests.Response:
        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                data=orjson.dumps(payload),
                headers={"Content-Type": "application/json"},
                timeout=timeout,
                stream=stream,
            )
        except requests.RequestException as e:
            raise NetworkError("send request", e) from e
        self._raise_for_status(response)
        return response

    @staticmethod
    def _raise_for_status(response: requests.Response) -> None:
        if response.status_code != 200:
            message = response.text
            response.close()
            raise APIError(response.status_code, message)

    @staticmethod
    def _parse(response: requests.Response, model):
        try:
            return model.model_validate(orjson.loads(response.content))
        except (orjson.JSONDecodeError, SchemaError) as e:
            raise NetworkError("unmarshal response", e) from e
