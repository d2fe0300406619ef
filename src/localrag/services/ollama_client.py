"""
Ollama HTTP client for embeddings and streamed chat.

Endpoints:
- POST /api/embeddings  {"model", "prompt"} -> {"embedding": [...]}
- POST /api/chat        {"model", "messages", "stream": true} -> NDJSON lines
- GET  /api/tags        -> {"models": [{"name": ...}, ...]}
"""

import json
import threading
from typing import Any, Dict, Iterator, List, Optional

import httpx
import numpy as np

from ..localrag_exceptions import EmbeddingProviderError
from ..logging_config import configure_logger_for_debug_trace

logger = configure_logger_for_debug_trace(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


class OllamaClient:
    """
    Thin synchronous wrapper around the Ollama REST API.

    ::: This is-in-layer Infrastructure-Layer.
    ::: This is thread-safe.

    Embedding calls are serialized (one request in flight) and every call
    is bounded by the configured timeout. Failures of any kind surface as
    EmbeddingProviderError.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_OLLAMA_URL,
        timeout: float = 60.0,
        client: Optional[httpx.Client] = None,
    ):
        """
        Args:
            base_url: Ollama server URL
            timeout: Seconds allowed per request
            client: Pre-built httpx client (tests pass one with a MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))
        self._embed_lock = threading.Lock()

    def _url(self, endpoint: str) -> str:
        return f"{self.base_url}{endpoint}"

    def _wrap(self, action: str, error: httpx.HTTPError) -> EmbeddingProviderError:
        if isinstance(error, httpx.TimeoutException):
            return EmbeddingProviderError(f"Ollama {action} timed out after {self.timeout}s")
        if isinstance(error, httpx.HTTPStatusError):
            body = error.response.text[:200]
            return EmbeddingProviderError(
                f"Ollama {action} failed: {error.response.status_code} {body}".rstrip()
            )
        return EmbeddingProviderError(f"Ollama {action} failed: {error}")

    def embed(self, text: str, model: str) -> np.ndarray:
        """
        Embed one text.

        Returns:
            float32 vector as returned by the server (not normalized)
        """
        with self._embed_lock:
            try:
                response = self._client.post(
                    self._url("/api/embeddings"),
                    json={"model": model, "prompt": text},
                    timeout=self.timeout,
                )
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPError as e:
                raise self._wrap("embed", e) from e
            except ValueError as e:
                raise EmbeddingProviderError(f"Ollama embed returned invalid JSON: {e}") from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not isinstance(embedding, list) or not embedding:
            raise EmbeddingProviderError(f"Ollama embed returned no embedding for model {model}")
        try:
            return np.asarray(embedding, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise EmbeddingProviderError(f"Ollama embed returned a non-numeric vector: {e}") from e

    def chat_stream(self, messages: List[Dict[str, str]], model: str) -> Iterator[str]:
        """
        Stream a chat completion.

        Yields:
            Content tokens in arrival order, until the server reports done
        """
        payload = {"model": model, "messages": messages, "stream": True}
        try:
            with self._client.stream(
                "POST", self._url("/api/chat"), json=payload, timeout=self.timeout
            ) as response:
                if response.status_code >= 400:
                    response.read()
                    response.raise_for_status()
                for line in response.iter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        parsed = json.loads(line)
                    except json.JSONDecodeError as e:
                        logger.warning(f"Skipping malformed chat stream line: {e}")
                        continue
                    if not isinstance(parsed, dict):
                        continue
                    if parsed.get("error"):
                        raise EmbeddingProviderError(f"Ollama chat error: {parsed['error']}")
                    content = (parsed.get("message") or {}).get("content")
                    if content:
                        yield content
                    if parsed.get("done") is True:
                        return
        except httpx.HTTPError as e:
            raise self._wrap("chat", e) from e

    def list_models(self) -> List[str]:
        """Names of the models installed on the server."""
        try:
            response = self._client.get(self._url("/api/tags"), timeout=self.timeout)
            response.raise_for_status()
            data: Dict[str, Any] = response.json()
        except httpx.HTTPError as e:
            raise self._wrap("list models", e) from e
        except ValueError as e:
            raise EmbeddingProviderError(f"Ollama tags returned invalid JSON: {e}") from e
        return [m["name"] for m in data.get("models", []) if "name" in m]

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "OllamaClient":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
