"""
Tests for OllamaClient against an httpx.MockTransport.

Covers:
- Embedding requests and response validation
- NDJSON chat streaming, malformed lines and server errors
- Model listing and error wrapping
"""

import json

import httpx
import numpy as np
import pytest

from localrag.localrag_exceptions import EmbeddingProviderError
from localrag.services.ollama_client import OllamaClient


def make_client(handler, timeout=5.0):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return OllamaClient("http://ollama.test:11434/", timeout=timeout, client=http)


def ndjson(*objects):
    return "".join(json.dumps(o) + "\n" for o in objects)


class TestEmbed:
    """Tests for OllamaClient.embed."""

    def test_posts_model_and_prompt(self):
        """The request body names the model and prompt."""
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"embedding": [0.5, -1.0, 2.0]})

        vec = make_client(handler).embed("hello", "nomic-embed-text")
        assert seen["url"] == "http://ollama.test:11434/api/embeddings"
        assert seen["body"] == {"model": "nomic-embed-text", "prompt": "hello"}
        assert vec.dtype == np.float32
        assert np.allclose(vec, [0.5, -1.0, 2.0])

    def test_vectors_are_not_normalized(self):
        """Server vectors come back unchanged."""
        client = make_client(lambda r: httpx.Response(200, json={"embedding": [3.0, 4.0]}))
        assert np.allclose(client.embed("x", "m"), [3.0, 4.0])

    def test_http_error_status(self):
        """Non-2xx responses raise with the status code."""
        client = make_client(lambda r: httpx.Response(500, text="model crashed"))
        with pytest.raises(EmbeddingProviderError, match="500"):
            client.embed("x", "m")

    def test_missing_embedding(self):
        """A body without an embedding is an error."""
        client = make_client(lambda r: httpx.Response(200, json={"embedding": []}))
        with pytest.raises(EmbeddingProviderError):
            client.embed("x", "m")

    def test_invalid_json(self):
        """An unparseable body is an error."""
        client = make_client(lambda r: httpx.Response(200, text="<html>"))
        with pytest.raises(EmbeddingProviderError):
            client.embed("x", "m")

    def test_timeout(self):
        """Timeouts surface as provider errors."""
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(EmbeddingProviderError, match="timed out"):
            make_client(handler, timeout=2.0).embed("x", "m")

    def test_connection_refused(self):
        """Connection failures surface as provider errors."""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(EmbeddingProviderError, match="connection refused"):
            make_client(handler).embed("x", "m")


class TestChatStream:
    """Tests for OllamaClient.chat_stream."""

    def test_yields_tokens_until_done(self):
        """Tokens arrive in order and stop at done."""
        seen = {}

        def handler(request):
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, text=ndjson(
                {"message": {"role": "assistant", "content": "The "}, "done": False},
                {"message": {"role": "assistant", "content": "rover"}, "done": False},
                {"message": {"role": "assistant", "content": ""}, "done": True},
                {"message": {"role": "assistant", "content": "ignored"}, "done": False},
            ))

        messages = [{"role": "user", "content": "Where?"}]
        tokens = list(make_client(handler).chat_stream(messages, "llama3.1:8b"))
        assert tokens == ["The ", "rover"]
        assert seen["body"] == {"model": "llama3.1:8b", "messages": messages, "stream": True}

    def test_skips_malformed_lines(self):
        """Unparseable and non-object lines are skipped."""
        body = (
            ndjson({"message": {"content": "a"}})
            + "{not json\n"
            + "\n"
            + "[1, 2]\n"
            + ndjson({"message": {"content": "b"}, "done": True})
        )
        client = make_client(lambda r: httpx.Response(200, text=body))
        assert list(client.chat_stream([], "m")) == ["a", "b"]

    def test_error_line(self):
        """An error object in the stream raises."""
        body = ndjson({"message": {"content": "a"}}, {"error": "model not found"})
        client = make_client(lambda r: httpx.Response(200, text=body))
        with pytest.raises(EmbeddingProviderError, match="model not found"):
            list(client.chat_stream([], "m"))

    def test_error_status(self):
        """Non-2xx chat responses raise with the body."""
        client = make_client(lambda r: httpx.Response(404, text="model 'x' not found"))
        with pytest.raises(EmbeddingProviderError, match="404"):
            list(client.chat_stream([], "x"))


class TestListModels:
    """Tests for OllamaClient.list_models."""

    def test_names(self):
        """Model names are read from /api/tags."""
        def handler(request):
            assert request.url.path == "/api/tags"
            return httpx.Response(200, json={"models": [{"name": "llama3.1:8b"}, {"size": 1}]})

        assert make_client(handler).list_models() == ["llama3.1:8b"]

    def test_context_manager_keeps_injected_client(self):
        """Closing does not close a client the caller owns."""
        http = httpx.Client(transport=httpx.MockTransport(
            lambda r: httpx.Response(200, json={"models": []})
        ))
        with OllamaClient("http://ollama.test", client=http) as client:
            assert client.list_models() == []
        assert not http.is_closed
        http.close()
