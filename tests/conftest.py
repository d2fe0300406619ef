"""
Shared pytest fixtures for localrag tests.

Provides temporary data/source directories and deterministic embedders so
ingestion and retrieval can be exercised without an Ollama server.
"""

import os

# Keep debug_trace.log out of the working tree during tests
os.environ["LOCALRAG_DEBUG_LOG"] = ""

import re
from pathlib import Path
from typing import Dict

import numpy as np
import pytest

from localrag.localrag_exceptions import EmbeddingProviderError
from localrag.services.ingest_orchestrator import IngestOrchestrator
from localrag.services.smart_chunker import SmartChunker


class VocabularyEmbedder:
    """
    Bag-of-words embedder with one exact dimension per distinct word.

    Words get a dimension on first sight, so vectors never collide the
    way hashed buckets can. Used wherever a test needs predictable
    similarity between a query and a document.
    """

    def __init__(self, dim: int = 512, model_name: str = "vocab-test"):
        self.dim = dim
        self.model_name = model_name
        self.vocabulary: Dict[str, int] = {}
        self.calls = 0

    def generate_embedding(self, text: str) -> np.ndarray:
        self.calls += 1
        vector = np.zeros(self.dim, dtype=np.float32)
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            if word not in self.vocabulary:
                if len(self.vocabulary) >= self.dim:
                    raise AssertionError("VocabularyEmbedder ran out of dimensions")
                self.vocabulary[word] = len(self.vocabulary)
            vector[self.vocabulary[word]] += 1.0
        return vector


class FlakyEmbedder(VocabularyEmbedder):
    """Fails for any text containing the trigger word, until healed."""

    def __init__(self, trigger: str = "poison", **kwargs):
        super().__init__(**kwargs)
        self.trigger = trigger
        self.healed = False

    def generate_embedding(self, text: str) -> np.ndarray:
        if not self.healed and self.trigger in text.lower():
            self.calls += 1
            raise EmbeddingProviderError("Ollama embed failed: 500 model crashed")
        return super().generate_embedding(text)


@pytest.fixture
def data_dir(tmp_path) -> Path:
    """Empty directory holding index, manifest and queue files."""
    path = tmp_path / "data"
    path.mkdir()
    return path


@pytest.fixture
def source_dir(tmp_path) -> Path:
    """Empty directory to ingest from."""
    path = tmp_path / "docs"
    path.mkdir()
    return path


@pytest.fixture
def embedder() -> VocabularyEmbedder:
    return VocabularyEmbedder()


@pytest.fixture
def flaky_embedder() -> FlakyEmbedder:
    return FlakyEmbedder()


@pytest.fixture
def orchestrator(data_dir, embedder) -> IngestOrchestrator:
    """
    Orchestrator over data_dir with the vocabulary embedder.

    Returns:
        IngestOrchestrator with a 400-char chunker and checkpoints every 2 files
    """
    return IngestOrchestrator(
        data_dir=data_dir,
        embedder=embedder,
        chunker=SmartChunker(max_chunk_size=400, overlap=50),
        accepted_extensions=(".md", ".txt", ".ps1", ".xml"),
        checkpoint_every=2,
    )


@pytest.fixture
def make_embedder():
    """Factory for additional VocabularyEmbedder / FlakyEmbedder instances."""
    def factory(flaky: bool = False, **kwargs):
        return FlakyEmbedder(**kwargs) if flaky else VocabularyEmbedder(**kwargs)
    return factory


def _write_file(directory: Path, name: str, content: str) -> Path:
    path = directory / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture
def write_file():
    """write_file(directory, name, content): create a UTF-8 file, making parent dirs."""
    return _write_file


@pytest.fixture(autouse=True)
def _restore_localrag_log_handlers():
    """
    Put the package loggers' handlers back after each test.

    The CLI rebinds its stderr handler to pytest's capture stream, which is
    closed once the test ends; later tests would then log to a closed file.
    """
    import logging

    from localrag import logging_config

    loggers = [logging.getLogger("localrag"), logging.getLogger("localrag.query_debug")]
    saved = [list(logger.handlers) for logger in loggers]
    saved_dir = logging_config._configured_log_dir
    yield
    for logger, handlers in zip(loggers, saved):
        for handler in list(logger.handlers):
            if handler not in handlers:
                handler.close()
            logger.removeHandler(handler)
        for handler in handlers:
            logger.addHandler(handler)
    logging_config._configured_log_dir = saved_dir
