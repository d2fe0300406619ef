"""
Text-to-vector backends used by ingestion and retrieval.

Four providers are supported:
- ollama: POST /api/embeddings against a local Ollama server (default)
- local: an in-process sentence-transformers model
- openai: the hosted embeddings endpoint
- hashing: bag-of-words token hashing, for offline runs and tests

The model name doubles as the fingerprint stored beside each index, so
vectors from different models are never mixed. Vectors come back as the
provider produced them; VectorIndex normalizes when it scores.
"""

import hashlib
import importlib.util
import os
import re
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from ..localrag_exceptions import EmbeddingProviderError
from ..logging_config import configure_logger_for_debug_trace
from .config_loader import RagConfig
from .ollama_client import OllamaClient

logger = configure_logger_for_debug_trace(__name__)

PROVIDERS = ("ollama", "local", "openai", "hashing")

_ST_PREFIX = "sentence-transformers/"


def _has_module(name: str) -> bool:
    """True when an optional extra is importable."""
    return importlib.util.find_spec(name) is not None


class EmbeddingService:
    """
    Provider-backed embedder with a bounded LRU cache keyed by text digest.

    ::: This is-in-layer Service-Layer.
    ::: This is stateful.

    The backend is created on first use, so constructing a service never
    touches the network or loads a model.
    """

    def __init__(
        self,
        model_name: str = "nomic-embed-text",
        provider: str = "ollama",
        cache_size: int = 1000,
        api_key: Optional[str] = None,
        ollama_client: Optional[OllamaClient] = None,
    ):
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}")
        self.model_name = model_name
        self.provider = provider
        self.cache_size = cache_size
        # Learned from the first vector unless the provider fixes it
        self.embedding_dim: Optional[int] = None

        self._api_key = api_key
        self._ollama = ollama_client
        self._st_model = None
        self._openai = None

        self._lru: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._lru_lock = threading.Lock()
        self._ready = False
        self._ready_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Backend setup
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Create the provider backend once; safe to call from any thread."""
        if self._ready:
            return
        with self._ready_lock:
            if self._ready:
                return
            logger.info(f"Embedding backend: {self.provider} / {self.model_name}")
            setup = {
                "ollama": self._setup_ollama,
                "local": self._setup_sentence_transformers,
                "openai": self._setup_openai,
            }.get(self.provider)
            if setup is not None:
                setup()
            self._ready = True

    def _setup_ollama(self) -> None:
        if self._ollama is None:
            self._ollama = OllamaClient()

    def _setup_sentence_transformers(self) -> None:
        if not _has_module("sentence_transformers"):
            raise EmbeddingProviderError(
                "The local provider needs sentence-transformers "
                "(pip install localrag[local])"
            )
        from sentence_transformers import SentenceTransformer

        name = self.model_name
        if name.startswith(_ST_PREFIX):
            name = name[len(_ST_PREFIX):]

        cache_folder = os.environ.get("TRANSFORMERS_CACHE") or None
        if cache_folder:
            os.makedirs(cache_folder, exist_ok=True)

        started = time.time()
        self._st_model = SentenceTransformer(name, cache_folder=cache_folder)
        logger.info(f"Loaded sentence-transformers model {name} in {time.time() - started:.2f}s")

    def _setup_openai(self) -> None:
        if not _has_module("openai"):
            raise EmbeddingProviderError(
                "The openai provider needs the openai package "
                "(pip install localrag[openai])"
            )
        key = self._api_key or os.getenv("OPENAI_API_KEY")
        if not key:
            raise EmbeddingProviderError(
                "No API key for the openai provider; set LOCALRAG_API_KEY or OPENAI_API_KEY"
            )
        import openai

        self._openai = openai.OpenAI(api_key=key)

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    @staticmethod
    def _digest(text: str) -> str:
        return hashlib.sha256(text.encode("utf-8")).hexdigest()

    def _lookup(self, key: str) -> Optional[np.ndarray]:
        with self._lru_lock:
            hit = self._lru.get(key)
            if hit is None:
                return None
            self._lru.move_to_end(key)
            return hit.copy()

    def _store(self, key: str, vector: np.ndarray) -> None:
        if self.cache_size <= 0:
            return
        with self._lru_lock:
            self._lru[key] = vector.copy()
            self._lru.move_to_end(key)
            while len(self._lru) > self.cache_size:
                self._lru.popitem(last=False)

    def clear_cache(self) -> None:
        """Drop every cached vector."""
        with self._lru_lock:
            dropped = len(self._lru)
            self._lru.clear()
        logger.debug(f"Dropped {dropped} cached embeddings")

    # ------------------------------------------------------------------
    # Embedding
    # ------------------------------------------------------------------

    def _compute(self, text: str):
        if self.provider == "ollama":
            return self._ollama.embed(text, self.model_name)
        if self.provider == "local":
            return self._st_model.encode(text, convert_to_numpy=True)
        if self.provider == "openai":
            return self._openai_vectors([text])[0]
        raise ValueError(f"Unknown provider: {self.provider}")

    def _openai_vectors(self, texts: List[str]) -> List[np.ndarray]:
        import openai

        try:
            response = self._openai.embeddings.create(model=self.model_name, input=texts)
        except openai.OpenAIError as e:
            raise EmbeddingProviderError(f"OpenAI embed failed: {e}") from e
        items = sorted(response.data, key=lambda item: item.index)
        return [np.asarray(item.embedding, dtype=np.float32) for item in items]

    def generate_embedding(self, text: str) -> np.ndarray:
        """
        Embed one text, serving repeats from the cache.

        Returns:
            1-D float32 vector

        Raises:
            EmbeddingProviderError: The backend failed or returned no vector
        """
        self.initialize()

        key = self._digest(text)
        hit = self._lookup(key)
        if hit is not None:
            return hit

        try:
            raw = self._compute(text)
        except EmbeddingProviderError:
            raise
        except Exception as e:
            raise EmbeddingProviderError(
                f"{self.provider} embed failed: {type(e).__name__}: {e}"
            ) from e
        vector = np.asarray(raw, dtype=np.float32)
        if vector.ndim != 1 or vector.size == 0:
            raise EmbeddingProviderError(
                f"{self.provider} returned an embedding of shape {vector.shape}"
            )
        if self.embedding_dim is None:
            self.embedding_dim = int(vector.size)

        self._store(key, vector)
        return vector

    def generate_embeddings_batch(
        self,
        texts: List[str],
        progress_callback: Optional[Callable[[int, int], None]] = None
    ) -> List[np.ndarray]:
        """Embed texts in input order, calling progress_callback(done, total) after each."""
        vectors = []
        for done, text in enumerate(texts, start=1):
            vectors.append(self.generate_embedding(text))
            if progress_callback:
                progress_callback(done, len(texts))
        return vectors

    def get_info(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model_name,
            "dimension": self.embedding_dim,
            "initialized": self._ready,
            "cache_size": len(self._lru),
            "max_cache_size": self.cache_size,
        }


_WORD = re.compile(r"\w+")


class HashingEmbeddingService(EmbeddingService):
    """
    Offline embedder: every lowercase word adds 1.0 to a bucket picked by
    its sha256 digest. Texts that share words land close together; it has
    no notion of meaning.
    """

    def __init__(self, embedding_dim: int = 256, cache_size: int = 1000):
        if embedding_dim < 1:
            raise ValueError("embedding_dim must be positive")
        super().__init__(
            model_name=f"hashing-{embedding_dim}", provider="hashing", cache_size=cache_size
        )
        self.embedding_dim = embedding_dim
        self._ready = True

    def initialize(self) -> None:
        pass

    def _compute(self, text: str) -> np.ndarray:
        buckets = np.zeros(self.embedding_dim, dtype=np.float32)
        for word in _WORD.findall(text.lower()):
            digest = hashlib.sha256(word.encode("utf-8")).digest()
            buckets[int.from_bytes(digest[:4], "little") % self.embedding_dim] += 1.0
        return buckets


def create_embedding_service(
    config: RagConfig,
    ollama_client: Optional[OllamaClient] = None,
) -> EmbeddingService:
    """
    Build the embedder named by config.embedding_provider.

    Args:
        config: Resolved configuration
        ollama_client: Client to share with the chat path; one is built
            from config.ollama_url when omitted
    """
    provider = config.embedding_provider.lower()
    if provider == "hashing":
        logger.warning("Hashing embedder selected; retrieval will be lexical only")
        return HashingEmbeddingService(cache_size=config.embedding_cache_size)

    if provider == "ollama" and ollama_client is None:
        ollama_client = OllamaClient(config.ollama_url, timeout=config.request_timeout)

    return EmbeddingService(
        model_name=config.embedding_model,
        provider=provider,
        cache_size=config.embedding_cache_size,
        api_key=config.api_key,
        ollama_client=ollama_client,
    )
