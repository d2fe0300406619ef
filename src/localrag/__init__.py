"""
localrag - local retrieval engine for retrieval-augmented generation

Indexes document chunks as embedding vectors in a flat binary store,
answers nearest-neighbor queries, and keeps collections consistent with
their source directories through incremental, crash-safe ingestion.
"""

__version__ = "0.1.0"

from .localrag_exceptions import (
    LocalRagError,
    DimensionMismatchError,
    ModelFingerprintMismatchError,
    CorruptionError,
    FileIOError,
    EmbeddingProviderError,
    ValidationError,
    IndexNotLoadedError,
)


def __getattr__(name):
    """Lazy-import the engine so `import localrag` stays light."""
    if name == "RagEngine":
        from .engine import RagEngine
        return RagEngine
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "RagEngine",
    "LocalRagError",
    "DimensionMismatchError",
    "ModelFingerprintMismatchError",
    "CorruptionError",
    "FileIOError",
    "EmbeddingProviderError",
    "ValidationError",
    "IndexNotLoadedError",
]
