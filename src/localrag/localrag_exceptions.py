"""
localrag Exception Hierarchy

Contains all exception classes raised by the indexing and ingestion core.
"""

from typing import Optional


class LocalRagError(Exception):
    """
    Base exception for all localrag operations.
    """
    pass


class DimensionMismatchError(LocalRagError):
    """
    Raised when a vector's length disagrees with the index's fixed dimension.

    The index is never mutated when this is raised.
    """

    def __init__(self, expected: int, actual: int, context: str = "vector"):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Invalid {context} dimensions. Expected {expected}, got {actual}"
        )


class ModelFingerprintMismatchError(LocalRagError):
    """
    Raised when an insert, query or load names a different embedding model
    than the one fixed into the index.
    """

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Embedding model mismatch: index={expected}, requested={actual}"
        )


class CorruptionError(LocalRagError):
    """
    Raised when persisted index state is internally inconsistent
    (binary/metadata count disagreement, truncated payload, bad JSON).
    """
    pass


class FileIOError(LocalRagError):
    """
    Exception for file-related operations (scan/read/save/load).
    """

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(f"{message}: {path}" if path else message)


class EmbeddingProviderError(LocalRagError):
    """
    Raised when the embedding or chat provider fails: network error,
    timeout, non-2xx status or a malformed response body.
    """
    pass


class ValidationError(LocalRagError):
    """
    Raised for malformed requests (job path/collection, source directory).
    """
    pass


class IndexNotLoadedError(LocalRagError):
    """
    Raised when querying a LiveIndex that holds no snapshot.
    """
    pass


__all__ = [
    "LocalRagError",
    "DimensionMismatchError",
    "ModelFingerprintMismatchError",
    "CorruptionError",
    "FileIOError",
    "EmbeddingProviderError",
    "ValidationError",
    "IndexNotLoadedError",
]
