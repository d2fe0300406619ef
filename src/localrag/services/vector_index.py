"""
Vector Index - persistent flat-file vector store with brute-force cosine search.

Storage layout per collection (in the data directory):
- <collection>.vectors.bin      binary header + float32 rows
- <collection>.metadata.json    JSON array aligned 1:1 with the binary rows

Binary header (little-endian):
    int32   record count N
    int32   dimension D
    uint16  model name length L     (tagged format only)
    L bytes UTF-8 model name        (tagged format only)
    N*D     float32 row-major vectors

Files written before model tagging have no L/name (legacy format); the
header parser tells the two apart by validating L against the file size.
"""

import json
import struct
import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np

from ..localrag_exceptions import (
    CorruptionError,
    DimensionMismatchError,
    FileIOError,
    IndexNotLoadedError,
    ModelFingerprintMismatchError,
)
from ..logging_config import configure_logger_for_debug_trace
from .rag_types import SearchHit
from .utils import atomic_write_bytes, atomic_write_json

logger = configure_logger_for_debug_trace(__name__)

MAX_MODEL_NAME_BYTES = 256
_COUNTS = struct.Struct("<ii")
_NAME_LENGTH = struct.Struct("<H")
_FLOAT32_LE = np.dtype("<f4")


def vectors_path(directory: Union[str, Path], collection: str) -> Path:
    return Path(directory) / f"{collection}.vectors.bin"


def metadata_path(directory: Union[str, Path], collection: str) -> Path:
    return Path(directory) / f"{collection}.metadata.json"


@dataclass(frozen=True)
class RecordMetadata:
    """
    Metadata stored alongside each vector.

    ::: This is a value-object.
    """
    file_name: str
    source_path: str = ""
    chunk_index: int = 0
    full_text: str = ""
    text_preview: str = ""
    header_context: str = ""
    embedding_model: str = ""
    ingested_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "sourcePath": self.source_path,
            "chunkIndex": self.chunk_index,
            "fullText": self.full_text,
            "textPreview": self.text_preview,
            "headerContext": self.header_context,
            "embeddingModel": self.embedding_model,
            "ingestedAt": self.ingested_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecordMetadata":
        return cls(
            file_name=data.get("fileName", ""),
            source_path=data.get("sourcePath", ""),
            chunk_index=int(data.get("chunkIndex", 0)),
            full_text=data.get("fullText", ""),
            text_preview=data.get("textPreview", ""),
            header_context=data.get("headerContext", ""),
            embedding_model=data.get("embeddingModel", ""),
            ingested_at=data.get("ingestedAt", ""),
        )


class HeaderFormat(Enum):
    TAGGED = "tagged"
    LEGACY = "legacy"


@dataclass(frozen=True)
class IndexHeader:
    """Parsed binary header: counts, optional model tag and where rows begin."""
    count: int
    dimension: int
    format: HeaderFormat
    data_offset: int
    embedding_model: Optional[str] = None


def parse_header(data: bytes) -> IndexHeader:
    """
    Decide the header layout of a .vectors.bin payload.

    The tagged layout is accepted only when L is in 1..256, the name bytes
    decode as UTF-8 and the remaining size is exactly N*D*4. Otherwise the
    file must be an exact legacy file.

    Raises:
        CorruptionError: If neither layout matches the file size
    """
    if len(data) < _COUNTS.size:
        raise CorruptionError(f"Vector file too short for header ({len(data)} bytes)")

    count, dimension = _COUNTS.unpack_from(data, 0)
    if count < 0 or dimension < 0 or (count > 0 and dimension == 0):
        raise CorruptionError(f"Invalid vector header: count={count}, dimension={dimension}")
    payload = count * dimension * _FLOAT32_LE.itemsize

    if len(data) >= _COUNTS.size + _NAME_LENGTH.size:
        (name_length,) = _NAME_LENGTH.unpack_from(data, _COUNTS.size)
        name_start = _COUNTS.size + _NAME_LENGTH.size
        if (1 <= name_length <= MAX_MODEL_NAME_BYTES
                and len(data) == name_start + name_length + payload):
            try:
                name = data[name_start:name_start + name_length].decode("utf-8")
            except UnicodeDecodeError:
                name = None
            if name is not None:
                return IndexHeader(
                    count, dimension, HeaderFormat.TAGGED, name_start + name_length, name
                )

    if len(data) != _COUNTS.size + payload:
        raise CorruptionError(
            f"Vector file size {len(data)} does not match header "
            f"(count={count}, dimension={dimension})"
        )
    return IndexHeader(count, dimension, HeaderFormat.LEGACY, _COUNTS.size)


def encode_index(matrix: np.ndarray, embedding_model: Optional[str]) -> bytes:
    """Serialize a (N, D) matrix; a model name selects the tagged layout."""
    count, dimension = matrix.shape
    parts = [_COUNTS.pack(count, dimension)]
    if embedding_model:
        name = embedding_model.encode("utf-8")
        if len(name) > MAX_MODEL_NAME_BYTES:
            raise ValueError(
                f"Model name longer than {MAX_MODEL_NAME_BYTES} bytes: {embedding_model}"
            )
        parts.append(_NAME_LENGTH.pack(len(name)))
        parts.append(name)
    parts.append(np.ascontiguousarray(matrix, dtype=_FLOAT32_LE).tobytes())
    return b"".join(parts)


def select_top_k(scores: Iterable[float], k: int, min_score: float) -> List[Tuple[int, float]]:
    """
    Keep the k best (index, score) pairs in descending score order.

    Bounded insertion list: O(n*k). A new score must beat an existing one
    strictly to move ahead of it, so earlier entries win ties.
    """
    top: List[Tuple[int, float]] = []
    if k <= 0:
        return top
    for idx, score in enumerate(scores):
        if score < min_score:
            continue
        if len(top) == k and score <= top[-1][1]:
            continue
        pos = len(top)
        while pos > 0 and top[pos - 1][1] < score:
            pos -= 1
        top.insert(pos, (idx, score))
        if len(top) > k:
            top.pop()
    return top


def _cosine_scores(matrix: np.ndarray, norms: np.ndarray, query: np.ndarray) -> np.ndarray:
    query_norm = float(np.linalg.norm(query))
    if query_norm == 0.0 or matrix.shape[0] == 0:
        return np.zeros(matrix.shape[0], dtype=np.float64)
    dots = matrix.astype(np.float64) @ query.astype(np.float64)
    denom = norms * query_norm
    scores = np.zeros_like(dots)
    np.divide(dots, denom, out=scores, where=denom > 0)
    return scores


def _as_vector(vector) -> np.ndarray:
    vec = np.asarray(vector, dtype=np.float32)
    if vec.ndim != 1 or vec.size == 0:
        raise ValueError(f"Vector must be a non-empty 1-D array, got shape {vec.shape}")
    return vec


@dataclass(frozen=True, eq=False)
class IndexSnapshot:
    """
    Immutable copy of index state served to concurrent readers.

    ::: This is a value-object.
    """
    ids: Tuple[str, ...]
    matrix: np.ndarray
    metadata: Tuple[RecordMetadata, ...]
    dimension: Optional[int]
    embedding_model: Optional[str]
    norms: np.ndarray = field(repr=False, default=None)

    def __post_init__(self):
        self.matrix.setflags(write=False)
        if self.norms is None:
            norms = np.linalg.norm(self.matrix.astype(np.float64), axis=1)
            object.__setattr__(self, "norms", norms)
        self.norms.setflags(write=False)

    @property
    def size(self) -> int:
        return len(self.ids)

    def find_nearest(
        self,
        query,
        k: int,
        min_score: float = 0.0,
        model: Optional[str] = None,
    ) -> List[SearchHit]:
        """
        Cosine similarity search over every stored vector.

        Raises:
            DimensionMismatchError: If the query length differs from the index
            ModelFingerprintMismatchError: If `model` differs from the index model
        """
        if model is not None and self.embedding_model and model != self.embedding_model:
            raise ModelFingerprintMismatchError(self.embedding_model, model)
        if not self.ids or k <= 0:
            return []
        query_vec = _as_vector(query)
        if query_vec.size != self.dimension:
            raise DimensionMismatchError(self.dimension, query_vec.size, context="query")

        scores = _cosine_scores(self.matrix, self.norms, query_vec)
        return [
            SearchHit(id=self.ids[idx], score=score, metadata=self.metadata[idx])
            for idx, score in select_top_k(scores.tolist(), k, min_score)
        ]


class VectorIndex:
    """
    Mutable in-memory vector index with binary persistence.

    ::: This is-in-layer Service-Layer.
    ::: This is stateful.

    The dimension is fixed by the first record added (or by the loaded
    file) and never changes. The embedding model is fixed by the first
    record naming one. Vectors are copied on the way in.
    """

    def __init__(self, dimension: Optional[int] = None, embedding_model: Optional[str] = None):
        self._dimension = dimension
        self._model = embedding_model or None
        self._records: Dict[str, Tuple[np.ndarray, RecordMetadata]] = {}
        self._snapshot: Optional[IndexSnapshot] = None

    @property
    def size(self) -> int:
        return len(self._records)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def dimension(self) -> Optional[int]:
        return self._dimension

    @property
    def embedding_model(self) -> Optional[str]:
        return self._model

    def check_dimension(self, n: int) -> None:
        """
        Raises:
            DimensionMismatchError: If n differs from the fixed dimension
        """
        if self._dimension is not None and n != self._dimension:
            raise DimensionMismatchError(self._dimension, n)

    def check_model(self, model: Optional[str]) -> None:
        """
        Raises:
            ModelFingerprintMismatchError: If model differs from the fixed model
        """
        if self._model is not None and model != self._model:
            raise ModelFingerprintMismatchError(self._model, model or "")

    def add(self, record_id: str, vector, metadata: RecordMetadata) -> None:
        """
        Insert one record. The index is unchanged if any check fails.

        Raises:
            ValueError: Empty/non-1-D vector or duplicate id
            DimensionMismatchError: Vector length differs from the index
            ModelFingerprintMismatchError: metadata.embedding_model differs
        """
        vec = _as_vector(vector)
        self.check_dimension(vec.size)
        self.check_model(metadata.embedding_model)
        if record_id in self._records:
            raise ValueError(f"Duplicate record id: {record_id}")

        self._records[record_id] = (vec.copy(), metadata)
        if self._dimension is None:
            self._dimension = vec.size
        if self._model is None and metadata.embedding_model:
            self._model = metadata.embedding_model
        self._snapshot = None

    def get(self, record_id: str) -> Optional[Tuple[np.ndarray, RecordMetadata]]:
        """Return (read-only vector copy, metadata) or None."""
        entry = self._records.get(record_id)
        if entry is None:
            return None
        vec = entry[0].copy()
        vec.setflags(write=False)
        return vec, entry[1]

    def ids(self) -> List[str]:
        return list(self._records)

    def records_for_source(self, file_name: str) -> List[str]:
        """Ids of records whose file name matches (case-insensitive)."""
        key = file_name.lower()
        return [
            record_id for record_id, (_, meta) in self._records.items()
            if meta.file_name.lower() == key
        ]

    def remove_by_source(self, file_name: str) -> int:
        """Delete every record for a file name (case-insensitive). Returns count removed."""
        doomed = self.records_for_source(file_name)
        for record_id in doomed:
            del self._records[record_id]
        if doomed:
            self._snapshot = None
        return len(doomed)

    def update_metadata_by_source(self, old_name: str, new_name: str, new_path: str) -> int:
        """
        Rewrite file name and source path for a renamed file. Returns count updated.

        Ids that start with "<old_name>_" are re-keyed to "<new_name>_..." so
        the old name can be ingested again later without colliding. Record
        order is preserved.
        """
        updated = set(self.records_for_source(old_name))
        if not updated:
            return 0

        prefix = old_name.lower() + "_"
        rebuilt: Dict[str, Tuple[np.ndarray, RecordMetadata]] = {}
        for record_id, (vec, meta) in self._records.items():
            if record_id in updated:
                meta = replace(meta, file_name=new_name, source_path=new_path)
                if record_id.lower().startswith(prefix):
                    renamed_id = new_name + record_id[len(prefix) - 1:]
                    if renamed_id not in self._records and renamed_id not in rebuilt:
                        record_id = renamed_id
            rebuilt[record_id] = (vec, meta)
        self._records = rebuilt
        self._snapshot = None
        return len(updated)

    def snapshot(self) -> IndexSnapshot:
        """Immutable copy of the current state (cached until the next mutation)."""
        if self._snapshot is None:
            if self._records:
                matrix = np.vstack([vec for vec, _ in self._records.values()])
            else:
                matrix = np.zeros((0, self._dimension or 0), dtype=np.float32)
            self._snapshot = IndexSnapshot(
                ids=tuple(self._records),
                matrix=matrix,
                metadata=tuple(meta for _, meta in self._records.values()),
                dimension=self._dimension,
                embedding_model=self._model,
            )
        return self._snapshot

    def find_nearest(
        self,
        query,
        k: int,
        min_score: float = 0.0,
        model: Optional[str] = None,
    ) -> List[SearchHit]:
        """See IndexSnapshot.find_nearest."""
        return self.snapshot().find_nearest(query, k, min_score, model)

    def get_info(self) -> Dict[str, Any]:
        sources = {meta.file_name.lower() for _, meta in self._records.values()}
        return {
            "size": self.size,
            "dimension": self._dimension,
            "embedding_model": self._model,
            "sources": len(sources),
        }

    # --- Persistence ---

    def save(self, directory: Union[str, Path], collection: str) -> None:
        """
        Write <collection>.metadata.json, then <collection>.vectors.bin.

        Each file is replaced atomically, but the pair is not. A crash between
        the two replaces leaves counts that disagree, which load() reports as
        CorruptionError. Recover by deleting the collection's .vectors.bin,
        .metadata.json and .manifest.json and ingesting again; the source
        documents are the only state that matters.

        Raises:
            FileIOError: If either file cannot be written
        """
        snap = self.snapshot()
        atomic_write_json(
            metadata_path(directory, collection),
            [{"id": rid, "metadata": meta.to_dict()} for rid, meta in zip(snap.ids, snap.metadata)],
        )
        atomic_write_bytes(
            vectors_path(directory, collection),
            encode_index(snap.matrix, snap.embedding_model),
        )
        logger.debug(f"Saved index '{collection}': {snap.size} vectors, dim={snap.dimension}")

    @classmethod
    def load(
        cls,
        directory: Union[str, Path],
        collection: str,
        required_model: Optional[str] = None,
    ) -> "VectorIndex":
        """
        Load a collection from disk. A collection with neither file is empty.

        Raises:
            CorruptionError: Inconsistent or unreadable files
            ModelFingerprintMismatchError: Stored model differs from required_model
            FileIOError: Files exist but cannot be read
        """
        bin_path = vectors_path(directory, collection)
        meta_path = metadata_path(directory, collection)

        if not bin_path.exists() and not meta_path.exists():
            logger.debug(f"No stored index for '{collection}', starting empty")
            return cls()
        if not bin_path.exists() or not meta_path.exists():
            missing = bin_path if not bin_path.exists() else meta_path
            raise CorruptionError(f"Index file missing for collection '{collection}': {missing}")

        try:
            data = bin_path.read_bytes()
            meta_text = meta_path.read_text(encoding="utf-8")
        except OSError as e:
            raise FileIOError(f"Failed to read index ({e})", str(bin_path)) from e

        header = parse_header(data)
        try:
            raw_records = json.loads(meta_text)
        except json.JSONDecodeError as e:
            raise CorruptionError(f"Invalid metadata JSON in {meta_path}: {e}") from e
        if not isinstance(raw_records, list):
            raise CorruptionError(f"Metadata file must hold a JSON array: {meta_path}")
        if len(raw_records) != header.count:
            raise CorruptionError(
                f"Metadata count {len(raw_records)} does not match vector count {header.count}"
            )

        records: List[Tuple[str, RecordMetadata]] = []
        for raw in raw_records:
            try:
                records.append((raw["id"], RecordMetadata.from_dict(raw.get("metadata") or {})))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise CorruptionError(f"Malformed metadata record in {meta_path}: {e}") from e

        model = header.embedding_model
        if model is None:
            # Legacy files carry the model only in record metadata
            model = next((m.embedding_model for _, m in records if m.embedding_model), None)
        if required_model and model and model != required_model:
            raise ModelFingerprintMismatchError(model, required_model)

        matrix = np.frombuffer(
            data, dtype=_FLOAT32_LE, count=header.count * header.dimension,
            offset=header.data_offset,
        ).reshape(header.count, header.dimension).astype(np.float32)

        index = cls(dimension=header.dimension or None, embedding_model=model)
        for row, (record_id, meta) in zip(matrix, records):
            if record_id in index._records:
                raise CorruptionError(f"Duplicate record id in {meta_path}: {record_id}")
            index._records[record_id] = (row.copy(), meta)

        logger.info(
            f"Loaded index '{collection}': {index.size} vectors, dim={index.dimension}, "
            f"model={model} ({header.format.value} format)"
        )
        return index


class LiveIndex:
    """
    Holds the snapshot that queries are served from.

    ::: This is-in-layer Service-Layer.
    ::: This is thread-safe.

    Readers take the current reference once and search it; writers build a
    new index elsewhere and publish its snapshot in one swap.
    """

    def __init__(self, snapshot: Optional[IndexSnapshot] = None):
        self._snapshot = snapshot
        self._lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._snapshot is not None

    @property
    def current(self) -> Optional[IndexSnapshot]:
        return self._snapshot

    def publish(self, snapshot: IndexSnapshot) -> None:
        with self._lock:
            self._snapshot = snapshot

    def clear(self) -> None:
        with self._lock:
            self._snapshot = None

    def load(
        self,
        directory: Union[str, Path],
        collection: str,
        required_model: Optional[str] = None,
    ) -> IndexSnapshot:
        """
        Load a collection from disk and publish it.

        On failure the holder is left with no index loaded and the error
        propagates.
        """
        try:
            snapshot = VectorIndex.load(directory, collection, required_model).snapshot()
        except Exception:
            self.clear()
            raise
        self.publish(snapshot)
        return snapshot

    def find_nearest(
        self,
        query,
        k: int,
        min_score: float = 0.0,
        model: Optional[str] = None,
    ) -> List[SearchHit]:
        """
        Raises:
            IndexNotLoadedError: If no snapshot has been published
        """
        snapshot = self._snapshot
        if snapshot is None:
            raise IndexNotLoadedError("No index loaded")
        return snapshot.find_nearest(query, k, min_score, model)
