"""
Ingest Manifest - per-collection ledger of ingested files.

Tracks the content hash of every ingested file so re-ingestion can skip
unchanged files, detect renames without re-embedding and purge files that
disappeared from the source directory.

File: <data_dir>/<collection>.manifest.json
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from ..localrag_exceptions import CorruptionError, FileIOError
from ..logging_config import configure_logger_for_debug_trace
from .utils import atomic_write_json

logger = configure_logger_for_debug_trace(__name__)

MANIFEST_VERSION = "1.0"
HASH_BLOCK_SIZE = 64 * 1024


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def compute_content_hash(path: Union[str, Path]) -> str:
    """
    SHA-256 of the file's raw bytes as uppercase hex, read in 64 KiB blocks.

    Raises:
        FileIOError: If the file cannot be read
    """
    digest = hashlib.sha256()
    try:
        with open(path, "rb") as f:
            for block in iter(lambda: f.read(HASH_BLOCK_SIZE), b""):
                digest.update(block)
    except OSError as e:
        raise FileIOError(f"Failed to hash file ({e})", str(path)) from e
    return digest.hexdigest().upper()


def manifest_path(directory: Union[str, Path], collection: str) -> Path:
    return Path(directory) / f"{collection}.manifest.json"


@dataclass
class ManifestEntry:
    """
    Ingestion record for one file.

    ::: This is a value-object.
    """
    file_name: str
    source_path: str
    content_hash: str
    chunk_count: int
    file_size_bytes: int
    embedding_model: str
    last_ingested_at: str = field(default_factory=_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fileName": self.file_name,
            "sourcePath": self.source_path,
            "contentHash": self.content_hash,
            "chunkCount": self.chunk_count,
            "fileSizeBytes": self.file_size_bytes,
            "lastIngestedAt": self.last_ingested_at,
            "embeddingModel": self.embedding_model,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        return cls(
            file_name=data["fileName"],
            source_path=data.get("sourcePath", ""),
            content_hash=data["contentHash"],
            chunk_count=int(data.get("chunkCount", 0)),
            file_size_bytes=int(data.get("fileSizeBytes", 0)),
            embedding_model=data.get("embeddingModel", ""),
            last_ingested_at=data.get("lastIngestedAt", ""),
        )


class IngestManifest:
    """
    Case-insensitive map of file name to ManifestEntry for one collection.

    ::: This is-in-layer Service-Layer.
    ::: This is a persistence-component.
    ::: This is stateful.
    """

    def __init__(self, directory: Union[str, Path], collection: str):
        self.directory = Path(directory)
        self.collection = collection
        # Keys are lowercase file names
        self._entries: Dict[str, ManifestEntry] = {}

    @property
    def path(self) -> Path:
        return manifest_path(self.directory, self.collection)

    # --- Persistence ---

    def load(self) -> "IngestManifest":
        """
        Replace in-memory entries with the stored manifest (empty if none).

        Raises:
            CorruptionError: If the file is not a valid manifest
            FileIOError: If the file exists but cannot be read
        """
        self._entries.clear()
        if not self.path.exists():
            return self

        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise FileIOError(f"Failed to read manifest ({e})", str(self.path)) from e

        try:
            data = json.loads(text)
            raw_entries = data["entries"]
            entries = [ManifestEntry.from_dict(raw) for raw in raw_entries]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CorruptionError(f"Malformed manifest {self.path}: {e}") from e

        for entry in entries:
            self._entries[entry.file_name.lower()] = entry
        logger.debug(f"Loaded manifest '{self.collection}': {len(self._entries)} entries")
        return self

    def save(self) -> None:
        """
        Raises:
            FileIOError: If the manifest cannot be written
        """
        entries = [entry.to_dict() for entry in self._entries.values()]
        atomic_write_json(self.path, {
            "version": MANIFEST_VERSION,
            "collection": self.collection,
            "lastUpdated": _now_iso(),
            "entryCount": len(entries),
            "entries": entries,
        })

    def clear(self) -> None:
        """Drop all entries and delete the manifest file."""
        self._entries.clear()
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise FileIOError(f"Failed to delete manifest ({e})", str(self.path)) from e

    # --- CRUD ---

    def get_entry(self, file_name: str) -> Optional[ManifestEntry]:
        return self._entries.get(file_name.lower())

    def add_or_update(
        self,
        file_name: str,
        source_path: str,
        content_hash: str,
        chunk_count: int,
        file_size_bytes: int,
        embedding_model: str,
    ) -> ManifestEntry:
        entry = ManifestEntry(
            file_name=file_name,
            source_path=source_path,
            content_hash=content_hash,
            chunk_count=chunk_count,
            file_size_bytes=file_size_bytes,
            embedding_model=embedding_model,
        )
        self._entries[file_name.lower()] = entry
        return entry

    def remove(self, file_name: str) -> bool:
        return self._entries.pop(file_name.lower(), None) is not None

    def count(self) -> int:
        return len(self._entries)

    def entries(self) -> List[ManifestEntry]:
        return list(self._entries.values())

    # --- Change detection ---

    def is_unchanged(self, file_name: str, content_hash: str) -> bool:
        entry = self.get_entry(file_name)
        return entry is not None and entry.content_hash == content_hash

    def find_by_hash(self, content_hash: str, file_name: str) -> Optional[ManifestEntry]:
        """
        Find a rename candidate: an entry with this hash under another name.

        Renames are matched on content hash alone, so two distinct files
        with identical bytes are indistinguishable.
        """
        key = file_name.lower()
        for name, entry in self._entries.items():
            if entry.content_hash == content_hash and name != key:
                return entry
        return None

    def get_orphans(self, current_file_names: Iterable[str]) -> List[str]:
        """Names (original case) of entries absent from the current scan."""
        current = {name.lower() for name in current_file_names}
        return [
            entry.file_name for name, entry in self._entries.items()
            if name not in current
        ]
