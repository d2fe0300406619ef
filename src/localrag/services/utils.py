"""
Utility functions for services

Common file helpers shared across the index, manifest and job queue.
"""

import json
import re
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Iterable, List, Union

from ..localrag_exceptions import FileIOError, ValidationError
from ..logging_config import configure_logger_for_debug_trace

logger = configure_logger_for_debug_trace(__name__)

COLLECTION_NAME_RE = re.compile(r'^[A-Za-z0-9_-]+$')

# Never ingest from (or below) these directories
BLOCKED_ROOTS = (
    "/etc",
    "/var",
    "/proc",
    "/sys",
    "C:\\Windows",
    "C:\\Program Files",
)


def atomic_write_bytes(path: Union[str, Path], data: bytes) -> None:
    """
    Write a file atomically: .tmp first, then rename over the target.

    Raises:
        FileIOError: If the file cannot be written
    """
    file_path = Path(path)
    temp_path = Path(str(file_path) + ".tmp")
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path.write_bytes(data)
        # Atomic rename: .tmp -> final filename
        temp_path.replace(file_path)
    except OSError as e:
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError as cleanup_error:
                logger.warning(f"Failed to clean up temp file {temp_path}: {cleanup_error}")
        raise FileIOError(f"Failed to write file ({e})", str(file_path)) from e


def atomic_write_json(path: Union[str, Path], payload: Any) -> None:
    """Serialize payload as indented JSON and write it atomically."""
    atomic_write_bytes(path, json.dumps(payload, indent=2, ensure_ascii=False).encode("utf-8"))


def validate_collection_name(collection: str) -> str:
    """
    Raises:
        ValidationError: If the name has characters outside [A-Za-z0-9_-]
    """
    if not isinstance(collection, str) or not COLLECTION_NAME_RE.match(collection):
        raise ValidationError(
            f"Invalid collection name {collection!r}: use letters, digits, '_' or '-'"
        )
    return collection


def _is_within(path: str, root: str, windows: bool) -> bool:
    if windows:
        candidate, base = path.lower().replace("/", "\\"), root.lower()
        return candidate == base or candidate.startswith(base + "\\")
    return path == root or path.startswith(root + "/")


def validate_source_path(path: str) -> str:
    """
    Check that an ingestion source path is absolute, has no '..' component
    and does not point into a system directory.

    Both POSIX and Windows drive paths are accepted so queued jobs stay
    valid regardless of where the queue file was written.

    Raises:
        ValidationError: If the path is unsafe
    """
    if not isinstance(path, str) or not path.strip():
        raise ValidationError("Source path is required")

    windows = PureWindowsPath(path).drive != ""
    pure = PureWindowsPath(path) if windows else PurePosixPath(path)
    if not pure.is_absolute():
        raise ValidationError(f"Source path must be absolute: {path}")
    if ".." in pure.parts:
        raise ValidationError(f"Source path must not contain '..': {path}")

    normalized = str(pure).rstrip("\\/") or str(pure)
    for root in BLOCKED_ROOTS:
        root_is_windows = PureWindowsPath(root).drive != ""
        if root_is_windows == windows and _is_within(normalized, root, windows):
            raise ValidationError(f"Source path is inside a system directory: {path}")
    return path


def scan_directory(source: Path, extensions: Iterable[str]) -> List[Path]:
    """
    Recursively list files with an accepted extension, sorted by path.

    Raises:
        FileIOError: If the directory cannot be walked
    """
    allowed = {ext.lower() for ext in extensions}
    try:
        files = [
            p for p in source.rglob("*")
            if p.is_file() and p.suffix.lower() in allowed
        ]
    except OSError as e:
        raise FileIOError(f"Failed to scan directory ({e})", str(source)) from e
    return sorted(files)
