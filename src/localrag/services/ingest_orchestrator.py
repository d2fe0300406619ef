"""
Ingest Orchestrator - incremental ingestion of a source directory.

One run scans the directory, then for each file:
- unchanged content (same hash as the manifest)  -> skipped
- same content under a new name                  -> renamed (metadata only)
- otherwise                                      -> chunked, embedded, replaced
Afterwards files missing from the scan are purged (orphans), the index and
manifest are saved, and a fresh snapshot is published to the live index.
"""

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

import numpy as np

from ..localrag_exceptions import (
    DimensionMismatchError,
    EmbeddingProviderError,
    FileIOError,
    ValidationError,
)
from ..logging_config import configure_logger_for_debug_trace
from .config_loader import DEFAULT_EXTENSIONS, RagConfig
from .ingest_manifest import IngestManifest, compute_content_hash
from .rag_types import IngestReport
from .smart_chunker import SmartChunker
from .utils import scan_directory, validate_collection_name
from .vector_index import LiveIndex, RecordMetadata, VectorIndex

logger = configure_logger_for_debug_trace(__name__)

PREVIEW_CHARS = 150

SKIPPED = "skipped"
RENAMED = "renamed"
PROCESSED = "processed"

# Expected per-file failures: logged, counted and retried next run
RECOVERABLE_ERRORS = (
    EmbeddingProviderError,
    DimensionMismatchError,
    FileIOError,
    OSError,
    ValueError,
)

ProgressCallback = Callable[[str], None]


def make_record_id(file_name: str, chunk_index: int, content_hash: str) -> str:
    return f"{file_name}_{chunk_index}_{content_hash[:12]}"


def make_preview(text: str) -> str:
    if len(text) > PREVIEW_CHARS:
        return text[:PREVIEW_CHARS] + "..."
    return text


class IngestOrchestrator:
    """
    Runs ingestion for one collection at a time.

    ::: This is-in-layer Service-Layer.
    ::: This is a coordinator.

    The embedder is any object with a `model_name` attribute and a
    `generate_embedding(text) -> np.ndarray` method.
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        embedder,
        chunker: Optional[SmartChunker] = None,
        accepted_extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        checkpoint_every: int = 10,
        live_indexes: Optional[Dict[str, LiveIndex]] = None,
    ):
        if checkpoint_every < 1:
            raise ValueError("checkpoint_every must be at least 1")
        self.data_dir = Path(data_dir)
        self.embedder = embedder
        self.chunker = chunker or SmartChunker()
        self.accepted_extensions = tuple(accepted_extensions)
        self.checkpoint_every = checkpoint_every
        self.live_indexes = live_indexes if live_indexes is not None else {}

    @classmethod
    def from_config(
        cls,
        config: RagConfig,
        embedder,
        live_indexes: Optional[Dict[str, LiveIndex]] = None,
    ) -> "IngestOrchestrator":
        return cls(
            data_dir=config.data_dir,
            embedder=embedder,
            chunker=SmartChunker(config.chunk_size, config.chunk_overlap),
            accepted_extensions=config.accepted_extensions,
            checkpoint_every=config.checkpoint_every,
            live_indexes=live_indexes,
        )

    def run(
        self,
        source_path: Union[str, Path],
        collection: str,
        force: bool = False,
        cleanup_orphans: bool = True,
        progress: Optional[ProgressCallback] = None,
    ) -> IngestReport:
        """
        Ingest every eligible file under source_path into the collection.

        Args:
            source_path: Directory to scan recursively
            collection: Target collection name
            force: Re-embed files even when their content is unchanged
            cleanup_orphans: Purge files that are no longer in the directory
            progress: Optional callback(message) for human-readable status

        Returns:
            IngestReport with per-outcome counts

        Raises:
            FileIOError: Source directory missing, or index/manifest save failed
            ValidationError: Bad collection name or no eligible files
            ModelFingerprintMismatchError: Stored index uses another model
            CorruptionError: Stored index or manifest is inconsistent
        """
        started = time.time()
        notify = progress or (lambda message: None)
        validate_collection_name(collection)

        source = Path(source_path)
        if not source.is_dir():
            raise FileIOError("Source directory not found", str(source))

        notify("Scanning directory...")
        files = scan_directory(source, self.accepted_extensions)
        if not files:
            # An empty scan must never purge the collection
            raise ValidationError(f"Source path contains no eligible files: {source}")

        report = IngestReport(collection=collection, source_path=str(source))
        report.files_scanned = len(files)
        files = self._drop_duplicate_names(files, report)
        current_names = {path.name.lower() for path in files}

        model = self.embedder.model_name
        index = VectorIndex.load(self.data_dir, collection, required_model=model)
        manifest = IngestManifest(self.data_dir, collection).load()
        logger.info(
            f"Ingesting {len(files)} files from {source} into '{collection}' "
            f"(index: {index.size} vectors, manifest: {manifest.count()} entries)"
        )

        changed_since_checkpoint = 0
        for i, path in enumerate(files, start=1):
            notify(f"Processing {path.name} ({i}/{len(files)})")
            try:
                outcome = self._ingest_file(path, index, manifest, model, force, current_names)
            except RECOVERABLE_ERRORS as e:
                logger.error(f"Failed to ingest {path}: {e}")
                report.record_error(str(path), str(e))
                continue
            except Exception as e:
                # Third-party chunker/embedder failures stay confined to the file too
                logger.exception(f"Unexpected error ingesting {path}")
                report.record_error(str(path), f"{type(e).__name__}: {e}")
                continue

            if outcome == SKIPPED:
                report.skipped += 1
                continue
            if outcome == RENAMED:
                report.renamed += 1
            else:
                report.processed += 1
                entry = manifest.get_entry(path.name)
                report.chunks_embedded += entry.chunk_count if entry else 0

            changed_since_checkpoint += 1
            if changed_since_checkpoint >= self.checkpoint_every:
                notify(f"Checkpoint: saving after {i}/{len(files)} files")
                self._persist(index, manifest, collection)
                changed_since_checkpoint = 0

        if cleanup_orphans:
            notify("Cleaning up orphans...")
            for orphan in manifest.get_orphans(current_names):
                removed = index.remove_by_source(orphan)
                manifest.remove(orphan)
                report.orphaned += 1
                logger.info(f"Purged orphan {orphan} ({removed} vectors)")

        self._persist(index, manifest, collection)
        report.duration_seconds = time.time() - started
        notify("Complete")
        logger.info(f"Ingestion of '{collection}' finished: {report.summary()}")
        return report

    @staticmethod
    def _drop_duplicate_names(files: List[Path], report: IngestReport) -> List[Path]:
        """Keep the first file for each base name; count the rest as errored."""
        first_seen: Dict[str, Path] = {}
        unique = []
        for path in files:
            key = path.name.lower()
            if key in first_seen:
                message = f"Duplicate file name (already ingesting {first_seen[key]})"
                logger.warning(f"Skipping {path}: {message}")
                report.record_error(str(path), message)
                continue
            first_seen[key] = path
            unique.append(path)
        return unique

    def _ingest_file(
        self,
        path: Path,
        index: VectorIndex,
        manifest: IngestManifest,
        model: str,
        force: bool,
        current_names: Set[str],
    ) -> str:
        name = path.name
        content_hash = compute_content_hash(path)

        if not force:
            if manifest.is_unchanged(name, content_hash):
                logger.debug(f"Unchanged: {name}")
                return SKIPPED

            # Only a file that vanished from the scan can have been renamed
            candidate = manifest.find_by_hash(content_hash, name)
            if candidate is not None and candidate.file_name.lower() not in current_names:
                index.remove_by_source(name)
                updated = index.update_metadata_by_source(candidate.file_name, name, str(path))
                manifest.remove(candidate.file_name)
                manifest.add_or_update(
                    name, str(path), content_hash, candidate.chunk_count,
                    candidate.file_size_bytes, model,
                )
                logger.info(f"Renamed {candidate.file_name} -> {name} ({updated} vectors)")
                return RENAMED

        try:
            raw = path.read_bytes()
        except OSError as e:
            raise FileIOError(f"Failed to read file ({e})", str(path)) from e
        text = raw.decode("utf-8", errors="replace")

        chunks = list(self.chunker.chunk_file(path, text))
        vectors: List[np.ndarray] = [self.embedder.generate_embedding(c.text) for c in chunks]

        # Validate every vector before the index is touched
        expected = index.dimension or (len(vectors[0]) if vectors else None)
        for vec in vectors:
            if len(vec) != expected:
                raise DimensionMismatchError(expected, len(vec))
        index.check_model(model)

        index.remove_by_source(name)
        ingested_at = datetime.now(timezone.utc).isoformat()
        for chunk_index, (chunk, vec) in enumerate(zip(chunks, vectors)):
            index.add(
                make_record_id(name, chunk_index, content_hash),
                vec,
                RecordMetadata(
                    file_name=name,
                    source_path=str(path),
                    chunk_index=chunk_index,
                    full_text=chunk.text,
                    text_preview=make_preview(chunk.text),
                    header_context=chunk.header_context,
                    embedding_model=model,
                    ingested_at=ingested_at,
                ),
            )
        manifest.add_or_update(name, str(path), content_hash, len(chunks), len(raw), model)
        logger.info(f"Processed {name}: {len(chunks)} chunks")
        return PROCESSED

    def _persist(self, index: VectorIndex, manifest: IngestManifest, collection: str) -> None:
        # Index before manifest: the manifest never lists records the index lacks
        index.save(self.data_dir, collection)
        manifest.save()
        self.live_indexes.setdefault(collection, LiveIndex()).publish(index.snapshot())
