"""
RAG Types - Data classes for index, ingestion and chat operations.

Contains value objects shared by the vector index, the ingest orchestrator,
the job queue and the chat service.
"""

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from .vector_index import RecordMetadata


@dataclass(frozen=True)
class SearchHit:
    """
    Result from a nearest-neighbor search.

    ::: This is a value-object.
    """
    id: str
    score: float
    metadata: "RecordMetadata"

    def to_dict(self, include_text: bool = False) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result = {
            "id": self.id,
            "score": round(self.score, 4),
            "fileName": self.metadata.file_name,
            "headerContext": self.metadata.header_context,
            "chunkIndex": self.metadata.chunk_index,
            "preview": self.metadata.text_preview,
        }
        if include_text:
            result["text"] = self.metadata.full_text
        return result


@dataclass
class IngestReport:
    """
    Counts from one ingestion run.

    ::: This is a value-object.

    Every scanned file lands in exactly one of processed, skipped, renamed
    or errored. Orphans are counted separately.
    """
    collection: str = ""
    source_path: str = ""
    files_scanned: int = 0
    processed: int = 0
    skipped: int = 0
    renamed: int = 0
    orphaned: int = 0
    errored: int = 0
    chunks_embedded: int = 0
    duration_seconds: float = 0.0
    errors: Dict[str, str] = field(default_factory=dict)

    def record_error(self, file_name: str, message: str) -> None:
        self.errored += 1
        self.errors[file_name] = message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collection": self.collection,
            "sourcePath": self.source_path,
            "filesScanned": self.files_scanned,
            "processed": self.processed,
            "skipped": self.skipped,
            "renamed": self.renamed,
            "orphaned": self.orphaned,
            "errored": self.errored,
            "chunksEmbedded": self.chunks_embedded,
            "durationSeconds": round(self.duration_seconds, 3),
            "errors": dict(self.errors),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IngestReport":
        return cls(
            collection=data.get("collection", ""),
            source_path=data.get("sourcePath", ""),
            files_scanned=data.get("filesScanned", 0),
            processed=data.get("processed", 0),
            skipped=data.get("skipped", 0),
            renamed=data.get("renamed", 0),
            orphaned=data.get("orphaned", 0),
            errored=data.get("errored", 0),
            chunks_embedded=data.get("chunksEmbedded", 0),
            duration_seconds=data.get("durationSeconds", 0.0),
            errors=dict(data.get("errors") or {}),
        )

    def summary(self) -> str:
        return (
            f"{self.processed} processed, {self.skipped} skipped, {self.renamed} renamed, "
            f"{self.orphaned} orphaned, {self.errored} errored "
            f"({self.chunks_embedded} chunks, {self.duration_seconds:.1f}s)"
        )


@dataclass(frozen=True)
class StreamEvent:
    """
    One event of a streamed chat answer.

    ::: This is a value-object.

    Types: status, citations, token, error, done.
    """
    type: str
    data: Any = None

    STATUS = "status"
    CITATIONS = "citations"
    TOKEN = "token"
    ERROR = "error"
    DONE = "done"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type}
        if self.type == self.STATUS:
            result["message"] = self.data
        elif self.type == self.CITATIONS:
            result["citations"] = self.data
        elif self.type == self.TOKEN:
            result["content"] = self.data
        elif self.type == self.ERROR:
            result["message"] = self.data
        elif self.data is not None:
            result["data"] = self.data
        return result

    def to_sse(self) -> str:
        """Render as a server-sent-events frame."""
        return f"data: {json.dumps(self.to_dict(), ensure_ascii=False)}\n\n"

    @classmethod
    def status(cls, message: str) -> "StreamEvent":
        return cls(cls.STATUS, message)

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls(cls.ERROR, message)

    @classmethod
    def token(cls, content: str) -> "StreamEvent":
        return cls(cls.TOKEN, content)

    @classmethod
    def done(cls, data: Optional[Dict[str, Any]] = None) -> "StreamEvent":
        return cls(cls.DONE, data)
