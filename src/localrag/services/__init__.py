"""
Service Classes for localrag

Each service owns one concern of the retrieval engine: chunking, the vector
index, the ingest manifest, ingestion runs, the job queue, embeddings, chat
and configuration.
"""

from .config_loader import ConfigLoader, RagConfig, load_config
from .smart_chunker import Chunk, ContentKind, SmartChunker, infer_content_kind
from .vector_index import (
    HeaderFormat,
    IndexHeader,
    IndexSnapshot,
    LiveIndex,
    RecordMetadata,
    VectorIndex,
    parse_header,
)
from .ingest_manifest import IngestManifest, ManifestEntry, compute_content_hash
from .rag_types import IngestReport, SearchHit, StreamEvent
from .ingest_orchestrator import IngestOrchestrator
from .job_queue import Job, JobQueue, JobStatus
from .ollama_client import OllamaClient
from .embedding_service import (
    EmbeddingService,
    HashingEmbeddingService,
    create_embedding_service,
)
from .query_logger import QueryLogger
from .rag_chat import RagChatService

__all__ = [
    "ConfigLoader",
    "RagConfig",
    "load_config",
    "Chunk",
    "ContentKind",
    "SmartChunker",
    "infer_content_kind",
    "HeaderFormat",
    "IndexHeader",
    "IndexSnapshot",
    "LiveIndex",
    "RecordMetadata",
    "VectorIndex",
    "parse_header",
    "IngestManifest",
    "ManifestEntry",
    "compute_content_hash",
    "IngestReport",
    "SearchHit",
    "StreamEvent",
    "IngestOrchestrator",
    "Job",
    "JobQueue",
    "JobStatus",
    "OllamaClient",
    "EmbeddingService",
    "HashingEmbeddingService",
    "create_embedding_service",
    "QueryLogger",
    "RagChatService",
]
