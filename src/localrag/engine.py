"""
RagEngine - builds every localrag component from one RagConfig.

The engine owns the shared collection -> LiveIndex map, so snapshots
published by ingestion are immediately visible to queries and chat.
"""

from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

from .logging_config import configure_logger_for_debug_trace
from .services.config_loader import RagConfig, load_config
from .services.embedding_service import create_embedding_service
from .services.ingest_manifest import IngestManifest
from .services.ingest_orchestrator import IngestOrchestrator, ProgressCallback
from .services.job_queue import Job, JobQueue
from .services.ollama_client import OllamaClient
from .services.query_logger import QueryLogger
from .services.rag_chat import RagChatService
from .services.rag_types import IngestReport, SearchHit, StreamEvent
from .services.utils import validate_collection_name
from .services.vector_index import LiveIndex, VectorIndex

logger = configure_logger_for_debug_trace(__name__)


class RagEngine:
    """
    Composition root for ingestion, retrieval and chat.

    ::: This is-in-layer Application-Layer.
    ::: This is a facade.

    Args:
        config: Resolved configuration
        embedder: Override the configured embedding service
        chat_client: Override the Ollama chat client
    """

    def __init__(self, config: RagConfig, embedder=None, chat_client=None):
        self.config = config
        self.live_indexes: Dict[str, LiveIndex] = {}
        self.ollama = OllamaClient(config.ollama_url, timeout=config.request_timeout)
        self.embedder = embedder or create_embedding_service(config, ollama_client=self.ollama)
        self.chat_client = chat_client or self.ollama

        self.orchestrator = IngestOrchestrator.from_config(
            config, self.embedder, live_indexes=self.live_indexes
        )
        self.query_logger = QueryLogger(config.query_log_path, enabled=config.query_log_enabled)
        self.chat_service = RagChatService(
            data_dir=config.data_dir,
            embedder=self.embedder,
            chat_client=self.chat_client,
            chat_model=config.chat_model,
            top_k=config.top_k,
            min_score=config.min_score,
            live_indexes=self.live_indexes,
            query_logger=self.query_logger,
        )
        self._queue: Optional[JobQueue] = None

    @classmethod
    def from_project(cls, project_root: Optional[Union[str, Path]] = None) -> "RagEngine":
        return cls(load_config(Path(project_root) if project_root else None))

    @property
    def queue(self) -> JobQueue:
        """The persistent job queue (loaded, and crash-recovered, on first use)."""
        if self._queue is None:
            self._queue = JobQueue(self.config.queue_path, runner=self._run_job)
        return self._queue

    def _run_job(self, job: Job, progress: ProgressCallback) -> IngestReport:
        return self.orchestrator.run(job.path, job.collection, progress=progress)

    def ingest(
        self,
        source_path: Union[str, Path],
        collection: str,
        force: bool = False,
        cleanup_orphans: bool = True,
        progress: Optional[ProgressCallback] = None,
    ) -> IngestReport:
        """Run one ingestion synchronously, outside the job queue."""
        return self.orchestrator.run(
            source_path, collection, force=force,
            cleanup_orphans=cleanup_orphans, progress=progress,
        )

    def query(
        self,
        text: str,
        collection: str,
        k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[SearchHit]:
        validate_collection_name(collection)
        return self.chat_service.retrieve(text, collection, k=k, min_score=min_score)

    def chat(
        self,
        text: str,
        collection: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> Iterator[StreamEvent]:
        validate_collection_name(collection)
        return self.chat_service.stream_chat(text, collection, history)

    def collection_info(self, collection: str) -> Dict[str, Any]:
        """Index and manifest statistics for one collection."""
        validate_collection_name(collection)
        index = VectorIndex.load(self.config.data_dir, collection)
        manifest = IngestManifest(self.config.data_dir, collection).load()
        info = index.get_info()
        info.update({
            "collection": collection,
            "files": manifest.count(),
            "data_dir": str(self.config.data_dir),
        })
        return info

    def close(self) -> None:
        if self._queue is not None:
            self._queue.stop(timeout=5.0)
        self.ollama.close()

    def __enter__(self) -> "RagEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
