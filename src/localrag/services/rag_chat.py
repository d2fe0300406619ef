"""
RAG Chat Service - retrieval, prompt assembly and the streamed answer.

A chat turn produces, in order:
    status     retrieval has started
    citations  the chunks the answer is grounded on
    token...   one event per generated token
    error      only if retrieval or generation failed
    done       always last
"""

import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from ..localrag_exceptions import LocalRagError
from ..logging_config import configure_logger_for_debug_trace, query_debug_logger
from .query_logger import QueryLogger
from .rag_types import SearchHit, StreamEvent
from .vector_index import LiveIndex

logger = configure_logger_for_debug_trace(__name__)

SYSTEM_PREAMBLE = (
    "You are a helpful assistant. Use ONLY the provided context to answer. "
    "If unsure, say you don't know."
)
NO_CONTEXT = "No relevant local documents found."


def build_context(hits: List[SearchHit]) -> str:
    if not hits:
        return NO_CONTEXT
    return "\n\n".join(
        f"[Source: {hit.metadata.file_name}]\n{hit.metadata.full_text or hit.metadata.text_preview}"
        for hit in hits
    )


def build_system_prompt(hits: List[SearchHit]) -> str:
    return f"{SYSTEM_PREAMBLE}\n\nCONTEXT:\n{build_context(hits)}"


def build_citations(hits: List[SearchHit]) -> List[Dict[str, object]]:
    return [
        {
            "fileName": hit.metadata.file_name,
            "headerContext": hit.metadata.header_context,
            "score": round(hit.score, 4),
            "preview": hit.metadata.text_preview,
        }
        for hit in hits
    ]


class RagChatService:
    """
    Answers questions from one collection's indexed chunks.

    ::: This is-in-layer Service-Layer.
    ::: This is stateless.

    Args:
        data_dir: Directory holding the collection files
        embedder: Object with `model_name` and `generate_embedding(text)`
        chat_client: Object with `chat_stream(messages, model)` yielding tokens
        chat_model: Model name passed to the chat client
        live_indexes: Shared collection -> LiveIndex map (filled on demand)
        query_logger: Optional JSONL query log
    """

    def __init__(
        self,
        data_dir: Union[str, Path],
        embedder,
        chat_client,
        chat_model: str,
        top_k: int = 5,
        min_score: float = 0.3,
        live_indexes: Optional[Dict[str, LiveIndex]] = None,
        query_logger: Optional[QueryLogger] = None,
    ):
        self.data_dir = Path(data_dir)
        self.embedder = embedder
        self.chat_client = chat_client
        self.chat_model = chat_model
        self.top_k = top_k
        self.min_score = min_score
        self.live_indexes = live_indexes if live_indexes is not None else {}
        self.query_logger = query_logger

    def live_index(self, collection: str) -> LiveIndex:
        """The collection's live index, loaded from disk on first use."""
        live = self.live_indexes.setdefault(collection, LiveIndex())
        if not live.is_loaded:
            live.load(self.data_dir, collection, required_model=self.embedder.model_name)
        return live

    def retrieve(
        self,
        query: str,
        collection: str,
        k: Optional[int] = None,
        min_score: Optional[float] = None,
    ) -> List[SearchHit]:
        """
        Embed the query and return the nearest chunks.

        Raises:
            EmbeddingProviderError: If the query cannot be embedded
            CorruptionError / ModelFingerprintMismatchError: From loading the index
        """
        k = self.top_k if k is None else k
        min_score = self.min_score if min_score is None else min_score
        started = time.time()

        live = self.live_index(collection)
        vector = self.embedder.generate_embedding(query)
        hits = live.find_nearest(vector, k, min_score, model=self.embedder.model_name)

        duration_ms = (time.time() - started) * 1000
        query_debug_logger.debug(
            f"[{collection}] {len(hits)} hits in {duration_ms:.0f}ms for: {query[:120]}"
        )
        if self.query_logger is not None:
            self.query_logger.log({
                "query": query,
                "collection": collection,
                "model": self.embedder.model_name,
                "topK": k,
                "minScore": min_score,
                "resultCount": len(hits),
                "topScore": round(hits[0].score, 4) if hits else None,
                "sources": [hit.metadata.file_name for hit in hits],
                "durationMs": round(duration_ms, 1),
            })
        return hits

    def build_messages(
        self,
        query: str,
        hits: List[SearchHit],
        history: Optional[List[Dict[str, str]]] = None,
    ) -> List[Dict[str, str]]:
        return (
            [{"role": "system", "content": build_system_prompt(hits)}]
            + list(history or [])
            + [{"role": "user", "content": query}]
        )

    def stream_chat(
        self,
        query: str,
        collection: str,
        history: Optional[List[Dict[str, str]]] = None,
    ) -> Iterator[StreamEvent]:
        """
        Retrieve context for `query` and stream the model's answer.

        Never raises for provider or index failures; they become an
        error event followed by done.
        """
        yield StreamEvent.status("Searching local documents...")
        try:
            hits = self.retrieve(query, collection)
        except LocalRagError as e:
            logger.error(f"Retrieval failed for '{collection}': {e}")
            yield StreamEvent.error(str(e))
            yield StreamEvent.done({"tokens": 0})
            return

        yield StreamEvent(StreamEvent.CITATIONS, build_citations(hits))

        tokens = 0
        try:
            for token in self.chat_client.chat_stream(
                self.build_messages(query, hits, history), self.chat_model
            ):
                tokens += 1
                yield StreamEvent.token(token)
        except LocalRagError as e:
            logger.error(f"Chat generation failed: {e}")
            yield StreamEvent.error(str(e))

        yield StreamEvent.done({"tokens": tokens})
