"""
Query Logger - appends one JSON line per retrieval query.

Log location: <data_dir>/logs/queries.jsonl
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from ..logging_config import configure_logger_for_debug_trace

logger = configure_logger_for_debug_trace(__name__)

MAX_QUERY_CHARS = 500


def truncate_query(query: str) -> str:
    if len(query) > MAX_QUERY_CHARS:
        return query[:MAX_QUERY_CHARS] + "..."
    return query


class QueryLogger:
    """
    JSONL query log.

    ::: This is-in-layer Service-Layer.
    ::: This is thread-safe.

    A failed write is reported through the debug trace logger and never
    interrupts the query that produced it.
    """

    def __init__(self, log_path: Union[str, Path], enabled: bool = True):
        self.log_path = Path(log_path)
        self.enabled = enabled
        self._lock = threading.Lock()

    def log(self, entry: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Append an entry (a timestamp is added when missing).

        Returns:
            The entry as written, or None if logging is disabled or failed
        """
        if not self.enabled:
            return None

        record = dict(entry)
        record.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        if isinstance(record.get("query"), str):
            record["query"] = truncate_query(record["query"])

        line = json.dumps(record, ensure_ascii=False) + "\n"
        with self._lock:
            try:
                self.log_path.parent.mkdir(parents=True, exist_ok=True)
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(line)
            except OSError as e:
                logger.warning(f"Failed to write query log {self.log_path}: {e}")
                return None
        return record
