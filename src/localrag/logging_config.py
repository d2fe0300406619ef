"""
Logger wiring for localrag.

Two file-backed loggers live in the data directory: debug_trace.log for
ingestion and index work, query_debug.log for retrieval and chat. Both
also echo INFO and above to stderr.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Optional

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _resolve_log_dir() -> Path:
    """Mirror ConfigLoader's data_dir: LOCALRAG_DATA_DIR, else <project root>/.localrag."""
    explicit = os.getenv("LOCALRAG_DATA_DIR")
    if explicit:
        return Path(explicit)
    root = os.getenv("LOCALRAG_PROJECT_ROOT")
    return (Path(root) if root else Path.cwd()) / ".localrag"


def _file_logging_enabled() -> bool:
    # LOCALRAG_DEBUG_LOG="" turns file output off
    return os.getenv("LOCALRAG_DEBUG_LOG") != ""


def _file_handler(filename: str) -> Optional[logging.FileHandler]:
    """
    Open <log dir>/<filename> for appending.

    Returns None when file logging is switched off or the directory
    cannot be created.
    """
    if not _file_logging_enabled():
        return None
    target = _resolve_log_dir()
    try:
        target.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(target / filename, mode='a', encoding='utf-8')
    except OSError:
        return None
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    return handler


class _EagerStderrHandler(logging.StreamHandler):
    """Flushes on every record so progress output and logs interleave correctly."""

    def emit(self, record):
        super().emit(record)
        self.flush()


def _stderr_handler() -> logging.StreamHandler:
    handler = _EagerStderrHandler(sys.stderr)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    return handler


def _attach_handlers(logger: logging.Logger, log_filename: str) -> None:
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    handler = _file_handler(log_filename)
    if handler is not None:
        logger.addHandler(handler)
    logger.addHandler(_stderr_handler())


def get_debug_trace_logger() -> logging.Logger:
    """
    The package root logger; every ``localrag.*`` module logger reaches
    debug_trace.log through it.
    """
    logger = logging.getLogger("localrag")
    if not logger.handlers:
        _attach_handlers(logger, "debug_trace.log")
    return logger


def get_query_debug_logger() -> logging.Logger:
    """Logger for retrieval and chat, writing query_debug.log."""
    logger = logging.getLogger("localrag.query_debug")
    if not logger.handlers:
        _attach_handlers(logger, "query_debug.log")
    return logger


_configured_log_dir: Optional[Path] = None


def reconfigure_log_directory() -> None:
    """
    Reopen both log files under the current data directory.

    The CLI calls this after it has set LOCALRAG_PROJECT_ROOT or
    LOCALRAG_DATA_DIR. No-op when the directory has not changed.
    """
    global _configured_log_dir

    current = _resolve_log_dir()
    if _configured_log_dir == current:
        return

    for logger, filename in (
        (debug_trace_logger, "debug_trace.log"),
        (query_debug_logger, "query_debug.log"),
    ):
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)
        _attach_handlers(logger, filename)

    _configured_log_dir = current


debug_trace_logger = get_debug_trace_logger()
query_debug_logger = get_query_debug_logger()
_configured_log_dir = _resolve_log_dir()


def configure_logger_for_debug_trace(logger_name: str) -> logging.Logger:
    """
    Return a DEBUG-level logger whose records end up in debug_trace.log.

    Package loggers get there by propagation; foreign names have the
    trace handlers attached directly.
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(logging.DEBUG)
    if logger_name == "localrag" or logger_name.startswith("localrag."):
        return logger
    for handler in debug_trace_logger.handlers:
        if handler not in logger.handlers:
            logger.addHandler(handler)
    return logger


def _stderr_handlers():
    for logger in (debug_trace_logger, query_debug_logger):
        for handler in logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                yield handler


def suppress_stderr_logging():
    """Mute stderr echo while a rich live display owns the terminal; files keep logging."""
    for handler in _stderr_handlers():
        handler.setLevel(logging.CRITICAL + 1)


def restore_stderr_logging():
    """Undo suppress_stderr_logging()."""
    for handler in _stderr_handlers():
        handler.setLevel(logging.INFO)
