"""
Configuration Loader Service

Loads localrag configuration from localrag.json in the project root.
Environment variables always take precedence over config file values.

Config file location (in order of precedence):
1. LOCALRAG_PROJECT_ROOT/localrag.json (if LOCALRAG_PROJECT_ROOT is set)
2. CWD/localrag.json

Supported settings in localrag.json:
{
    "data_dir": ".localrag",                       // -> LOCALRAG_DATA_DIR
    "embedding_provider": "ollama",                // -> LOCALRAG_EMBEDDING_PROVIDER
    "embedding_model": "nomic-embed-text",         // -> LOCALRAG_EMBEDDING_MODEL
    "ollama_url": "http://localhost:11434",        // -> LOCALRAG_OLLAMA_URL
    "chat_model": "llama3.1:8b",                   // -> LOCALRAG_CHAT_MODEL
    "chunk_size": 1000,                            // -> LOCALRAG_CHUNK_SIZE (chars)
    "chunk_overlap": 200,                          // -> LOCALRAG_CHUNK_OVERLAP (chars)
    "top_k": 5,                                    // -> LOCALRAG_TOP_K
    "min_score": 0.3,                              // -> LOCALRAG_MIN_SCORE
    "checkpoint_every": 10,                        // -> LOCALRAG_CHECKPOINT_EVERY (files)
    "request_timeout": 60,                         // -> LOCALRAG_REQUEST_TIMEOUT (seconds)
    "accepted_extensions": ".md,.txt,.ps1,.xml",   // -> LOCALRAG_ACCEPTED_EXTENSIONS
    "embedding_cache_size": 1000,                  // -> LOCALRAG_EMBEDDING_CACHE_SIZE
    "query_log_enabled": true                      // -> LOCALRAG_QUERY_LOG_ENABLED
}
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..localrag_exceptions import ValidationError
from ..logging_config import configure_logger_for_debug_trace

logger = configure_logger_for_debug_trace(__name__)

CONFIG_FILE_NAME = "localrag.json"

DEFAULT_EXTENSIONS: Tuple[str, ...] = (
    ".md", ".markdown", ".txt", ".ps1", ".psm1", ".js", ".py", ".xml",
)


@dataclass(frozen=True)
class RagConfig:
    """
    Resolved configuration, built once at startup and passed explicitly
    into the engine components.
    """
    project_root: Path
    data_dir: Path
    embedding_provider: str = "ollama"
    embedding_model: str = "nomic-embed-text"
    ollama_url: str = "http://localhost:11434"
    chat_model: str = "llama3.1:8b"
    chunk_size: int = 1000
    chunk_overlap: int = 200
    top_k: int = 5
    min_score: float = 0.3
    checkpoint_every: int = 10
    request_timeout: float = 60.0
    accepted_extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    embedding_cache_size: int = 1000
    query_log_enabled: bool = True
    api_key: Optional[str] = field(default=None, repr=False)

    @property
    def queue_path(self) -> Path:
        return self.data_dir / "queue.json"

    @property
    def query_log_path(self) -> Path:
        return self.data_dir / "logs" / "queries.jsonl"

    def validate(self) -> "RagConfig":
        """Reject settings the chunker and orchestrator cannot work with."""
        if self.chunk_size < 1:
            raise ValidationError(f"chunk_size must be positive, got {self.chunk_size}")
        if not 0 <= self.chunk_overlap < self.chunk_size:
            raise ValidationError(
                f"chunk_overlap must be in [0, chunk_size), got {self.chunk_overlap}"
            )
        if self.checkpoint_every < 1:
            raise ValidationError("checkpoint_every must be at least 1")
        if self.request_timeout <= 0:
            raise ValidationError("request_timeout must be positive")
        if not self.accepted_extensions:
            raise ValidationError("accepted_extensions must not be empty")
        return self


class ConfigLoader:
    """
    Loads configuration from localrag.json file.

    Priority: Environment variables > localrag.json > defaults
    """

    # Mapping from localrag.json keys to environment variable names
    CONFIG_KEY_TO_ENV = {
        "data_dir": "LOCALRAG_DATA_DIR",
        "embedding_provider": "LOCALRAG_EMBEDDING_PROVIDER",
        "embedding_model": "LOCALRAG_EMBEDDING_MODEL",
        "ollama_url": "LOCALRAG_OLLAMA_URL",
        "chat_model": "LOCALRAG_CHAT_MODEL",
        "chunk_size": "LOCALRAG_CHUNK_SIZE",
        "chunk_overlap": "LOCALRAG_CHUNK_OVERLAP",
        "top_k": "LOCALRAG_TOP_K",
        "min_score": "LOCALRAG_MIN_SCORE",
        "checkpoint_every": "LOCALRAG_CHECKPOINT_EVERY",
        "request_timeout": "LOCALRAG_REQUEST_TIMEOUT",
        "accepted_extensions": "LOCALRAG_ACCEPTED_EXTENSIONS",
        "embedding_cache_size": "LOCALRAG_EMBEDDING_CACHE_SIZE",
        "query_log_enabled": "LOCALRAG_QUERY_LOG_ENABLED",
        "api_key": "LOCALRAG_API_KEY",
    }

    DEFAULTS: Dict[str, Any] = {
        "data_dir": ".localrag",
        "embedding_provider": "ollama",
        "embedding_model": "nomic-embed-text",
        "ollama_url": "http://localhost:11434",
        "chat_model": "llama3.1:8b",
        "chunk_size": 1000,
        "chunk_overlap": 200,
        "top_k": 5,
        "min_score": 0.3,
        "checkpoint_every": 10,
        "request_timeout": 60.0,
        "accepted_extensions": ",".join(DEFAULT_EXTENSIONS),
        "embedding_cache_size": 1000,
        "query_log_enabled": True,
        "api_key": None,
    }

    def __init__(self):
        self._config: Dict[str, Any] = {}
        self._config_path: Optional[Path] = None
        self._project_root: Optional[Path] = None
        self._loaded = False

    def load(self, project_root: Optional[Path] = None) -> bool:
        """
        Load configuration from localrag.json.

        Args:
            project_root: Project root directory. If None, uses
                LOCALRAG_PROJECT_ROOT or CWD.

        Returns:
            True if config file was found and loaded, False otherwise.

        Raises:
            ValidationError: If the config file exists but is not valid JSON
        """
        if self._loaded:
            return self._config_path is not None

        if project_root is None:
            env_root = os.getenv("LOCALRAG_PROJECT_ROOT")
            project_root = Path(env_root) if env_root else Path.cwd()
        self._project_root = Path(project_root)

        config_path = self._project_root / CONFIG_FILE_NAME
        if config_path.exists():
            try:
                with open(config_path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValidationError(f"Invalid JSON in {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise ValidationError(f"{config_path} must contain a JSON object")
            unknown = set(data) - set(self.DEFAULTS)
            if unknown:
                logger.warning(f"Ignoring unknown config keys in {config_path}: {sorted(unknown)}")
            self._config = data
            self._config_path = config_path
            logger.info(f"Loaded config from: {config_path}")

        self._loaded = True
        return self._config_path is not None

    def get(self, key: str, default: Any = None) -> Any:
        """Get a raw config file value."""
        return self._config.get(key, default)

    @staticmethod
    def _convert(raw: Any, default_value: Any) -> Any:
        """Convert an env var / file value to the type of its default."""
        if isinstance(default_value, bool):
            if isinstance(raw, bool):
                return raw
            return str(raw).strip().lower() in ('true', '1', 'yes')
        if isinstance(default_value, int):
            return int(raw)
        if isinstance(default_value, float):
            return float(raw)
        return raw

    def get_value(self, key: str) -> Any:
        """Resolve one setting: env var, then config file, then default."""
        default_value = self.DEFAULTS[key]
        env_var = self.CONFIG_KEY_TO_ENV.get(key)
        raw = os.getenv(env_var) if env_var else None
        source = env_var
        if raw is None and key in self._config:
            raw = self._config[key]
            source = CONFIG_FILE_NAME
        if raw is None:
            return default_value
        try:
            return self._convert(raw, default_value)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid value for {key} from {source}: {raw!r}")

    def get_rag_config(self) -> RagConfig:
        """
        Get the resolved configuration with defaults applied.

        Returns:
            Validated RagConfig
        """
        if not self._loaded:
            self.load()

        values = {key: self.get_value(key) for key in self.DEFAULTS}

        data_dir = Path(values.pop("data_dir"))
        if not data_dir.is_absolute():
            data_dir = self._project_root / data_dir

        extensions = values.pop("accepted_extensions")
        if isinstance(extensions, str):
            extensions = extensions.split(",")
        values["accepted_extensions"] = tuple(
            _normalize_extension(ext) for ext in extensions if str(ext).strip()
        )

        return RagConfig(
            project_root=self._project_root,
            data_dir=data_dir,
            **values,
        ).validate()

    @property
    def config_path(self) -> Optional[Path]:
        """Path to the loaded config file, or None if not loaded."""
        return self._config_path

    @property
    def config(self) -> Dict[str, Any]:
        """The loaded configuration dictionary."""
        return self._config.copy()


def _normalize_extension(ext: str) -> str:
    ext = str(ext).strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


def load_config(project_root: Optional[Path] = None) -> RagConfig:
    """
    Load localrag.json (if present) and resolve the full configuration.

    Args:
        project_root: Project root directory. If None, auto-detects.

    Returns:
        Validated RagConfig
    """
    loader = ConfigLoader()
    loader.load(project_root)
    return loader.get_rag_config()
