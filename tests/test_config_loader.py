"""
Tests for ConfigLoader: defaults, localrag.json values and env overrides.
"""

import json

import pytest

from localrag.localrag_exceptions import ValidationError
from localrag.services.config_loader import (
    DEFAULT_EXTENSIONS,
    ConfigLoader,
    RagConfig,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Remove LOCALRAG_* settings inherited from the environment."""
    for env_var in ConfigLoader.CONFIG_KEY_TO_ENV.values():
        monkeypatch.delenv(env_var, raising=False)
    monkeypatch.delenv("LOCALRAG_PROJECT_ROOT", raising=False)


def write_config(root, data):
    (root / "localrag.json").write_text(json.dumps(data), encoding="utf-8")


class TestDefaults:
    """Tests for configuration without a file."""

    def test_defaults(self, tmp_path):
        """Without a file every setting takes its default."""
        config = load_config(tmp_path)
        assert config.project_root == tmp_path
        assert config.data_dir == tmp_path / ".localrag"
        assert config.embedding_provider == "ollama"
        assert config.embedding_model == "nomic-embed-text"
        assert config.chunk_size == 1000
        assert config.chunk_overlap == 200
        assert config.top_k == 5
        assert config.min_score == pytest.approx(0.3)
        assert config.accepted_extensions == DEFAULT_EXTENSIONS
        assert config.query_log_enabled is True

    def test_derived_paths(self, tmp_path):
        """Queue and query log live under the data directory."""
        config = load_config(tmp_path)
        assert config.queue_path == tmp_path / ".localrag" / "queue.json"
        assert config.query_log_path == tmp_path / ".localrag" / "logs" / "queries.jsonl"

    def test_project_root_from_env(self, tmp_path, monkeypatch):
        """LOCALRAG_PROJECT_ROOT locates the config file."""
        write_config(tmp_path, {"top_k": 9})
        monkeypatch.setenv("LOCALRAG_PROJECT_ROOT", str(tmp_path))
        assert load_config().top_k == 9


class TestConfigFile:
    """Tests for values from localrag.json."""

    def test_file_values(self, tmp_path):
        """File values override defaults."""
        write_config(tmp_path, {
            "data_dir": "store",
            "chat_model": "mistral",
            "chunk_size": 500,
            "chunk_overlap": 50,
            "accepted_extensions": ["md", ".TXT"],
            "query_log_enabled": False,
        })
        loader = ConfigLoader()
        assert loader.load(tmp_path) is True
        config = loader.get_rag_config()
        assert config.data_dir == tmp_path / "store"
        assert config.chat_model == "mistral"
        assert config.chunk_size == 500
        assert config.accepted_extensions == (".md", ".txt")
        assert config.query_log_enabled is False
        assert loader.config_path == tmp_path / "localrag.json"

    def test_absolute_data_dir(self, tmp_path):
        """Absolute data directories are used as given."""
        target = tmp_path / "elsewhere"
        write_config(tmp_path, {"data_dir": str(target)})
        assert load_config(tmp_path).data_dir == target

    def test_invalid_json(self, tmp_path):
        """A broken config file is a validation error."""
        (tmp_path / "localrag.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_config(tmp_path)

    def test_non_object(self, tmp_path):
        """The file must hold a JSON object."""
        write_config(tmp_path, [1, 2])
        with pytest.raises(ValidationError):
            load_config(tmp_path)

    def test_bad_value_type(self, tmp_path):
        """Values that cannot be converted are refused."""
        write_config(tmp_path, {"chunk_size": "large"})
        with pytest.raises(ValidationError):
            load_config(tmp_path)

    def test_inconsistent_chunking(self, tmp_path):
        """Overlap must stay below the chunk size."""
        write_config(tmp_path, {"chunk_size": 100, "chunk_overlap": 100})
        with pytest.raises(ValidationError):
            load_config(tmp_path)


class TestEnvOverrides:
    """Tests for environment variable precedence."""

    def test_env_beats_file(self, tmp_path, monkeypatch):
        """Environment variables win over the file."""
        write_config(tmp_path, {"top_k": 3, "embedding_model": "file-model"})
        monkeypatch.setenv("LOCALRAG_TOP_K", "8")
        monkeypatch.setenv("LOCALRAG_MIN_SCORE", "0.55")
        config = load_config(tmp_path)
        assert config.top_k == 8
        assert config.min_score == pytest.approx(0.55)
        assert config.embedding_model == "file-model"

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("YES", True), ("false", False), ("0", False),
    ])
    def test_bool_parsing(self, tmp_path, monkeypatch, raw, expected):
        """Booleans accept the usual spellings."""
        monkeypatch.setenv("LOCALRAG_QUERY_LOG_ENABLED", raw)
        assert load_config(tmp_path).query_log_enabled is expected

    def test_extension_list(self, tmp_path, monkeypatch):
        """Extensions are a comma-separated list."""
        monkeypatch.setenv("LOCALRAG_ACCEPTED_EXTENSIONS", ".md, txt ,,")
        assert load_config(tmp_path).accepted_extensions == (".md", ".txt")

    def test_bad_env_value(self, tmp_path, monkeypatch):
        """Unparseable numbers are refused."""
        monkeypatch.setenv("LOCALRAG_CHUNK_SIZE", "ten")
        with pytest.raises(ValidationError):
            load_config(tmp_path)

    def test_api_key_hidden_from_repr(self, tmp_path, monkeypatch):
        """The API key never appears in the config repr."""
        monkeypatch.setenv("LOCALRAG_API_KEY", "sk-secret")
        config = load_config(tmp_path)
        assert config.api_key == "sk-secret"
        assert "sk-secret" not in repr(config)


class TestRagConfigValidate:
    """Tests for RagConfig.validate."""

    def test_valid(self, tmp_path):
        """Defaults validate."""
        config = RagConfig(project_root=tmp_path, data_dir=tmp_path)
        assert config.validate() is config

    @pytest.mark.parametrize("overrides", [
        {"chunk_size": 0},
        {"chunk_overlap": -1},
        {"checkpoint_every": 0},
        {"request_timeout": 0},
        {"accepted_extensions": ()},
    ])
    def test_invalid(self, tmp_path, overrides):
        """Unusable settings are refused."""
        with pytest.raises(ValidationError):
            RagConfig(project_root=tmp_path, data_dir=tmp_path, **overrides).validate()
