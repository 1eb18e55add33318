"""Tests for Stowage configuration loading."""

from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError as PydanticValidationError

from stowage.config import MIB, StowageConfig, UploadConfig, load_config

EXAMPLE_CONFIG = Path(__file__).resolve().parent.parent / "stowage.example.yaml"


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "stowage.yaml"
    path.write_text(yaml.dump(data))
    return path


class TestLoadConfig:
    """Tests for load_config()."""

    def test_load_example_config(self, monkeypatch):
        """Loading the example config file populates all sections."""
        monkeypatch.delenv("STOWAGE_MASTER_KEY", raising=False)
        monkeypatch.delenv("STOWAGE_SIGNING_KEY", raising=False)
        config = load_config(EXAMPLE_CONFIG)
        assert config.server.port == 8080
        assert config.auth.admin_tokens == ["change-me-admin-token"]
        assert config.vault.signing_key == "change-me-signing-key"
        assert config.registry.engine == "sqlite"
        assert config.registry.sqlite_path == "./data/registry.db"
        assert config.upload.multipart_threshold_bytes == 50 * MIB
        assert config.upload.chunk_size_bytes == 5 * MIB
        assert config.capacity.refresh_interval_seconds == 3600

    def test_load_minimal_config(self, tmp_path):
        """An empty YAML file yields all defaults."""
        config = load_config(_write(tmp_path, {}))
        assert config == StowageConfig(vault=config.vault)
        assert config.upload.abort_on_failure is False
        assert config.upload.part_concurrency == 1
        assert config.capacity.default_capacity_gb == 25.0

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_nested_registry_sqlite_path(self, tmp_path):
        """registry.sqlite.path is flattened into sqlite_path."""
        config = load_config(
            _write(tmp_path, {"registry": {"engine": "sqlite", "sqlite": {"path": "/x/r.db"}}})
        )
        assert config.registry.sqlite_path == "/x/r.db"

    def test_upload_bytes_win_over_mb(self, tmp_path):
        config = load_config(
            _write(
                tmp_path,
                {"upload": {"chunk_size_bytes": 6 * MIB, "chunk_size_mb": 1}},
            )
        )
        assert config.upload.chunk_size_bytes == 6 * MIB

    def test_single_admin_token_string(self, tmp_path):
        config = load_config(_write(tmp_path, {"auth": {"admin_tokens": "only-one"}}))
        assert config.auth.admin_tokens == ["only-one"]

    def test_environment_overrides_vault_keys(self, tmp_path, monkeypatch):
        monkeypatch.setenv("STOWAGE_MASTER_KEY", "from-env")
        monkeypatch.setenv("STOWAGE_SIGNING_KEY", "signing-from-env")
        config = load_config(
            _write(tmp_path, {"vault": {"master_key": "from-file", "signing_key": "x"}})
        )
        assert config.vault.master_key == "from-env"
        assert config.vault.signing_key == "signing-from-env"


class TestUploadConfig:
    """Field constraints on UploadConfig."""

    def test_rejects_zero_chunk_size(self):
        with pytest.raises(PydanticValidationError):
            UploadConfig(chunk_size_bytes=0)

    def test_rejects_zero_concurrency(self):
        with pytest.raises(PydanticValidationError):
            UploadConfig(part_concurrency=0)
