"""Tests for EngineConfig loading: file values, environment overrides, defaults."""

import json
from pathlib import Path

import pytest

from proposal_engine.config import (
    DEFAULT_NODE_TIMEOUT_SECONDS,
    DEFAULT_RECURSION_LIMIT,
    ENV_PREFIX,
    EngineConfig,
    get_engine_config,
)
from proposal_engine.retry import RetryPolicy

ENV_KEYS = [
    "CHECKPOINT_BACKEND",
    "CHECKPOINT_DIR",
    "CHECKPOINT_URL",
    "CHECKPOINT_API_KEY",
    "RECURSION_LIMIT",
    "NODE_TIMEOUT",
    "LOG_LEVEL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(f"{ENV_PREFIX}{key}", raising=False)


def write_config(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "configuration.json"
    path.write_text(json.dumps(data))
    return path


class TestGetEngineConfig:
    def test_missing_file(self, tmp_path):
        assert get_engine_config(tmp_path / "nope.json") == {}

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "configuration.json"
        path.write_text("{not json")
        assert get_engine_config(path) == {}

    def test_byte_order_mark(self, tmp_path):
        path = tmp_path / "configuration.json"
        path.write_bytes(b'\xef\xbb\xbf{"engine": {"recursion_limit": 7}}')
        assert get_engine_config(path) == {"engine": {"recursion_limit": 7}}


class TestEngineConfigLoad:
    def test_defaults(self, tmp_path):
        config = EngineConfig.load(tmp_path / "nope.json")

        assert config.checkpoint_backend == "file"
        assert config.recursion_limit == DEFAULT_RECURSION_LIMIT
        assert config.node_timeout_seconds == DEFAULT_NODE_TIMEOUT_SECONDS
        assert config.fallback_to_memory is True
        assert config.node_retry.max_attempts == 3
        assert config.workflow_kind == "proposal"

    def test_file_values(self, tmp_path, monkeypatch):
        monkeypatch.setenv("GRANTS_CHECKPOINT_KEY", "s3cret")
        path = write_config(
            tmp_path,
            {
                "checkpoint": {
                    "backend": "http",
                    "url": "https://checkpoints.internal",
                    "api_key_env_var": "GRANTS_CHECKPOINT_KEY",
                    "timeout_seconds": 5,
                    "fallback_to_memory": False,
                    "retry": {"max_attempts": 2, "base_delay": 0.1},
                },
                "engine": {
                    "recursion_limit": 80,
                    "node_timeout_seconds": 30,
                    "workflow_kind": "grant",
                    "node_retry": {"max_attempts": 5},
                },
                "logging": {"level": "DEBUG", "format": "json"},
            },
        )

        config = EngineConfig.load(path)

        assert config.checkpoint_backend == "http"
        assert config.checkpoint_url == "https://checkpoints.internal"
        assert config.checkpoint_api_key == "s3cret"
        assert config.checkpoint_timeout_seconds == 5.0
        assert config.fallback_to_memory is False
        assert config.store_retry == RetryPolicy(max_attempts=2, base_delay=0.1)
        assert config.recursion_limit == 80
        assert config.node_timeout_seconds == 30.0
        assert config.workflow_kind == "grant"
        assert config.node_retry.max_attempts == 5
        assert config.log_level == "DEBUG"
        assert config.log_format == "json"

    def test_checkpoint_dir_is_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("HOME", str(tmp_path))
        path = write_config(tmp_path, {"checkpoint": {"dir": "~/threads"}})

        config = EngineConfig.load(path)

        assert config.checkpoint_dir == tmp_path / "threads"

    def test_environment_wins(self, tmp_path, monkeypatch):
        path = write_config(
            tmp_path, {"checkpoint": {"backend": "http"}, "engine": {"recursion_limit": 80}}
        )
        monkeypatch.setenv(f"{ENV_PREFIX}CHECKPOINT_BACKEND", "memory")
        monkeypatch.setenv(f"{ENV_PREFIX}RECURSION_LIMIT", "12")
        monkeypatch.setenv(f"{ENV_PREFIX}NODE_TIMEOUT", "2.5")
        monkeypatch.setenv(f"{ENV_PREFIX}LOG_LEVEL", "WARNING")
        monkeypatch.setenv(f"{ENV_PREFIX}CHECKPOINT_DIR", str(tmp_path / "cp"))

        config = EngineConfig.load(path)

        assert config.checkpoint_backend == "memory"
        assert config.recursion_limit == 12
        assert config.node_timeout_seconds == 2.5
        assert config.log_level == "WARNING"
        assert config.checkpoint_dir == tmp_path / "cp"

    def test_empty_environment_values_are_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv(f"{ENV_PREFIX}RECURSION_LIMIT", "")

        config = EngineConfig.load(tmp_path / "nope.json")

        assert config.recursion_limit == DEFAULT_RECURSION_LIMIT
