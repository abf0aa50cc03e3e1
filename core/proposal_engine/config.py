"""Engine configuration.

Reads ~/.proposal_engine/configuration.json, lets PROPOSAL_ENGINE_* environment
variables override individual keys, and exposes the result as an EngineConfig.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from proposal_engine.retry import RetryPolicy

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

ENGINE_HOME = Path.home() / ".proposal_engine"
ENGINE_CONFIG_FILE = ENGINE_HOME / "configuration.json"

DEFAULT_RECURSION_LIMIT = 50
DEFAULT_NODE_TIMEOUT_SECONDS = 60.0

ENV_PREFIX = "PROPOSAL_ENGINE_"


def get_engine_config(path: Path | None = None) -> dict[str, Any]:
    """Load engine configuration from ~/.proposal_engine/configuration.json."""
    config_file = path or ENGINE_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _env(name: str) -> str | None:
    value = os.environ.get(f"{ENV_PREFIX}{name}")
    return value if value else None


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Runtime configuration for the executor, checkpoint store and nodes."""

    checkpoint_backend: str = "file"  # "memory" | "file" | "http"
    checkpoint_dir: Path = field(default_factory=lambda: ENGINE_HOME / "checkpoints")
    checkpoint_url: str | None = None
    checkpoint_api_key: str | None = None
    checkpoint_timeout_seconds: float = 15.0
    fallback_to_memory: bool = True

    recursion_limit: int = DEFAULT_RECURSION_LIMIT
    node_timeout_seconds: float = DEFAULT_NODE_TIMEOUT_SECONDS
    workflow_kind: str = "proposal"

    store_retry: RetryPolicy = field(default_factory=RetryPolicy)
    node_retry: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=3))

    log_level: str = "INFO"
    log_format: str = "auto"

    @classmethod
    def load(cls, path: Path | None = None) -> "EngineConfig":
        """
        Build a config from the JSON file, then apply environment overrides.

        Args:
            path: Alternate configuration file (defaults to ENGINE_CONFIG_FILE)

        Returns:
            EngineConfig with every unset key at its default
        """
        data = get_engine_config(path)
        checkpoint = data.get("checkpoint", {})
        engine = data.get("engine", {})
        logging_cfg = data.get("logging", {})

        config = cls()
        config.checkpoint_backend = checkpoint.get("backend", config.checkpoint_backend)
        if checkpoint.get("dir"):
            config.checkpoint_dir = Path(checkpoint["dir"]).expanduser()
        config.checkpoint_url = checkpoint.get("url", config.checkpoint_url)
        api_key_env_var = checkpoint.get("api_key_env_var")
        if api_key_env_var:
            config.checkpoint_api_key = os.environ.get(api_key_env_var)
        config.checkpoint_timeout_seconds = float(
            checkpoint.get("timeout_seconds", config.checkpoint_timeout_seconds)
        )
        config.fallback_to_memory = bool(
            checkpoint.get("fallback_to_memory", config.fallback_to_memory)
        )
        if "retry" in checkpoint:
            config.store_retry = RetryPolicy(**checkpoint["retry"])

        config.recursion_limit = int(engine.get("recursion_limit", config.recursion_limit))
        config.node_timeout_seconds = float(
            engine.get("node_timeout_seconds", config.node_timeout_seconds)
        )
        config.workflow_kind = engine.get("workflow_kind", config.workflow_kind)
        if "node_retry" in engine:
            config.node_retry = RetryPolicy(**engine["node_retry"])

        config.log_level = logging_cfg.get("level", config.log_level)
        config.log_format = logging_cfg.get("format", config.log_format)

        # Environment wins over the file
        if backend := _env("CHECKPOINT_BACKEND"):
            config.checkpoint_backend = backend
        if checkpoint_dir := _env("CHECKPOINT_DIR"):
            config.checkpoint_dir = Path(checkpoint_dir).expanduser()
        if url := _env("CHECKPOINT_URL"):
            config.checkpoint_url = url
        if api_key := _env("CHECKPOINT_API_KEY"):
            config.checkpoint_api_key = api_key
        if limit := _env("RECURSION_LIMIT"):
            config.recursion_limit = int(limit)
        if timeout := _env("NODE_TIMEOUT"):
            config.node_timeout_seconds = float(timeout)
        if level := _env("LOG_LEVEL"):
            config.log_level = level

        return config
