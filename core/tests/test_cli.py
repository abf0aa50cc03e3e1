"""Tests for the thread inspection CLI."""

import asyncio
import json
import logging
import sys

import pytest

from proposal_engine import cli
from proposal_engine.graph.builder import GraphBuilder
from proposal_engine.graph.executor import GraphExecutor
from proposal_engine.interrupt import request_review
from proposal_engine.observability.logging import StructuredFormatter
from proposal_engine.retry import RetryPolicy
from proposal_engine.storage.backends import FileCheckpointBackend
from proposal_engine.storage.checkpoint_store import CheckpointStore

THREAD = "user-1::rfp-42::proposal"


def review_graph():
    def draft(state):
        return {"research_results": {"findings": ["a"]}, "current_step": "research"}

    def review(state):
        return request_review(state, "review", "research")

    builder = GraphBuilder()
    builder.add_node("draft", draft, writes=["research"])
    builder.add_node("review", review)
    builder.add_edge("draft", "review")
    builder.add_terminal("review")
    builder.set_entry_point("draft")
    return builder.compile()


def seed_thread(checkpoint_dir) -> None:
    async def _seed():
        store = CheckpointStore(FileCheckpointBackend(checkpoint_dir))
        executor = GraphExecutor(review_graph(), store, retry_policy=RetryPolicy(base_delay=0.0))
        await executor.run(THREAD, input_override={"context": {"rfp_id": "42"}})

    asyncio.run(_seed())


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def checkpoint_dir(tmp_path):
    path = tmp_path / "checkpoints"
    seed_thread(path)
    return path


def run_cli(monkeypatch, checkpoint_dir, *argv) -> int:
    monkeypatch.setattr(
        sys,
        "argv",
        ["proposal-engine", "--backend", "file", "--checkpoint-dir", str(checkpoint_dir), *argv],
    )
    with pytest.raises(SystemExit) as exc_info:
        cli.main()
    return exc_info.value.code


class TestCli:
    def test_state(self, monkeypatch, capsys, checkpoint_dir):
        assert run_cli(monkeypatch, checkpoint_dir, "state", THREAD) == 0

        state = json.loads(capsys.readouterr().out)
        assert state["context"] == {"rfp_id": "42"}
        assert state["research_status"] == "awaiting_review"

    def test_history(self, monkeypatch, capsys, checkpoint_dir):
        assert run_cli(monkeypatch, checkpoint_dir, "history", THREAD, "--limit", "2") == 0

        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 2
        assert "review" in lines[0]
        assert "[interrupted]" in lines[0]

    def test_interrupt(self, monkeypatch, capsys, checkpoint_dir):
        assert run_cli(monkeypatch, checkpoint_dir, "interrupt", THREAD) == 0

        shown = json.loads(capsys.readouterr().out)
        assert shown["interrupt_status"]["interruption_point"] == "review"
        assert shown["interrupt_metadata"]["content_reference"] == "research"

    def test_replay(self, monkeypatch, capsys, checkpoint_dir):
        assert run_cli(monkeypatch, checkpoint_dir, "replay", THREAD) == 0
        assert "matches sequence 2" in capsys.readouterr().out

    def test_unknown_thread(self, monkeypatch, capsys, checkpoint_dir):
        assert run_cli(monkeypatch, checkpoint_dir, "state", "user-1::rfp-0::proposal") == 1
        assert "No checkpoints" in capsys.readouterr().err


class TestCliLogging:
    @pytest.fixture
    def config_file(self, tmp_path):
        path = tmp_path / "configuration.json"
        path.write_text(json.dumps({"logging": {"level": "DEBUG", "format": "json"}}))
        return path

    def test_logging_follows_configuration(self, monkeypatch, checkpoint_dir, config_file):
        monkeypatch.delenv("PROPOSAL_ENGINE_LOG_LEVEL", raising=False)

        argv = ["--config", str(config_file), "state", THREAD]
        assert run_cli(monkeypatch, checkpoint_dir, *argv) == 0

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[-1].formatter, StructuredFormatter)

    def test_log_level_flag_overrides_configuration(
        self, monkeypatch, checkpoint_dir, config_file
    ):
        assert (
            run_cli(
                monkeypatch, checkpoint_dir,
                "--config", str(config_file), "--log-level", "ERROR", "state", THREAD,
            )
            == 0
        )

        assert logging.getLogger().level == logging.ERROR
