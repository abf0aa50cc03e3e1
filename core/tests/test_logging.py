"""Tests for structured logging and trace context propagation."""

import asyncio
import json
import logging
import sys

import pytest

from proposal_engine.observability import (
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from proposal_engine.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    strip_ansi_codes,
)


def make_record(message: str, level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "proposal_engine.graph.executor", level, __file__, 1, message, None, None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    httpx_level = logging.getLogger("httpx").level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    logging.getLogger("httpx").setLevel(httpx_level)


class TestStructuredFormatter:
    def test_includes_trace_context_and_extras(self):
        set_trace_context(thread_id="user-1::rfp-42::proposal", node_id="deepResearch")
        record = make_record("\033[32m✓ deepResearch\033[0m", event="node_complete", latency_ms=12)

        entry = json.loads(StructuredFormatter().format(record))

        assert entry["level"] == "info"
        assert entry["logger"] == "proposal_engine.graph.executor"
        assert entry["message"] == "✓ deepResearch"
        assert entry["thread_id"] == "user-1::rfp-42::proposal"
        assert entry["node_id"] == "deepResearch"
        assert entry["event"] == "node_complete"
        assert entry["latency_ms"] == 12
        assert "timestamp" in entry

    def test_without_context(self):
        entry = json.loads(StructuredFormatter().format(make_record("hello")))

        assert "thread_id" not in entry
        assert entry["message"] == "hello"

    def test_exception_info(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
            )

        entry = json.loads(StructuredFormatter().format(record))
        assert "RuntimeError: boom" in entry["exception"]


class TestHumanReadableFormatter:
    def test_context_prefix(self):
        set_trace_context(thread_id="t-1", node_id="humanReview")

        line = strip_ansi_codes(HumanReadableFormatter().format(make_record("⏸ paused")))

        assert line == "[INFO    ] [thread:t-1 | node:humanReview] ⏸ paused"

    def test_event_suffix_without_context(self):
        line = strip_ansi_codes(
            HumanReadableFormatter().format(make_record("saved", event="checkpoint"))
        )

        assert line == "[INFO    ] saved [checkpoint]"


class TestConfigureLogging:
    def test_json_format(self, restore_root_logger):
        configure_logging(level="debug", format="json")

        root = restore_root_logger
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert root.level == logging.DEBUG

    def test_auto_uses_environment(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        configure_logging(format="auto")
        assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)

        monkeypatch.delenv("LOG_FORMAT")
        monkeypatch.setenv("ENV", "development")
        configure_logging(format="auto")
        assert isinstance(restore_root_logger.handlers[0].formatter, HumanReadableFormatter)

    def test_quiets_http_client_logs(self, restore_root_logger):
        configure_logging(level="INFO", format="human")
        assert logging.getLogger("httpx").level == logging.WARNING


class TestTraceContext:
    def test_set_merges_fields(self):
        set_trace_context(thread_id="t-1")
        set_trace_context(node_id="a")

        assert get_trace_context() == {"thread_id": "t-1", "node_id": "a"}

    @pytest.mark.asyncio
    async def test_parallel_branches_do_not_share_node_ids(self):
        set_trace_context(thread_id="t-1")

        async def branch(node_id: str) -> dict:
            set_trace_context(node_id=node_id)
            await asyncio.sleep(0)
            return get_trace_context()

        results = await asyncio.gather(
            asyncio.create_task(branch("strategicInitiatives")),
            asyncio.create_task(branch("decisionMakers")),
        )

        assert [r["node_id"] for r in results] == ["strategicInitiatives", "decisionMakers"]
        assert all(r["thread_id"] == "t-1" for r in results)
        assert get_trace_context() == {"thread_id": "t-1"}
