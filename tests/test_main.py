"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator

import pytest

from orchestrator.graph import NodeStatus
from orchestrator.main import JsonFormatter, setup_logging


@pytest.fixture
def restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


def make_record(**extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="orchestrator.executor",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Node applied",
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJsonFormatter:
    """Tests for JSON log rendering."""

    def test_basic_fields(self) -> None:
        """Test the core fields are present."""
        data = json.loads(JsonFormatter().format(make_record()))
        assert data["level"] == "INFO"
        assert data["message"] == "Node applied"
        assert data["logger"] == "orchestrator.executor"
        assert data["timestamp"].endswith("Z")

    def test_extra_fields(self) -> None:
        """Test extra context is emitted as top-level keys."""
        data = json.loads(JsonFormatter().format(make_record(node_id="kv", attempts=2)))
        assert data["node_id"] == "kv"
        assert data["attempts"] == 2
        assert "lineno" not in data

    def test_non_json_values(self) -> None:
        """Test enums and sets in extras do not break rendering."""
        data = json.loads(
            JsonFormatter().format(make_record(status=NodeStatus.APPLIED, nodes={"a"}))
        )
        assert "applied" in data["status"]
        assert data["nodes"] == "{'a'}"

    def test_exception(self) -> None:
        """Test exception info is rendered."""
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()
        data = json.loads(JsonFormatter().format(record))
        assert "ValueError: boom" in data["exception"]


class TestSetupLogging:
    """Tests for root logger configuration."""

    @pytest.mark.usefixtures("restore_root_logger")
    def test_json_handler(self) -> None:
        """Test JSON output installs the JSON formatter."""
        setup_logging("DEBUG", json_logs=True)
        root = logging.getLogger()
        ours = [h for h in root.handlers if getattr(h, "_orchestrator_handler", False)]
        assert len(ours) == 1
        assert isinstance(ours[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG

    @pytest.mark.usefixtures("restore_root_logger")
    def test_repeated_setup_replaces_handler(self) -> None:
        """Test calling setup twice leaves a single handler."""
        setup_logging("INFO", json_logs=True)
        setup_logging("WARNING", json_logs=False)
        root = logging.getLogger()
        ours = [h for h in root.handlers if getattr(h, "_orchestrator_handler", False)]
        assert len(ours) == 1
        assert not isinstance(ours[0].formatter, JsonFormatter)
        assert root.level == logging.WARNING
