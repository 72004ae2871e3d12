"""Tests for CLI log configuration."""

from __future__ import annotations

import json
import logging

import pytest
from rich.logging import RichHandler

from driftwatch.logging_setup import JsonLineFormatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


# ── JSON lines ───────────────────────────────────────────────────────


def test_json_format_writes_one_object_per_record(capsys):
    setup_logging("debug", "json")
    log = logging.getLogger("driftwatch.test")
    log.info("built tree with %d leaves", 3)
    log.warning("peer parameters differ")

    lines = capsys.readouterr().err.splitlines()
    assert len(lines) == 2
    first, second = (json.loads(line) for line in lines)
    assert first["level"] == "info"
    assert first["logger"] == "driftwatch.test"
    assert first["message"] == "built tree with 3 leaves"
    assert "exc" not in first
    assert second["level"] == "warning"
    assert first["ts"].endswith("+00:00")


def test_json_format_includes_exception(capsys):
    setup_logging("info", "json")
    try:
        raise ConnectionError("peer went away")
    except ConnectionError:
        logging.getLogger("driftwatch.test").exception("fetch failed")

    entry = json.loads(capsys.readouterr().err.strip())
    assert entry["level"] == "error"
    assert entry["message"] == "fetch failed"
    assert "ConnectionError: peer went away" in entry["exc"]


def test_json_output_stays_off_stdout(capsys):
    setup_logging("info", "json")
    logging.getLogger("driftwatch.test").info("hello")
    captured = capsys.readouterr()
    assert captured.out == ""
    assert json.loads(captured.err)["message"] == "hello"


def test_formatter_escapes_multiline_messages():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "a\nb", None, None)
    line = JsonLineFormatter().format(record)
    assert "\n" not in line
    assert json.loads(line)["message"] == "a\nb"


# ── Levels and text mode ─────────────────────────────────────────────


@pytest.mark.parametrize(
    "name, level",
    [("debug", logging.DEBUG), ("info", logging.INFO), ("warn", logging.WARNING), ("error", logging.ERROR)],
)
def test_levels(name, level):
    setup_logging(name, "text")
    assert logging.getLogger().level == level


def test_text_mode_uses_rich_on_stderr():
    setup_logging("info", "text")
    handlers = logging.getLogger().handlers
    rich_handlers = [h for h in handlers if isinstance(h, RichHandler)]
    assert len(rich_handlers) == 1
    assert rich_handlers[0].console.stderr


def test_repeated_setup_replaces_handler():
    setup_logging("info", "text")
    setup_logging("info", "json")
    handlers = logging.getLogger().handlers
    assert not any(isinstance(h, RichHandler) for h in handlers)
    assert [type(h.formatter) for h in handlers] == [JsonLineFormatter]
