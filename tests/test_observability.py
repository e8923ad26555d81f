from __future__ import annotations

from datetime import datetime, timezone
import io
import logging
from pathlib import Path
import sys

import pytest

from issuepilot import observability
from issuepilot.observability import configure_logging, log_event, log_warning_event


def test_configure_logging_quiet_mode_is_idempotent() -> None:
    configure_logging(verbose=False)
    logger = logging.getLogger("issuepilot")
    assert logger.propagate is False
    assert logger.level > logging.CRITICAL
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)

    configure_logging(verbose=None)
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_mode_is_idempotent() -> None:
    configure_logging(verbose=True)
    logger = logging.getLogger("issuepilot")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert handler.stream is sys.stderr
    assert handler.formatter is not None
    assert "%(threadName)s" in handler.formatter._fmt

    configure_logging(verbose=True)
    assert len(logger.handlers) == 1


def test_configure_logging_low_mode_keeps_lifecycle_events(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_logging(verbose="low")
    logger = logging.getLogger("issuepilot.tests.low")

    logger.info("event=session_polled issue_number=1")
    logger.info("event=issue_scoped issue_number=1")
    logger.info("plain_message=ignored")
    logger.info("event=")
    logger.warning("event=github_comment_forbidden issue_number=1")

    stderr = capsys.readouterr().err
    assert "event=session_polled" not in stderr
    assert "event=issue_scoped issue_number=1" in stderr
    assert "plain_message=ignored" not in stderr
    assert all(not line.endswith("event=") for line in stderr.splitlines())
    assert "event=github_comment_forbidden issue_number=1" in stderr


def test_configure_logging_writes_utc_daily_file_without_stderr(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    configure_logging(verbose="high", state_dir=tmp_path, to_stderr=False)
    logger = logging.getLogger("issuepilot.tests.file")
    logger.info("event=poll_scheduled delay_seconds=10")

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = tmp_path / "logs" / f"{date_key}.log"
    assert "event=poll_scheduled delay_seconds=10" in log_path.read_text(encoding="utf-8")
    assert capsys.readouterr().err == ""


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging(verbose="noisy")


def test_daily_file_handler_routes_emit_errors(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    handler = observability._DailyUtcFileHandler(tmp_path)
    called: dict[str, object] = {}

    def broken_stream() -> object:
        raise RuntimeError("boom")

    monkeypatch.setattr(handler, "_current_stream", broken_stream)
    monkeypatch.setattr(handler, "handleError", lambda record: called.setdefault("record", record))

    record = logging.LogRecord(
        name="issuepilot.tests.observability",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="event=issue_scoped issue_number=1",
        args=(),
        exc_info=None,
    )
    handler.emit(record)
    assert "record" in called


def test_log_event_formats_and_normalizes_fields() -> None:
    logger = logging.getLogger("issuepilot.tests.observability")
    logger.handlers.clear()
    stream = io.StringIO()
    logger.addHandler(logging.StreamHandler(stream))
    logger.setLevel(logging.INFO)
    logger.propagate = False

    log_event(
        logger,
        "test_event",
        b=2,
        a="multi\nline value",
        none_value=None,
        bool_value=True,
        empty="   ",
        long_text="x" * 121,
        complex_value={"k": "v"},
        eq="a=b",
    )
    log_warning_event(logger, "warned", issue_number=3)

    first, second = stream.getvalue().strip().splitlines()
    assert first.startswith("event=test_event ")
    assert first.index("a=") < first.index("b=")
    assert 'a="multi line value"' in first
    assert "none_value=null" in first
    assert "bool_value=true" in first
    assert "empty=<empty>" in first
    assert "complex_value=<dict>" in first
    assert f"long_text={'x' * 120}..." in first
    assert 'eq="a=b"' in first
    assert second == "event=warned issue_number=3"
    logger.handlers.clear()
