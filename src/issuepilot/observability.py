from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import sys
from typing import Final, Literal, TextIO, cast


_ROOT_LOGGER: Final[str] = "issuepilot"
_VALUE_LIMIT: Final[int] = 120
_LINE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "agent_session_created",
        "issue_scoped",
        "issue_blocked",
        "issue_fix_done",
        "issue_fix_failed",
        "issue_timed_out",
        "github_comment_posted",
        "github_comment_forwarded",
        "retry_planned",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
    to_stderr: bool = True,
) -> None:
    """(Re)install handlers on the ``issuepilot`` logger.

    Quiet mode swallows everything. ``"low"`` keeps warnings plus the key
    lifecycle events, ``"high"`` (or ``True``) keeps every event. With
    ``state_dir`` the same records also go to ``<state_dir>/logs/<UTC date>.log``;
    ``to_stderr=False`` keeps them off the terminal for full-screen use.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    mode = _verbose_mode(verbose)
    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = []
    if to_stderr:
        handlers.append(logging.StreamHandler(sys.stderr))
    if state_dir is not None:
        handlers.append(_DailyUtcFileHandler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(_LINE_FORMAT))
        if mode == "low":
            handler.addFilter(_LifecycleEventFilter())
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(render_event(event, fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(render_event(event, fields))


def render_event(event: str, fields: dict[str, object]) -> str:
    rendered = [f"event={_render_value(event)}"]
    rendered.extend(f"{key}={_render_value(fields[key])}" for key in sorted(fields))
    return " ".join(rendered)


def _render_value(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _VALUE_LIMIT:
            text = f"{text[:_VALUE_LIMIT]}..."
        if not text:
            text = "<empty>"
    else:
        text = f"<{type(value).__name__}>"

    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    normalized = verbose.strip().lower()
    if normalized not in {"low", "high"}:
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, normalized)


def _event_name(message: str) -> str | None:
    head = message.split(" ", 1)[0]
    if not head.startswith("event=") or head == "event=":
        return None
    return head[len("event=") :]


class _LifecycleEventFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        return _event_name(record.getMessage()) in _LOW_VERBOSITY_EVENTS


class _DailyUtcFileHandler(logging.Handler):
    def __init__(self, logs_dir: Path) -> None:
        super().__init__()
        self._logs_dir = logs_dir
        self._stream: TextIO | None = None
        self._date_key = ""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            stream = self._current_stream()
            stream.write(self.format(record) + "\n")
            stream.flush()
        except Exception:
            self.handleError(record)

    def close(self) -> None:
        self.acquire()
        try:
            if self._stream is not None:
                self._stream.close()
                self._stream = None
            super().close()
        finally:
            self.release()

    def _current_stream(self) -> TextIO:
        date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        if self._stream is not None and date_key == self._date_key:
            return self._stream
        if self._stream is not None:
            self._stream.close()
        self._logs_dir.mkdir(parents=True, exist_ok=True)
        self._stream = (self._logs_dir / f"{date_key}.log").open("a", encoding="utf-8")
        self._date_key = date_key
        return self._stream
