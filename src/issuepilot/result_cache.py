from __future__ import annotations

from collections import OrderedDict
from collections.abc import Callable, Mapping
from dataclasses import dataclass
import hmac
import logging
import threading
import time

from issuepilot.clock import Clock, format_timestamp, utc_now
from issuepilot.observability import log_event
from issuepilot.state import StateStore
from issuepilot.status_interpreter import parse_structured_output


LOGGER = logging.getLogger("issuepilot.result_cache")


class CallbackAuthError(RuntimeError):
    pass


@dataclass(frozen=True)
class CachedResult:
    structured_output: Mapping[str, object]
    updated_at: str
    stored_at_monotonic: float


class SessionResultCache:
    """Structured outputs delivered out of band, keyed by session id.

    Entries expire after ``ttl_seconds`` and the oldest entries are evicted
    once ``max_entries`` is reached.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 3600.0,
        max_entries: int = 256,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._monotonic = monotonic
        self._entries: OrderedDict[str, CachedResult] = OrderedDict()
        self._lock = threading.Lock()

    def put(self, session_id: str, structured_output: Mapping[str, object], *, updated_at: str) -> None:
        with self._lock:
            self._evict_expired()
            self._entries.pop(session_id, None)
            self._entries[session_id] = CachedResult(
                structured_output=dict(structured_output),
                updated_at=updated_at,
                stored_at_monotonic=self._monotonic(),
            )
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def get(self, session_id: str) -> CachedResult | None:
        with self._lock:
            self._evict_expired()
            return self._entries.get(session_id)

    def discard(self, session_id: str) -> None:
        with self._lock:
            self._entries.pop(session_id, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._entries)

    def _evict_expired(self) -> None:
        cutoff = self._monotonic() - self._ttl_seconds
        expired = [key for key, entry in self._entries.items() if entry.stored_at_monotonic <= cutoff]
        for key in expired:
            del self._entries[key]


def handle_result_callback(
    payload: Mapping[str, object],
    *,
    provided_secret: str | None,
    expected_secret: str,
    cache: SessionResultCache,
    store: StateStore | None = None,
    clock: Clock = utc_now,
) -> bool:
    """Accept a structured-output callback for a session.

    Returns True when a persisted issue row was updated for the session.
    """
    if not provided_secret or not hmac.compare_digest(provided_secret, expected_secret):
        raise CallbackAuthError("Invalid callback secret")

    session_id = payload.get("session_id")
    structured_output = payload.get("structured_output")
    if not isinstance(session_id, str) or not session_id:
        raise ValueError("callback payload requires a session_id")
    if not isinstance(structured_output, Mapping):
        raise ValueError("callback payload requires a structured_output object")

    now_text = format_timestamp(clock())
    cache.put(session_id, structured_output, updated_at=now_text)
    log_event(LOGGER, "result_callback_cached", session_id=session_id)

    if store is None:
        return False
    row = store.get_row_by_session_id(session_id)
    if row is None:
        return False
    parsed = parse_structured_output(structured_output)
    store.upsert_issue_row(
        row.repo_full_name,
        row.issue_number,
        {
            "status": "scoped",
            "confidence": parsed.confidence if parsed is not None else "yellow",
            "scoping": parsed,
            "scoped_at": now_text,
        },
    )
    log_event(
        LOGGER,
        "result_callback_persisted",
        session_id=session_id,
        issue_number=row.issue_number,
    )
    return True
