from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable, Mapping
import logging

from issuepilot.clock import Clock, format_timestamp, utc_now
from issuepilot.issue_state import apply_patch, apply_poll_result
from issuepilot.models import (
    ActiveSession,
    DashboardIssue,
    IssuePatch,
    PendingMessage,
    PollResult,
)
from issuepilot.observability import log_event, log_warning_event
from issuepilot.state import StateStore, persisted_fields


LOGGER = logging.getLogger("issuepilot.board")


class IssueBoard:
    """Locally held dashboard state for one repository.

    Holds every ``DashboardIssue`` by number, the single watched session, the
    error banner, one-shot notices, and pending outbound human messages.
    Durable-store writes are fire-and-forget and never raise into callers.
    """

    def __init__(
        self,
        *,
        repo: str,
        store: StateStore | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repo
        self._store = store
        self._clock = clock
        self._issues: dict[int, DashboardIssue] = {}
        self._active_session: ActiveSession | None = None
        self._error: str | None = None
        self._notices: list[str] = []
        self._pending_messages: dict[int, PendingMessage] = {}
        self._sync_tasks: set[asyncio.Task[None]] = set()
        self._listeners: list[Callable[[], None]] = []

    @property
    def repo(self) -> str:
        return self._repo

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def active_session(self) -> ActiveSession | None:
        return self._active_session

    @property
    def error(self) -> str | None:
        return self._error

    def issues(self) -> tuple[DashboardIssue, ...]:
        return tuple(self._issues[number] for number in sorted(self._issues))

    def get(self, issue_number: int) -> DashboardIssue | None:
        return self._issues.get(issue_number)

    def require(self, issue_number: int) -> DashboardIssue:
        issue = self._issues.get(issue_number)
        if issue is None:
            raise KeyError(f"Unknown issue #{issue_number}")
        return issue

    def replace_issues(self, issues: Iterable[DashboardIssue]) -> None:
        self._issues = {issue.number: issue for issue in issues}
        self._changed()

    def update(self, issue_number: int, patch: IssuePatch) -> DashboardIssue:
        before = self.require(issue_number)
        after = apply_patch(before, patch)
        self._store_issue(before, after)
        return after

    def apply_result(self, issue_number: int, result: PollResult) -> DashboardIssue:
        before = self.require(issue_number)
        after = apply_poll_result(before, result)
        self._store_issue(before, after)
        return after

    def set_active_session(self, session: ActiveSession) -> None:
        self._active_session = session
        log_event(
            LOGGER,
            "active_session_set",
            issue_number=session.issue_number,
            kind=session.kind,
            session_id=session.session_id,
        )
        self._changed()

    def clear_active_session(self) -> None:
        if self._active_session is None:
            return
        log_event(
            LOGGER,
            "active_session_cleared",
            issue_number=self._active_session.issue_number,
            session_id=self._active_session.session_id,
        )
        self._active_session = None
        self._changed()

    def set_error(self, message: str) -> None:
        self._error = message
        log_warning_event(LOGGER, "dashboard_error", error=message)
        self._changed()

    def dismiss_error(self) -> None:
        self._error = None
        self._changed()

    def notify(self, message: str) -> None:
        self._notices.append(message)
        self._changed()

    def drain_notices(self) -> tuple[str, ...]:
        notices = tuple(self._notices)
        self._notices.clear()
        return notices

    def set_pending_message(self, issue_number: int, text: str) -> PendingMessage:
        pending = PendingMessage(text=text, sent_at=format_timestamp(self._clock()))
        self._pending_messages[issue_number] = pending
        return pending

    def pending_message(self, issue_number: int) -> PendingMessage | None:
        return self._pending_messages.get(issue_number)

    def subscribe(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def persist(self, issue_number: int, patch: Mapping[str, object]) -> None:
        """Write the persisted subset of ``patch`` to the store in the background."""
        fields = persisted_fields(patch)
        if self._store is None or not fields:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._write_row(issue_number, fields)
            return
        task = loop.create_task(asyncio.to_thread(self._write_row, issue_number, fields))
        self._sync_tasks.add(task)
        task.add_done_callback(self._sync_tasks.discard)

    async def flush(self) -> None:
        while self._sync_tasks:
            await asyncio.gather(*tuple(self._sync_tasks))

    def _write_row(self, issue_number: int, fields: dict[str, object]) -> None:
        if self._store is None:
            return
        try:
            self._store.upsert_issue_row(self._repo, issue_number, fields)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "store_sync_failed",
                issue_number=issue_number,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _store_issue(self, before: DashboardIssue, after: DashboardIssue) -> None:
        self._issues[after.number] = after
        if before.status != after.status:
            log_event(
                LOGGER,
                "issue_transition",
                issue_number=after.number,
                from_status=before.status,
                to_status=after.status,
            )
        self._changed()

    def _changed(self) -> None:
        for listener in tuple(self._listeners):
            listener()
