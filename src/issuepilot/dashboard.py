from __future__ import annotations

import asyncio
from dataclasses import replace
import logging

from issuepilot.agent_adapter import AgentAdapter
from issuepilot.board import IssueBoard
from issuepilot.clock import format_timestamp
from issuepilot.config import AgentConfig, RepoConfig
from issuepilot.error_messages import translate_error
from issuepilot.issue_state import create_pending_issue
from issuepilot.issue_tracker import IssueTracker
from issuepilot.models import (
    ActiveSession,
    ConversationMessage,
    DashboardIssue,
    RecreateDecision,
    SessionInfo,
    SessionKind,
)
from issuepilot.observability import log_event, log_warning_event
from issuepilot.poll_scheduler import PollScheduler
from issuepilot.prompts import build_fix_prompt, build_scoping_prompt, session_tags, session_title
from issuepilot.retry_planner import decide
from issuepilot.state import IssueRow, StateStore, hydrate_issue


LOGGER = logging.getLogger("issuepilot.dashboard")
APPROVAL_MESSAGE = "Approved. Please proceed with the suggested approach."


class DashboardController:
    """User actions over the issue board.

    Every action returns True when it went through. Failures are shown on the
    board's error banner instead of being raised, so key bindings and the
    headless runner can call these directly.
    """

    def __init__(
        self,
        *,
        board: IssueBoard,
        tracker: IssueTracker,
        agent: AgentAdapter,
        scheduler: PollScheduler,
        repo: RepoConfig,
        agent_config: AgentConfig,
        store: StateStore | None = None,
    ) -> None:
        self._board = board
        self._tracker = tracker
        self._agent = agent
        self._scheduler = scheduler
        self._repo = repo
        self._agent_config = agent_config
        self._store = store

    @property
    def board(self) -> IssueBoard:
        return self._board

    async def refresh_issues(self) -> bool:
        try:
            fetched = await self._tracker.list_issues()
            rows: tuple[IssueRow, ...] = ()
            if self._store is not None:
                rows = await asyncio.to_thread(self._store.get_rows_by_repo, self._repo.full_name)
        except Exception as exc:  # noqa: BLE001
            self._report("issue_refresh_failed", exc)
            return False

        rows_by_number = {row.issue_number: row for row in rows}
        merged: list[DashboardIssue] = []
        for item in fetched:
            existing = self._board.get(item.number)
            if existing is not None:
                merged.append(
                    replace(
                        existing,
                        title=item.title,
                        body=item.body,
                        github_url=item.html_url,
                        labels=item.labels,
                        updated_at=item.updated_at,
                    )
                )
                continue
            issue = create_pending_issue(item)
            row = rows_by_number.get(item.number)
            if row is not None:
                issue = hydrate_issue(issue, row)
            merged.append(issue)
        self._board.replace_issues(merged)
        log_event(LOGGER, "issues_refreshed", repo=self._repo.full_name, count=len(merged))
        return True

    async def auto_scope_next(self) -> int | None:
        """Start scoping the lowest-numbered pending issue when nothing is watched."""
        if self._board.active_session is not None:
            return None
        for issue in self._board.issues():
            if issue.status == "pending":
                if await self.start_scope(issue.number):
                    return issue.number
                return None
        return None

    async def start_scope(self, issue_number: int) -> bool:
        issue = self._board.require(issue_number)
        prompt = build_scoping_prompt(issue=issue, repo_full_name=self._repo.full_name)
        return await self._start_session(
            issue,
            kind="scoping",
            prompt=prompt,
            acu_limit=self._agent_config.scoping_acu_limit,
        )

    async def start_fix(self, issue_number: int, *, previous_context: str | None = None) -> bool:
        issue = self._board.require(issue_number)
        if issue.scoping is None:
            self._board.set_error(f"Issue #{issue_number} has no scoping analysis yet")
            return False
        prompt = build_fix_prompt(
            issue=issue,
            repo_full_name=self._repo.full_name,
            scoping=issue.scoping,
            previous_context=previous_context,
        )
        return await self._start_session(
            issue,
            kind="fixing",
            prompt=prompt,
            acu_limit=self._agent_config.fixing_acu_limit,
        )

    async def send_message(self, issue_number: int, text: str) -> bool:
        text = text.strip()
        if not text:
            return False
        issue = self._board.require(issue_number)
        session = _current_session(issue)
        if session is None:
            self._board.set_error(f"Issue #{issue_number} has no agent session")
            return False
        pending = self._board.set_pending_message(issue_number, text)
        try:
            await self._agent.send_message(session.session_id, text)
        except Exception as exc:  # noqa: BLE001
            self._report("message_send_failed", exc, issue_number=issue_number)
            return False
        self._board.update(
            issue_number,
            {"messages": (ConversationMessage(role="user", text=text, timestamp=pending.sent_at),)},
        )
        log_event(LOGGER, "user_message_sent", issue_number=issue_number, session_id=session.session_id)
        return True

    async def approve(self, issue_number: int) -> bool:
        issue = self._board.require(issue_number)
        session = issue.fix_session
        if session is None:
            self._board.set_error(f"Issue #{issue_number} has no fix session to approve")
            return False
        try:
            await self._agent.send_message(session.session_id, APPROVAL_MESSAGE)
        except Exception as exc:  # noqa: BLE001
            self._report("approve_failed", exc, issue_number=issue_number)
            return False
        session = self._rearmed(session)
        patch: dict[str, object] = {"status": "fixing", "blocker": None, "fix_session": session}
        self._board.update(issue_number, patch)
        self._board.persist(issue_number, patch)
        self._watch(issue_number, session, "fixing")
        return True

    async def abort(self, issue_number: int) -> bool:
        issue = self._board.require(issue_number)
        session = _current_session(issue)
        if session is None:
            self._board.set_error(f"Issue #{issue_number} has no agent session")
            return False
        try:
            await self._agent.delete_session(session.session_id)
        except Exception as exc:  # noqa: BLE001
            self._report("abort_failed", exc, issue_number=issue_number)
            return False
        patch: dict[str, object] = {"status": "aborted"}
        self._board.update(issue_number, patch)
        self._board.persist(issue_number, patch)
        active = self._board.active_session
        if active is not None and active.issue_number == issue_number:
            self._scheduler.stop()
        log_event(LOGGER, "issue_aborted", issue_number=issue_number, session_id=session.session_id)
        return True

    async def retry(self, issue_number: int, guidance: str | None = None) -> bool:
        issue = self._board.require(issue_number)
        decision = decide(issue, guidance)
        log_event(LOGGER, "retry_planned", issue_number=issue_number, decision=decision.kind)

        if not isinstance(decision, RecreateDecision):
            if issue.fix_session is None:
                raise RuntimeError(f"Issue #{issue_number} has no fix session to wake")
            try:
                await self._agent.send_message(decision.session_id, decision.message)
            except Exception as exc:  # noqa: BLE001
                self._report("retry_wake_failed", exc, issue_number=issue_number)
                return False
            session = self._rearmed(issue.fix_session)
            patch: dict[str, object] = {"status": "fixing", "blocker": None, "fix_session": session}
            self._board.update(issue_number, patch)
            self._board.persist(issue_number, patch)
            self._watch(issue_number, session, "fixing")
            return True

        if decision.session_id:
            try:
                await self._agent.delete_session(decision.session_id)
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "retry_delete_failed",
                    issue_number=issue_number,
                    session_id=decision.session_id,
                    error_type=type(exc).__name__,
                )
        reset: dict[str, object] = {
            "status": "scoped",
            "fix_progress": None,
            "blocker": None,
            "fix_session": None,
            "steps": (),
            "completed_at": None,
        }
        self._board.update(issue_number, reset)
        self._board.persist(issue_number, reset)
        return await self.start_fix(issue_number, previous_context=decision.previous_context)

    async def _start_session(
        self,
        issue: DashboardIssue,
        *,
        kind: SessionKind,
        prompt: str,
        acu_limit: int,
    ) -> bool:
        now_text = format_timestamp(self._board.clock())
        starting: dict[str, object]
        if kind == "scoping":
            starting = {"status": "scoping", "confidence": None, "scoping": None, "scoped_at": None}
        else:
            starting = {"status": "fixing", "fix_started_at": now_text, "blocker": None}
        self._board.update(issue.number, starting)
        try:
            created = await self._agent.create_session(
                prompt=prompt,
                kind=kind,
                title=session_title(kind=kind, repo_full_name=self._repo.full_name, issue=issue),
                acu_limit=acu_limit,
                tags=session_tags(kind=kind, repo_full_name=self._repo.full_name, issue_number=issue.number),
            )
        except Exception as exc:  # noqa: BLE001
            failed: dict[str, object] = {"status": "failed"}
            self._board.update(issue.number, failed)
            self._board.persist(issue.number, failed)
            self._report("session_start_failed", exc, issue_number=issue.number, kind=kind)
            return False

        session = SessionInfo(session_id=created.session_id, session_url=created.url, started_at=now_text)
        field_name = "scoping_session" if kind == "scoping" else "fix_session"
        patch = {**starting, field_name: session}
        self._board.update(issue.number, {field_name: session})
        self._board.persist(issue.number, patch)
        self._watch(issue.number, session, kind)
        return True

    def _watch(self, issue_number: int, session: SessionInfo, kind: SessionKind) -> None:
        self._scheduler.watch(
            ActiveSession(
                session_id=session.session_id,
                issue_number=issue_number,
                kind=kind,
                session_url=session.session_url,
            ),
            delay=self._scheduler.interval_for(kind),
        )

    def _rearmed(self, session: SessionInfo) -> SessionInfo:
        """``session`` with its local timeout budget restarted from now."""
        return replace(session, started_at=format_timestamp(self._board.clock()))

    def _report(self, event: str, exc: Exception, **fields: object) -> None:
        log_warning_event(LOGGER, event, error_type=type(exc).__name__, error=str(exc), **fields)
        self._board.set_error(translate_error(exc))


def _current_session(issue: DashboardIssue) -> SessionInfo | None:
    if issue.status in ("fixing", "blocked") and issue.fix_session is not None:
        return issue.fix_session
    return issue.scoping_session or issue.fix_session
