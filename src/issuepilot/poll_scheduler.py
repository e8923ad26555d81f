from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import timedelta
import logging

from issuepilot.agent_adapter import AgentAdapter, AgentAuthError, SessionNotFoundError
from issuepilot.board import IssueBoard
from issuepilot.comment_bridge import CommentBridge
from issuepilot.config import AgentConfig, PollingConfig
from issuepilot.error_messages import translate_error
from issuepilot.github_gateway import pr_body_closes_issue
from issuepilot.issue_tracker import IssueTracker
from issuepilot.models import (
    ActiveSession,
    DashboardIssue,
    PollCategory,
    PollResult,
    SessionSnapshot,
)
from issuepilot.observability import log_event, log_warning_event
from issuepilot.result_cache import SessionResultCache
from issuepilot.status_interpreter import interpret


LOGGER = logging.getLogger("issuepilot.poll_scheduler")
SESSION_EXPIRED_MESSAGE = "Session expired or was deleted on the agent service."

TaskFactory = Callable[[], Awaitable[object]]
_RUNNING_TASKS: set[asyncio.Task[object]] = set()


class ScheduledTask:
    """Handle for a task that runs once after a delay.

    ``cancel`` only prevents a task that has not started yet; a task that is
    already running is left to finish.
    """

    def __init__(self, timer: asyncio.TimerHandle | None = None) -> None:
        self._timer = timer
        self._task: asyncio.Task[object] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def task(self) -> asyncio.Task[object] | None:
        return self._task

    def cancel(self) -> None:
        self._cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def _start(self, task_factory: TaskFactory) -> None:
        if self._cancelled:
            return

        async def runner() -> object:
            return await task_factory()

        task = asyncio.get_running_loop().create_task(runner())
        _RUNNING_TASKS.add(task)
        task.add_done_callback(_RUNNING_TASKS.discard)
        self._task = task


Scheduler = Callable[[float, TaskFactory], ScheduledTask]


def schedule_after(delay: float, task_factory: TaskFactory) -> ScheduledTask:
    loop = asyncio.get_running_loop()
    scheduled = ScheduledTask()
    scheduled._timer = loop.call_later(max(delay, 0.0), scheduled._start, task_factory)
    return scheduled


class PollScheduler:
    """Paces the watched-session poll loop and the inbound-comment sweep.

    At most one poll timer is live. ``watch`` cancels the pending poll before
    arming a new one, and ``stop`` cancels it outright. Polls already running
    are never interrupted; a generation counter keeps them from re-arming a
    loop that was replaced while they were in flight.
    """

    def __init__(
        self,
        *,
        board: IssueBoard,
        agent: AgentAdapter,
        bridge: CommentBridge,
        tracker: IssueTracker,
        polling: PollingConfig,
        agent_config: AgentConfig,
        cache: SessionResultCache | None = None,
        scheduler: Scheduler = schedule_after,
    ) -> None:
        self._board = board
        self._agent = agent
        self._bridge = bridge
        self._tracker = tracker
        self._polling = polling
        self._agent_config = agent_config
        self._cache = cache
        self._scheduler = scheduler
        self._poll_timer: ScheduledTask | None = None
        self._sweep_timer: ScheduledTask | None = None
        self._generation = 0
        self._sweeping = False

    def interval_for(self, category: PollCategory) -> float:
        if category == "scoping":
            return self._polling.scoping_seconds
        if category == "fixing":
            return self._polling.fixing_seconds
        if category == "blocked":
            return self._polling.blocked_seconds
        return self._polling.default_seconds

    def watch(self, session: ActiveSession, *, delay: float = 0.0) -> None:
        self._board.set_active_session(session)
        self._generation += 1
        self._arm(delay)

    def stop(self) -> None:
        self._generation += 1
        self._cancel_poll_timer()
        self._board.clear_active_session()

    def start_inbound_sweep(self) -> None:
        self._sweeping = True
        self._arm_sweep()

    def shutdown(self) -> None:
        self._sweeping = False
        self._generation += 1
        self._cancel_poll_timer()
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
            self._sweep_timer = None

    async def poll_once(self) -> PollCategory | None:
        """Poll the watched session once and apply what it reports.

        Returns the category that paces the next poll, or None when the loop
        should stop.
        """
        active = self._board.active_session
        if active is None:
            return None
        issue = self._board.get(active.issue_number)
        if issue is None:
            self._board.clear_active_session()
            return None

        try:
            snapshot = await self._agent.get_session(active.session_id)
        except SessionNotFoundError:
            log_warning_event(
                LOGGER,
                "session_not_found",
                issue_number=active.issue_number,
                session_id=active.session_id,
            )
            self._board.set_error(SESSION_EXPIRED_MESSAGE)
            self._board.clear_active_session()
            return None
        except AgentAuthError as exc:
            self._board.set_error(translate_error(exc))
            return None
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "session_poll_failed",
                issue_number=active.issue_number,
                session_id=active.session_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return "default"

        snapshot = self._with_cached_output(snapshot, active)
        result = interpret(
            snapshot,
            active.kind,
            issue_number=issue.number,
            timeout_limit=self._timeout_limit(active),
            now=self._board.clock(),
            session_started_at=_session_started_at(issue, active),
            branch_prefix=self._agent_config.branch_prefix,
        )
        log_event(
            LOGGER,
            "session_polled",
            issue_number=issue.number,
            session_id=active.session_id,
            kind=active.kind,
            status_enum=snapshot.status_enum,
            action=result.action,
        )
        return await self._apply(issue, active, result)

    async def sweep_inbound(self) -> bool:
        """Check every issue waiting on a human reply; stop at the first forward."""
        for issue in self._board.issues():
            if issue.status not in ("awaiting_reply", "scoped"):
                continue
            if issue.last_agent_comment_id is None or not issue.last_agent_comment_at:
                continue
            session = issue.scoping_session or issue.fix_session
            if session is None or not session.session_id:
                continue
            if await self._bridge.poll_inbound(issue, session.session_id):
                self.watch(
                    ActiveSession(
                        session_id=session.session_id,
                        issue_number=issue.number,
                        kind="scoping",
                        session_url=session.session_url,
                    ),
                    delay=self._polling.scoping_seconds,
                )
                return True
        return False

    async def _apply(
        self,
        before: DashboardIssue,
        active: ActiveSession,
        result: PollResult,
    ) -> PollCategory | None:
        if result.action == "continue":
            return result.next_poll_category

        issue = self._board.apply_result(before.number, result)
        self._board.persist(issue.number, result.patch)

        if result.action == "scoped":
            log_event(
                LOGGER,
                "issue_scoped",
                issue_number=issue.number,
                confidence=issue.confidence,
            )
            self._finish(active)
            await self._bridge.announce_scoped(issue.number)
            return None

        if result.action == "done":
            log_event(
                LOGGER,
                "issue_fix_done",
                issue_number=issue.number,
                pr_url=issue.pr.url if issue.pr is not None else None,
            )
            self._finish(active)
            await self._enrich_pr(issue)
            await self._bridge.announce_done(issue.number)
            return None

        if result.action == "failed":
            log_event(LOGGER, "issue_fix_failed", issue_number=issue.number)
            self._finish(active)
            return None

        if result.action == "timed_out":
            log_event(LOGGER, "issue_timed_out", issue_number=issue.number, kind=active.kind)
            self._finish(active)
            return None

        was_blocked = before.status == "blocked"
        if not was_blocked:
            log_event(
                LOGGER,
                "issue_blocked",
                issue_number=issue.number,
                what_happened=issue.blocker.what_happened if issue.blocker is not None else None,
            )
        await self._bridge.announce_blocked(issue.number, was_blocked=was_blocked)
        issue = self._board.require(issue.number)
        if issue.last_agent_comment_at:
            forwarded = await self._bridge.poll_inbound(issue, active.session_id, kind=active.kind)
            if forwarded:
                return active.kind
        return "blocked"

    async def _enrich_pr(self, issue: DashboardIssue) -> None:
        pr = issue.pr
        if pr is None:
            return
        try:
            details = await self._tracker.get_pr_details(pr.number)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "pr_enrichment_failed",
                issue_number=issue.number,
                pr_number=pr.number,
                error_type=type(exc).__name__,
            )
            return
        if not pr_body_closes_issue(details.body, issue.number):
            log_warning_event(
                LOGGER,
                "pr_missing_close_keyword",
                issue_number=issue.number,
                pr_number=pr.number,
            )
        patch = {
            "pr": replace(
                pr,
                title=details.title or pr.title,
                branch=details.branch or pr.branch,
                files_changed=details.files,
            )
        }
        self._board.update(issue.number, patch)
        self._board.persist(issue.number, patch)

    def _finish(self, active: ActiveSession) -> None:
        if self._cache is not None:
            self._cache.discard(active.session_id)
        if self._board.active_session == active:
            self._board.clear_active_session()

    def _with_cached_output(self, snapshot: SessionSnapshot, active: ActiveSession) -> SessionSnapshot:
        if self._cache is None or active.kind != "scoping" or snapshot.structured_output is not None:
            return snapshot
        cached = self._cache.get(active.session_id)
        if cached is None:
            return snapshot
        return replace(snapshot, structured_output=cached.structured_output)

    def _timeout_limit(self, active: ActiveSession) -> timedelta:
        if active.kind == "scoping":
            return timedelta(seconds=self._agent_config.scoping_timeout_seconds)
        return timedelta(seconds=self._agent_config.fixing_timeout_seconds)

    def _arm(self, delay: float) -> None:
        self._cancel_poll_timer()
        generation = self._generation
        active = self._board.active_session
        log_event(
            LOGGER,
            "poll_scheduled",
            delay_seconds=delay,
            session_id=active.session_id if active is not None else None,
        )
        self._poll_timer = self._scheduler(delay, lambda: self._tick(generation))

    async def _tick(self, generation: int) -> None:
        category = await self.poll_once()
        if generation != self._generation:
            return
        if category is None or self._board.active_session is None:
            self._poll_timer = None
            return
        self._arm(self.interval_for(category))

    def _cancel_poll_timer(self) -> None:
        if self._poll_timer is not None:
            self._poll_timer.cancel()
            self._poll_timer = None

    def _arm_sweep(self) -> None:
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
        self._sweep_timer = self._scheduler(self._polling.inbound_sweep_seconds, self._sweep_tick)

    async def _sweep_tick(self) -> None:
        try:
            await self.sweep_inbound()
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "inbound_sweep_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
        if self._sweeping:
            self._arm_sweep()


def _session_started_at(issue: DashboardIssue, active: ActiveSession) -> str | None:
    session = issue.scoping_session if active.kind == "scoping" else issue.fix_session
    if session is None or session.session_id != active.session_id:
        return None
    return session.started_at or None
