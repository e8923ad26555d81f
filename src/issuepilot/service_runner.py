from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
import os

from issuepilot.agent_adapter import AgentAdapter
from issuepilot.agent_api import AgentApiClient
from issuepilot.board import IssueBoard
from issuepilot.comment_bridge import CommentBridge
from issuepilot.config import AppConfig
from issuepilot.dashboard import DashboardController
from issuepilot.github_gateway import GitHubGateway
from issuepilot.issue_tracker import GitHubIssueTracker, IssueTracker
from issuepilot.models import ActiveSession, SessionKind
from issuepilot.observability import log_event, log_warning_event
from issuepilot.poll_scheduler import PollScheduler, Scheduler, schedule_after
from issuepilot.result_cache import SessionResultCache
from issuepilot.state import StateStore


LOGGER = logging.getLogger("issuepilot.service_runner")


@dataclass(frozen=True)
class ServiceComponents:
    config: AppConfig
    board: IssueBoard
    tracker: IssueTracker
    agent: AgentAdapter
    bridge: CommentBridge
    scheduler: PollScheduler
    controller: DashboardController
    cache: SessionResultCache
    store: StateStore | None = None

    async def aclose(self) -> None:
        self.scheduler.shutdown()
        await self.board.flush()
        if isinstance(self.agent, AgentApiClient):
            await self.agent.aclose()


def build_components(
    config: AppConfig,
    *,
    agent: AgentAdapter | None = None,
    tracker: IssueTracker | None = None,
    store: StateStore | None = None,
    scheduler: Scheduler = schedule_after,
) -> ServiceComponents:
    """Wire the board, bridge, scheduler and controller for one repository."""
    if agent is None:
        agent = AgentApiClient.from_config(config.agent)
    if tracker is None:
        token = os.environ.get(config.repo.github_token_env) or None
        tracker = GitHubIssueTracker(GitHubGateway(config.repo.owner, config.repo.name, token=token))
    board = IssueBoard(repo=config.repo.full_name, store=store)
    cache = SessionResultCache(ttl_seconds=config.polling.result_cache_ttl_seconds)
    bridge = CommentBridge(
        board=board,
        tracker=tracker,
        agent=agent,
        enabled=config.runtime.enable_github_comments,
        duplicate_window=config.comments.duplicate_window,
    )
    poll_scheduler = PollScheduler(
        board=board,
        agent=agent,
        bridge=bridge,
        tracker=tracker,
        polling=config.polling,
        agent_config=config.agent,
        cache=cache,
        scheduler=scheduler,
    )
    controller = DashboardController(
        board=board,
        tracker=tracker,
        agent=agent,
        scheduler=poll_scheduler,
        repo=config.repo,
        agent_config=config.agent,
        store=store,
    )
    return ServiceComponents(
        config=config,
        board=board,
        tracker=tracker,
        agent=agent,
        bridge=bridge,
        scheduler=poll_scheduler,
        controller=controller,
        cache=cache,
        store=store,
    )


def resume_active_session(components: ServiceComponents) -> ActiveSession | None:
    """Re-arm polling for the first issue whose session was still running."""
    if components.board.active_session is not None:
        return components.board.active_session
    for issue in components.board.issues():
        kind: SessionKind
        if issue.status == "scoping" and issue.scoping_session is not None:
            kind, session = "scoping", issue.scoping_session
        elif issue.status in ("fixing", "blocked") and issue.fix_session is not None:
            kind, session = "fixing", issue.fix_session
        else:
            continue
        active = ActiveSession(
            session_id=session.session_id,
            issue_number=issue.number,
            kind=kind,
            session_url=session.session_url,
        )
        components.scheduler.watch(active)
        log_event(LOGGER, "active_session_resumed", issue_number=issue.number, kind=kind)
        return active
    return None


async def run_service_async(
    components: ServiceComponents,
    *,
    once: bool,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> None:
    config = components.config
    controller = components.controller
    try:
        await _tick(components, first=True)
        if once:
            if components.board.active_session is not None:
                await components.scheduler.poll_once()
            await components.scheduler.sweep_inbound()
            _drain_board_messages(components.board)
            return

        components.scheduler.start_inbound_sweep()
        while True:
            await sleep(config.runtime.issue_refresh_seconds)
            await controller.refresh_issues()
            await _tick(components, first=False)
    finally:
        await components.aclose()


def run_service(*, config: AppConfig, once: bool) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    store = StateStore(config.runtime.state_db_path)

    async def main() -> None:
        components = build_components(config, store=store)
        await run_service_async(components, once=once)

    log_event(LOGGER, "service_started", repo=config.repo.full_name, once=once)
    asyncio.run(main())


async def _tick(components: ServiceComponents, *, first: bool) -> None:
    if first:
        await components.controller.refresh_issues()
        resume_active_session(components)
    if components.config.runtime.auto_scope:
        await components.controller.auto_scope_next()
    _drain_board_messages(components.board)


def _drain_board_messages(board: IssueBoard) -> None:
    for notice in board.drain_notices():
        log_warning_event(LOGGER, "dashboard_notice", notice=notice)
    if board.error is not None:
        board.dismiss_error()
