from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from pathlib import Path

from fakes import FakeAgent, FakeTracker, RecordingScheduler, fixed_clock, make_issue, snapshot
from issuepilot.agent_adapter import AgentApiError, AgentAuthError
from issuepilot.board import IssueBoard
from issuepilot.comment_bridge import CommentBridge
from issuepilot.config import AgentConfig, PollingConfig, RepoConfig
from issuepilot.dashboard import APPROVAL_MESSAGE, DashboardController
from issuepilot.github_gateway import GitHubApiError
from issuepilot.issue_state import create_pending_issue
from issuepilot.models import ActiveSession, BlockerInfo, ScopingResult, SessionInfo
from issuepilot.poll_scheduler import PollScheduler
from issuepilot.state import StateStore


SCOPING = ScopingResult(
    confidence="green",
    confidence_reason="clear",
    current_behavior="crash",
    requested_fix="no crash",
    files_to_modify=("a.py",),
    tests_needed="unit",
    action_plan=("fix",),
    risks=(),
    open_questions=(),
)
SCOPE_SESSION = SessionInfo(session_id="scope-1", session_url="u1", started_at="2026-03-01T11:00:00.000Z")
FIX_SESSION = SessionInfo(session_id="fix-1", session_url="u2", started_at="2026-03-01T11:30:00.000Z")


@dataclass
class Harness:
    controller: DashboardController
    board: IssueBoard
    agent: FakeAgent
    tracker: FakeTracker
    timers: RecordingScheduler
    scheduler: PollScheduler


def _harness(*, tracker: FakeTracker | None = None, store: StateStore | None = None) -> Harness:
    board = IssueBoard(repo="o/r", store=store, clock=fixed_clock)
    agent = FakeAgent()
    tracker = tracker or FakeTracker(issues=[make_issue(1), make_issue(2)])
    timers = RecordingScheduler()
    scheduler = PollScheduler(
        board=board,
        agent=agent,
        bridge=CommentBridge(board=board, tracker=tracker, agent=agent),
        tracker=tracker,
        polling=PollingConfig(),
        agent_config=AgentConfig(),
        scheduler=timers,
    )
    controller = DashboardController(
        board=board,
        tracker=tracker,
        agent=agent,
        scheduler=scheduler,
        repo=RepoConfig(owner="o", name="r"),
        agent_config=AgentConfig(),
        store=store,
    )
    return Harness(
        controller=controller,
        board=board,
        agent=agent,
        tracker=tracker,
        timers=timers,
        scheduler=scheduler,
    )


def _seed(h: Harness, **fields: object) -> None:
    h.board.replace_issues(
        [
            replace(create_pending_issue(make_issue(1)), **fields),  # type: ignore[arg-type]
            create_pending_issue(make_issue(2)),
        ]
    )


def test_refresh_merges_fetched_issues_with_stored_rows(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_issue_row("o/r", 2, {"status": "scoped", "confidence": "green", "scoping": SCOPING})
    h = _harness(store=store)

    assert asyncio.run(h.controller.refresh_issues()) is True

    assert [issue.number for issue in h.board.issues()] == [1, 2]
    assert h.board.require(1).status == "pending"
    assert h.board.require(2).status == "scoped"
    assert h.board.require(2).scoping == SCOPING


def test_refresh_keeps_local_state_and_updates_issue_text() -> None:
    h = _harness(tracker=FakeTracker(issues=[make_issue(1, title="New title")]))
    _seed(h, status="fixing", fix_session=FIX_SESSION)

    asyncio.run(h.controller.refresh_issues())

    issue = h.board.require(1)
    assert issue.title == "New title"
    assert issue.status == "fixing"
    assert h.board.get(2) is None


def test_refresh_failure_sets_banner() -> None:
    tracker = FakeTracker()

    async def broken() -> list[object]:
        raise GitHubApiError("denied", status_code=401)

    tracker.list_issues = broken  # type: ignore[method-assign]
    h = _harness(tracker=tracker)

    assert asyncio.run(h.controller.refresh_issues()) is False
    assert h.board.error == "Invalid GitHub token. Check the token and try again."


def test_start_scope_creates_session_and_watches_it() -> None:
    h = _harness()
    _seed(h)

    assert asyncio.run(h.controller.start_scope(1)) is True

    issue = h.board.require(1)
    assert issue.status == "scoping"
    assert issue.scoping_session is not None
    assert issue.scoping_session.session_id == "new-1"
    assert issue.scoping_session.started_at == "2026-03-01T12:00:00.000Z"
    created = h.agent.created[0]
    assert created["kind"] == "scoping"
    assert created["acu_limit"] == 3
    assert created["tags"] == ("scope-o/r-1",)
    assert h.board.active_session == ActiveSession(
        session_id="new-1", issue_number=1, kind="scoping", session_url="https://agent.example/new-1"
    )
    assert h.timers.delays == [20.0]


def test_start_scope_failure_marks_issue_failed() -> None:
    h = _harness()
    _seed(h)
    h.agent.fail_create = AgentAuthError("bad key", status_code=401)

    assert asyncio.run(h.controller.start_scope(1)) is False
    assert h.board.require(1).status == "failed"
    assert h.board.error is not None
    assert h.board.active_session is None


def test_auto_scope_picks_first_pending_when_idle() -> None:
    h = _harness()
    _seed(h, status="done")

    assert asyncio.run(h.controller.auto_scope_next()) == 2
    assert asyncio.run(h.controller.auto_scope_next()) is None
    assert len(h.agent.created) == 1


def test_start_fix_requires_scoping() -> None:
    h = _harness()
    _seed(h, status="scoped")
    assert asyncio.run(h.controller.start_fix(1)) is False
    assert h.board.error == "Issue #1 has no scoping analysis yet"


def test_start_fix_records_fix_session() -> None:
    h = _harness()
    _seed(h, status="scoped", scoping=SCOPING, scoping_session=SCOPE_SESSION)

    assert asyncio.run(h.controller.start_fix(1)) is True

    issue = h.board.require(1)
    assert issue.status == "fixing"
    assert issue.fix_started_at == "2026-03-01T12:00:00.000Z"
    assert issue.fix_session is not None
    assert h.agent.created[0]["acu_limit"] == 15
    assert "Closes #1" in str(h.agent.created[0]["prompt"])
    assert h.timers.delays == [10.0]


def test_send_message_records_pending_and_echoes() -> None:
    h = _harness()
    _seed(h, status="awaiting_reply", scoping_session=SCOPE_SESSION)

    assert asyncio.run(h.controller.send_message(1, "  use v2  ")) is True

    assert h.agent.sent == [("scope-1", "use v2")]
    pending = h.board.pending_message(1)
    assert pending is not None and pending.text == "use v2"
    assert h.board.require(1).messages[-1].text == "use v2"


def test_send_message_without_session_or_text() -> None:
    h = _harness()
    _seed(h)
    assert asyncio.run(h.controller.send_message(1, "   ")) is False
    assert asyncio.run(h.controller.send_message(1, "hi")) is False
    assert h.board.error == "Issue #1 has no agent session"


def test_approve_resumes_fixing() -> None:
    h = _harness()
    _seed(h, status="blocked", fix_session=FIX_SESSION, blocker=BlockerInfo("q", "s"))

    assert asyncio.run(h.controller.approve(1)) is True

    assert h.agent.sent == [("fix-1", APPROVAL_MESSAGE)]
    issue = h.board.require(1)
    assert issue.status == "fixing"
    assert issue.blocker is None
    assert issue.fix_session == replace(FIX_SESSION, started_at="2026-03-01T12:00:00.000Z")
    assert h.board.active_session is not None


def test_abort_deletes_session_and_stops_watching() -> None:
    h = _harness()
    _seed(h, status="fixing", fix_session=FIX_SESSION)
    h.board.set_active_session(ActiveSession(session_id="fix-1", issue_number=1, kind="fixing"))

    assert asyncio.run(h.controller.abort(1)) is True

    assert h.agent.deleted == ["fix-1"]
    assert h.board.require(1).status == "aborted"
    assert h.board.active_session is None


def test_abort_failure_keeps_status() -> None:
    h = _harness()
    _seed(h, status="scoping", scoping_session=SCOPE_SESSION)
    h.agent.fail_delete = AgentApiError("down", status_code=500)
    assert asyncio.run(h.controller.abort(1)) is False
    assert h.board.require(1).status == "scoping"


def test_retry_wakes_blocked_session() -> None:
    h = _harness()
    _seed(h, status="blocked", fix_session=FIX_SESSION, blocker=BlockerInfo("need key", "help"))

    assert asyncio.run(h.controller.retry(1, "it is in the vault")) is True

    assert h.agent.created == []
    session_id, message = h.agent.sent[0]
    assert session_id == "fix-1"
    assert 'Here is their guidance: "it is in the vault"' in message
    assert h.board.require(1).status == "fixing"
    assert h.timers.delays == [10.0]


def test_woken_session_gets_a_fresh_timeout_budget() -> None:
    h = _harness()
    old_session = replace(FIX_SESSION, started_at="2026-03-01T09:00:00.000Z")
    _seed(h, status="blocked", fix_session=old_session, blocker=BlockerInfo("went to sleep", "wake it"))

    assert asyncio.run(h.controller.retry(1)) is True

    issue = h.board.require(1)
    assert issue.fix_session is not None
    assert issue.fix_session.session_id == "fix-1"
    assert issue.fix_session.started_at == "2026-03-01T12:00:00.000Z"

    h.agent.snapshots.append(snapshot("working", session_id="fix-1"))
    assert asyncio.run(h.scheduler.poll_once()) == "fixing"
    assert h.board.require(1).status == "fixing"


def test_retry_recreates_failed_session_with_context() -> None:
    h = _harness()
    _seed(
        h,
        status="failed",
        scoping=SCOPING,
        fix_session=FIX_SESSION,
        blocker=BlockerInfo("need key", "help"),
    )

    assert asyncio.run(h.controller.retry(1, "use staging")) is True

    assert h.agent.deleted == ["fix-1"]
    issue = h.board.require(1)
    assert issue.status == "fixing"
    assert issue.fix_session is not None
    assert issue.fix_session.session_id == "new-1"
    prompt = str(h.agent.created[0]["prompt"])
    assert 'A previous session asked: "need key"' in prompt
    assert 'The user responded: "use staging"' in prompt


def test_retry_recreate_tolerates_delete_failure() -> None:
    h = _harness()
    _seed(h, status="timed_out", scoping=SCOPING, fix_session=FIX_SESSION)
    h.agent.fail_delete = AgentApiError("gone", status_code=404)

    assert asyncio.run(h.controller.retry(1)) is True
    assert h.board.require(1).status == "fixing"
