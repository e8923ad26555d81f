from __future__ import annotations

from pathlib import Path
import sqlite3

import pytest

from fakes import make_issue
from issuepilot.issue_state import create_pending_issue
from issuepilot.models import (
    BlockerInfo,
    DiffLine,
    FixProgress,
    PRFileChange,
    PRInfo,
    ScopingResult,
    SessionInfo,
)
from issuepilot.state import StateStore, hydrate_issue, persisted_fields


SCOPING = ScopingResult(
    confidence="yellow",
    confidence_reason="needs a decision",
    current_behavior="crash on empty",
    requested_fix="return []",
    files_to_modify=("src/a.py",),
    tests_needed="unit",
    action_plan=("guard", "test"),
    risks=("none",),
    open_questions=("Which default?",),
)
SESSION = SessionInfo(
    session_id="sess-1",
    session_url="https://agent.example/sess-1",
    started_at="2026-03-01T11:00:00.000Z",
)


def test_upsert_creates_and_merges_rows(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    store.upsert_issue_row("O/R", 7, {"status": "scoping", "scoping_session": SESSION})
    store.upsert_issue_row(
        "o/r",
        7,
        {
            "status": "awaiting_reply",
            "confidence": "yellow",
            "scoping": SCOPING,
            "last_agent_comment_id": 55,
            "last_agent_comment_at": "2026-03-01T12:00:00Z",
            "github_comment_url": "https://github.com/o/r/issues/7#issuecomment-55",
            "forwarded_comment_ids": (3, 4),
        },
    )

    rows = store.get_rows_by_repo("o/r")
    assert len(rows) == 1
    row = rows[0]
    assert row.repo_full_name == "o/r"
    assert row.status == "awaiting_reply"
    assert row.scoping == SCOPING
    assert row.scoping_session == SESSION
    assert row.last_agent_comment_id == 55
    assert row.forwarded_comment_ids == (3, 4)
    assert row.updated_at


def test_json_columns_round_trip(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    pr = PRInfo(
        url="https://github.com/o/r/pull/8",
        number=8,
        title="Fix",
        branch="agent/fix-7",
        files_changed=(
            PRFileChange(
                path="a.py",
                additions=1,
                deletions=0,
                is_new=True,
                diff_lines=(DiffLine(kind="add", text="+x"),),
            ),
        ),
    )
    progress = FixProgress(
        status="blocked",
        current_step="",
        completed_steps=("one",),
        pr_url=None,
        blockers=("stopped",),
    )
    blocker = BlockerInfo(what_happened="need key", suggestion="help")
    store.upsert_issue_row(
        "o/r",
        7,
        {"status": "failed", "pr": pr, "fix_progress": progress, "blocker": blocker},
    )

    row = store.get_rows_by_repo("o/r")[0]
    assert row.pr == pr
    assert row.fix_progress == progress
    assert row.blocker == blocker

    store.upsert_issue_row("o/r", 7, {"blocker": None, "pr": None})
    row = store.get_rows_by_repo("o/r")[0]
    assert row.blocker is None
    assert row.pr is None
    assert row.fix_progress == progress


def test_rows_are_found_by_either_session_id(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    fix = SessionInfo(session_id="fix-1", session_url="", started_at="")
    store.upsert_issue_row("o/r", 1, {"scoping_session": SESSION})
    store.upsert_issue_row("o/r", 2, {"fix_session": fix})

    scoping_row = store.get_row_by_session_id("sess-1")
    fix_row = store.get_row_by_session_id("fix-1")
    assert scoping_row is not None and scoping_row.issue_number == 1
    assert fix_row is not None and fix_row.issue_number == 2
    assert store.get_row_by_session_id("missing") is None


def test_rows_are_scoped_by_repo(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_issue_row("o/r", 1, {"status": "scoped"})
    store.upsert_issue_row("o/other", 1, {"status": "done"})
    assert [row.status for row in store.get_rows_by_repo("O/R")] == ["scoped"]


def test_upsert_rejects_unknown_fields_and_empty_repo(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    with pytest.raises(ValueError, match="Unknown issue row fields: messages"):
        store.upsert_issue_row("o/r", 1, {"messages": ()})
    with pytest.raises(ValueError, match="repo must be"):
        store.upsert_issue_row("  ", 1, {"status": "scoped"})


def test_connection_rolls_back_on_error(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")

    with pytest.raises(RuntimeError, match="boom"):
        with store._connect() as conn:
            conn.execute(
                "INSERT INTO issue_sessions(repo_full_name, issue_number) VALUES('o/r', 1)"
            )
            raise RuntimeError("boom")

    assert store.get_rows_by_repo("o/r") == ()


@pytest.mark.parametrize(
    ("column", "value", "message"),
    [
        ("status", "exploded", "Invalid status"),
        ("confidence", "purple", "Invalid confidence"),
        ("forwarded_comment_ids", '["x"]', "Invalid forwarded_comment_ids"),
        ("blocker", "not json", "Invalid blocker"),
        ("scoping_session", '{"session_url": "u"}', "Invalid scoping_session"),
        ("pr", '{"url": "u"}', "Invalid pr"),
    ],
)
def test_invalid_stored_values_are_rejected(
    tmp_path: Path, column: str, value: str, message: str
) -> None:
    db_path = tmp_path / "state.db"
    store = StateStore(db_path)
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            f"INSERT INTO issue_sessions(repo_full_name, issue_number, {column}) VALUES(?, ?, ?)",
            ("o/r", 1, value),
        )
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(RuntimeError, match=message):
        store.get_rows_by_repo("o/r")


def test_persisted_fields_drop_transient_keys() -> None:
    assert persisted_fields({"status": "scoped", "messages": (), "steps": ()}) == {"status": "scoped"}


def test_hydrate_issue_restores_durable_fields(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "state.db")
    store.upsert_issue_row(
        "o/r",
        3,
        {"status": "scoped", "confidence": "yellow", "scoping": SCOPING, "scoping_session": SESSION},
    )
    row = store.get_rows_by_repo("o/r")[0]

    issue = hydrate_issue(create_pending_issue(make_issue(3, title="Crash")), row)

    assert issue.title == "Crash"
    assert issue.status == "scoped"
    assert issue.scoping == SCOPING
    assert issue.scoping_session == SESSION
    assert issue.messages == ()
