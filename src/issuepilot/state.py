from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
import json
from pathlib import Path
import sqlite3
import threading
from typing import cast

from issuepilot.models import (
    CONFIDENCE_LEVELS,
    ISSUE_STATUSES,
    BlockerInfo,
    Confidence,
    DashboardIssue,
    DiffLine,
    FixProgress,
    IssueStatus,
    PRFileChange,
    PRInfo,
    ScopingResult,
    SessionInfo,
)
from issuepilot.status_interpreter import parse_structured_output


_PLAIN_COLUMNS = (
    "status",
    "confidence",
    "scoped_at",
    "fix_started_at",
    "completed_at",
    "last_agent_comment_id",
    "last_agent_comment_at",
    "github_comment_url",
)
_JSON_COLUMNS = (
    "scoping",
    "blocker",
    "pr",
    "fix_progress",
    "scoping_session",
    "fix_session",
    "forwarded_comment_ids",
)
PERSISTED_FIELDS = frozenset(_PLAIN_COLUMNS + _JSON_COLUMNS)
_SELECT_COLUMNS = (
    "repo_full_name",
    "issue_number",
    *_PLAIN_COLUMNS,
    *_JSON_COLUMNS,
    "updated_at",
)


@dataclass(frozen=True)
class IssueRow:
    repo_full_name: str
    issue_number: int
    status: IssueStatus
    confidence: Confidence | None
    scoped_at: str | None
    fix_started_at: str | None
    completed_at: str | None
    last_agent_comment_id: int | None
    last_agent_comment_at: str | None
    github_comment_url: str | None
    scoping: ScopingResult | None
    blocker: BlockerInfo | None
    pr: PRInfo | None
    fix_progress: FixProgress | None
    scoping_session: SessionInfo | None
    fix_session: SessionInfo | None
    forwarded_comment_ids: tuple[int, ...]
    updated_at: str


class StateStore:
    def __init__(self, db_path: Path) -> None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db_path = db_path
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS issue_sessions (
                    repo_full_name TEXT NOT NULL,
                    issue_number INTEGER NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    confidence TEXT,
                    scoped_at TEXT,
                    fix_started_at TEXT,
                    completed_at TEXT,
                    last_agent_comment_id INTEGER,
                    last_agent_comment_at TEXT,
                    github_comment_url TEXT,
                    scoping TEXT,
                    blocker TEXT,
                    pr TEXT,
                    fix_progress TEXT,
                    scoping_session TEXT,
                    fix_session TEXT,
                    forwarded_comment_ids TEXT,
                    scoping_session_id TEXT,
                    fix_session_id TEXT,
                    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
                    PRIMARY KEY (repo_full_name, issue_number)
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_issue_sessions_scoping_session
                ON issue_sessions(scoping_session_id)
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_issue_sessions_fix_session
                ON issue_sessions(fix_session_id)
                """
            )

    def upsert_issue_row(self, repo: str, issue_number: int, fields: Mapping[str, object]) -> None:
        """Merge ``fields`` into the row for ``repo``/``issue_number``.

        Only the named columns change; repeated calls with the same fields are
        no-ops apart from ``updated_at``.
        """
        unknown = sorted(set(fields) - PERSISTED_FIELDS)
        if unknown:
            raise ValueError(f"Unknown issue row fields: {', '.join(unknown)}")
        columns = _serialize_fields(fields)
        names = list(columns)
        insert_columns = ", ".join(["repo_full_name", "issue_number", *names])
        placeholders = ", ".join("?" for _ in range(len(names) + 2))
        assignments = [f"{name}=excluded.{name}" for name in names]
        assignments.append("updated_at=strftime('%Y-%m-%dT%H:%M:%fZ', 'now')")
        with self._lock, self._connect() as conn:
            conn.execute(
                f"""
                INSERT INTO issue_sessions({insert_columns})
                VALUES({placeholders})
                ON CONFLICT(repo_full_name, issue_number) DO UPDATE SET
                    {", ".join(assignments)}
                """,
                (_normalize_repo(repo), issue_number, *columns.values()),
            )

    def get_rows_by_repo(self, repo: str) -> tuple[IssueRow, ...]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {", ".join(_SELECT_COLUMNS)}
                FROM issue_sessions
                WHERE repo_full_name = ?
                ORDER BY issue_number ASC
                """,
                (_normalize_repo(repo),),
            ).fetchall()
        return tuple(_parse_issue_row(row) for row in rows)

    def get_row_by_session_id(self, session_id: str) -> IssueRow | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {", ".join(_SELECT_COLUMNS)}
                FROM issue_sessions
                WHERE scoping_session_id = ?
                UNION ALL
                SELECT {", ".join(_SELECT_COLUMNS)}
                FROM issue_sessions
                WHERE fix_session_id = ?
                LIMIT 1
                """,
                (session_id, session_id),
            ).fetchone()
        if row is None:
            return None
        return _parse_issue_row(row)


def persisted_fields(patch: Mapping[str, object]) -> dict[str, object]:
    """The subset of an issue patch that the store keeps."""
    return {key: value for key, value in patch.items() if key in PERSISTED_FIELDS}


def hydrate_issue(issue: DashboardIssue, row: IssueRow) -> DashboardIssue:
    return replace(
        issue,
        status=row.status,
        confidence=row.confidence,
        scoping=row.scoping,
        blocker=row.blocker,
        pr=row.pr,
        fix_progress=row.fix_progress,
        scoping_session=row.scoping_session,
        fix_session=row.fix_session,
        scoped_at=row.scoped_at,
        fix_started_at=row.fix_started_at,
        completed_at=row.completed_at,
        last_agent_comment_id=row.last_agent_comment_id,
        last_agent_comment_at=row.last_agent_comment_at,
        github_comment_url=row.github_comment_url,
        forwarded_comment_ids=row.forwarded_comment_ids,
    )


def _normalize_repo(repo: str) -> str:
    normalized = repo.strip().lower()
    if not normalized:
        raise ValueError("repo must be a non-empty owner/name")
    return normalized


def _serialize_fields(fields: Mapping[str, object]) -> dict[str, object]:
    columns: dict[str, object] = {}
    for key, value in fields.items():
        if key in _JSON_COLUMNS:
            columns[key] = _to_json(value)
        else:
            columns[key] = value
        if key in ("scoping_session", "fix_session"):
            session_id = value.session_id if isinstance(value, SessionInfo) else None
            columns[f"{key}_id"] = session_id
    return columns


def _to_json(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, tuple | list | frozenset | set):
        return json.dumps(sorted(value) if isinstance(value, frozenset | set) else list(value))
    return json.dumps(asdict(value))  # type: ignore[call-overload]


def _load_json(value: object, *, column: str) -> object:
    if value is None:
        return None
    if not isinstance(value, str):
        raise RuntimeError(f"Invalid {column} value stored in issue_sessions")
    try:
        return json.loads(value)
    except ValueError as exc:
        raise RuntimeError(f"Invalid {column} value stored in issue_sessions") from exc


def _parse_issue_row(row: tuple[object, ...]) -> IssueRow:
    if len(row) != len(_SELECT_COLUMNS):
        raise RuntimeError("Invalid issue_sessions row width")
    values = dict(zip(_SELECT_COLUMNS, row, strict=True))

    repo_full_name = values["repo_full_name"]
    issue_number = values["issue_number"]
    status = values["status"]
    confidence = values["confidence"]
    last_comment_id = values["last_agent_comment_id"]
    updated_at = values["updated_at"]
    if not isinstance(repo_full_name, str):
        raise RuntimeError("Invalid repo_full_name value stored in issue_sessions")
    if not isinstance(issue_number, int):
        raise RuntimeError("Invalid issue_number value stored in issue_sessions")
    if status not in ISSUE_STATUSES:
        raise RuntimeError("Invalid status value stored in issue_sessions")
    if confidence is not None and confidence not in CONFIDENCE_LEVELS:
        raise RuntimeError("Invalid confidence value stored in issue_sessions")
    if last_comment_id is not None and not isinstance(last_comment_id, int):
        raise RuntimeError("Invalid last_agent_comment_id value stored in issue_sessions")
    if not isinstance(updated_at, str):
        raise RuntimeError("Invalid updated_at value stored in issue_sessions")
    for column in ("scoped_at", "fix_started_at", "completed_at", "last_agent_comment_at", "github_comment_url"):
        if values[column] is not None and not isinstance(values[column], str):
            raise RuntimeError(f"Invalid {column} value stored in issue_sessions")

    forwarded = _load_json(values["forwarded_comment_ids"], column="forwarded_comment_ids")
    forwarded_ids: tuple[int, ...] = ()
    if forwarded is not None:
        if not isinstance(forwarded, list) or not all(
            isinstance(item, int) and not isinstance(item, bool) for item in forwarded
        ):
            raise RuntimeError("Invalid forwarded_comment_ids value stored in issue_sessions")
        forwarded_ids = tuple(forwarded)

    return IssueRow(
        repo_full_name=repo_full_name,
        issue_number=issue_number,
        status=cast(IssueStatus, status),
        confidence=cast(Confidence | None, confidence),
        scoped_at=cast(str | None, values["scoped_at"]),
        fix_started_at=cast(str | None, values["fix_started_at"]),
        completed_at=cast(str | None, values["completed_at"]),
        last_agent_comment_id=last_comment_id,
        last_agent_comment_at=cast(str | None, values["last_agent_comment_at"]),
        github_comment_url=cast(str | None, values["github_comment_url"]),
        scoping=parse_structured_output(_load_json(values["scoping"], column="scoping")),
        blocker=_parse_blocker(_load_json(values["blocker"], column="blocker")),
        pr=_parse_pr(_load_json(values["pr"], column="pr")),
        fix_progress=_parse_fix_progress(_load_json(values["fix_progress"], column="fix_progress")),
        scoping_session=_parse_session(
            _load_json(values["scoping_session"], column="scoping_session"),
            column="scoping_session",
        ),
        fix_session=_parse_session(
            _load_json(values["fix_session"], column="fix_session"), column="fix_session"
        ),
        forwarded_comment_ids=forwarded_ids,
        updated_at=updated_at,
    )


def _parse_blocker(value: object) -> BlockerInfo | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise RuntimeError("Invalid blocker value stored in issue_sessions")
    return BlockerInfo(
        what_happened=str(value.get("what_happened", "")),
        suggestion=str(value.get("suggestion", "")),
    )


def _parse_session(value: object, *, column: str) -> SessionInfo | None:
    if value is None:
        return None
    if not isinstance(value, dict) or not isinstance(value.get("session_id"), str):
        raise RuntimeError(f"Invalid {column} value stored in issue_sessions")
    return SessionInfo(
        session_id=value["session_id"],
        session_url=str(value.get("session_url") or ""),
        started_at=str(value.get("started_at") or ""),
    )


def _parse_fix_progress(value: object) -> FixProgress | None:
    if value is None:
        return None
    if not isinstance(value, dict):
        raise RuntimeError("Invalid fix_progress value stored in issue_sessions")
    pr_url = value.get("pr_url")
    return FixProgress(
        status=str(value.get("status", "")),
        current_step=str(value.get("current_step", "")),
        completed_steps=tuple(str(item) for item in value.get("completed_steps") or ()),
        pr_url=pr_url if isinstance(pr_url, str) else None,
        blockers=tuple(str(item) for item in value.get("blockers") or ()),
    )


def _parse_pr(value: object) -> PRInfo | None:
    if value is None:
        return None
    if not isinstance(value, dict) or not isinstance(value.get("number"), int):
        raise RuntimeError("Invalid pr value stored in issue_sessions")
    files: list[PRFileChange] = []
    for item in value.get("files_changed") or ():
        if not isinstance(item, dict):
            raise RuntimeError("Invalid pr value stored in issue_sessions")
        files.append(
            PRFileChange(
                path=str(item.get("path", "")),
                additions=int(item.get("additions", 0)),
                deletions=int(item.get("deletions", 0)),
                is_new=bool(item.get("is_new", False)),
                diff_lines=tuple(
                    DiffLine(kind=line["kind"], text=str(line.get("text", "")))
                    for line in item.get("diff_lines") or ()
                    if isinstance(line, dict) and line.get("kind") in ("add", "remove", "context")
                ),
            )
        )
    return PRInfo(
        url=str(value.get("url", "")),
        number=value["number"],
        title=str(value.get("title", "")),
        branch=str(value.get("branch", "")),
        files_changed=tuple(files),
    )
