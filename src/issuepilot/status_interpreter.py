from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime, timedelta
import json
import re
from typing import cast

from issuepilot.clock import format_timestamp, parse_timestamp
from issuepilot.models import (
    CONFIDENCE_LEVELS,
    STATUS_ENUMS,
    BlockerInfo,
    Confidence,
    ConversationMessage,
    FixProgress,
    MessageRole,
    PollResult,
    PRInfo,
    PullRequestRef,
    ScopingResult,
    SessionKind,
    SessionSnapshot,
    StatusEnum,
)


DEFAULT_BRANCH_PREFIX = "agent/fix-"
DEFAULT_BLOCKER_TEXT = "Agent needs input"
GUIDANCE_SUGGESTION = "Please provide guidance to continue"
GITHUB_ACCESS_SUGGESTION = (
    "The agent needs GitHub access to this repository. Grant its GitHub integration "
    "write access to the repo, then retry."
)
SLEEPING_WHAT_HAPPENED = "Agent session went to sleep due to inactivity"
SLEEPING_SUGGESTION = "Retry to wake this session and resume where it left off"
STOPPED_BLOCKER_TEXT = "Session stopped unexpectedly"

_TERMINAL_STATUS_ENUMS = frozenset({"finished", "stopped", "expired"})
_PR_URL_PATTERN = re.compile(r"github\.com/([^/]+)/([^/]+)/pull/(\d+)")
_JSON_FENCE_PATTERN = re.compile(r"```json\s*\n([\s\S]*?)\n```")
_BARE_FENCE_PATTERN = re.compile(r"```\s*\n(\{[\s\S]*?\})\n```")
_TAG_MARKUP_PATTERN = re.compile(r"\[/?\w+\]")
_GITHUB_TOPIC_PATTERN = re.compile(r"github|git push|repository|repo")
_ACCESS_TOPIC_PATTERN = re.compile(
    r"credential|token|access|authenticat|permiss|push.*fail|write access"
)


def is_terminal(status_enum: str) -> bool:
    return status_enum in _TERMINAL_STATUS_ENUMS


def parse_structured_output(raw: object) -> ScopingResult | None:
    """Coerce raw structured output into a ScopingResult.

    Returns None for anything that is not a JSON object. Wrong-typed fields fall
    back to their empty defaults, a bare string in a list field becomes a
    single-element list, and an unknown confidence becomes ``yellow``. A green
    result that still lists open questions is downgraded to ``yellow``.
    """
    if isinstance(raw, ScopingResult):
        return raw
    if not isinstance(raw, Mapping):
        return None
    obj = cast(Mapping[str, object], raw)

    raw_confidence = obj.get("confidence")
    normalized = raw_confidence.strip().lower() if isinstance(raw_confidence, str) else ""
    open_questions = _string_list(obj.get("open_questions"))
    confidence: Confidence
    if normalized in CONFIDENCE_LEVELS:
        confidence = cast(Confidence, normalized)
    else:
        confidence = "yellow"
    if confidence == "green" and open_questions:
        confidence = "yellow"

    return ScopingResult(
        confidence=confidence,
        confidence_reason=_string(obj.get("confidence_reason")),
        current_behavior=_string(obj.get("current_behavior")),
        requested_fix=_string(obj.get("requested_fix")),
        files_to_modify=_string_list(obj.get("files_to_modify")),
        tests_needed=_string(obj.get("tests_needed")),
        action_plan=_string_list(obj.get("action_plan")),
        risks=_string_list(obj.get("risks")),
        open_questions=open_questions,
    )


def extract_structured_output_from_messages(
    messages: Sequence[object] | None,
) -> dict[str, object] | None:
    """Find the newest agent message embedding a fenced JSON analysis."""
    if not messages:
        return None
    for message in reversed(messages):
        if not isinstance(message, Mapping):
            continue
        message_type = message.get("type")
        if message_type and message_type != "devin_message":
            continue
        text = _message_text(message)
        if not text:
            continue
        for pattern in (_JSON_FENCE_PATTERN, _BARE_FENCE_PATTERN):
            match = pattern.search(text)
            if match is None:
                continue
            parsed = _parse_schema_json(match.group(1))
            if parsed is not None:
                return parsed
    return None


def parse_pr_url(url: str | None) -> PullRequestRef | None:
    if not url:
        return None
    match = _PR_URL_PATTERN.search(url)
    if match is None:
        return None
    return PullRequestRef(owner=match.group(1), repo=match.group(2), pr_number=int(match.group(3)))


def parse_session_snapshot(raw: object) -> SessionSnapshot:
    if not isinstance(raw, Mapping):
        raise RuntimeError("Unexpected agent response: expected object for session")
    payload = cast(Mapping[str, object], raw)

    raw_messages = payload.get("messages")
    message_items: list[object] = list(raw_messages) if isinstance(raw_messages, list) else []
    updated_at = _string(payload.get("updated_at"))

    structured = payload.get("structured_output")
    structured_output: Mapping[str, object] | None
    if isinstance(structured, Mapping) and structured:
        structured_output = cast(Mapping[str, object], structured)
    else:
        structured_output = extract_structured_output_from_messages(message_items)

    pull_request = payload.get("pull_request")
    pr_url: str | None = None
    if isinstance(pull_request, Mapping):
        candidate = pull_request.get("url")
        if isinstance(candidate, str) and candidate:
            pr_url = candidate

    return SessionSnapshot(
        session_id=_string(payload.get("session_id")),
        status_enum=_status_enum(payload.get("status_enum")),
        status=_string(payload.get("status")),
        created_at=_string(payload.get("created_at")),
        updated_at=updated_at,
        pull_request_url=pr_url,
        structured_output=structured_output,
        messages=_conversation_messages(message_items, updated_at),
    )


def classify_blocker(message: str) -> str:
    """Return the suggestion shown alongside a blocker message."""
    lowered = message.lower()
    if _GITHUB_TOPIC_PATTERN.search(lowered) and _ACCESS_TOPIC_PATTERN.search(lowered):
        return GITHUB_ACCESS_SUGGESTION
    return GUIDANCE_SUGGESTION


def interpret(
    snapshot: SessionSnapshot,
    kind: SessionKind,
    *,
    issue_number: int,
    timeout_limit: timedelta,
    now: datetime,
    session_started_at: str | None = None,
    branch_prefix: str = DEFAULT_BRANCH_PREFIX,
) -> PollResult:
    """Map one session snapshot to exactly one poll action.

    Rules are evaluated in order and the first match wins: local wall-clock
    timeout, agent-declared expiry, terminal states, early scoping output,
    blocked, sleeping, and finally continue.
    """
    now_text = format_timestamp(now)

    started = parse_timestamp(session_started_at)
    if started is not None and now - started > timeout_limit:
        return PollResult(
            action="timed_out",
            patch={"status": "timed_out", "messages": snapshot.messages},
        )

    if snapshot.status_enum == "expired":
        return PollResult(
            action="timed_out",
            patch={
                "status": "timed_out",
                "messages": snapshot.messages,
                "fix_session_updated_at": snapshot.updated_at or None,
            },
        )

    if is_terminal(snapshot.status_enum):
        if kind == "scoping":
            return _scoping_terminal(snapshot, now_text)
        return _fixing_terminal(snapshot, issue_number, now_text, branch_prefix)

    if kind == "scoping" and snapshot.structured_output is not None:
        return _scoping_terminal(snapshot, now_text)

    if snapshot.status_enum == "blocked":
        what_happened = _blocker_text(snapshot)
        return PollResult(
            action="blocked",
            patch={
                "status": "blocked",
                "blocker": BlockerInfo(
                    what_happened=what_happened,
                    suggestion=classify_blocker(what_happened),
                ),
                "messages": snapshot.messages,
            },
        )

    if snapshot.status_enum == "suspend_requested":
        return PollResult(
            action="blocked",
            patch={
                "status": "blocked",
                "blocker": BlockerInfo(
                    what_happened=SLEEPING_WHAT_HAPPENED,
                    suggestion=SLEEPING_SUGGESTION,
                ),
                "messages": snapshot.messages,
            },
        )

    return PollResult(action="continue", patch={}, next_poll_category=kind)


def _scoping_terminal(snapshot: SessionSnapshot, now_text: str) -> PollResult:
    parsed = parse_structured_output(snapshot.structured_output)
    if parsed is None:
        return PollResult(
            action="scoped",
            patch={"status": "scoped", "scoped_at": now_text, "messages": snapshot.messages},
        )
    return PollResult(
        action="scoped",
        patch={
            "status": "scoped",
            "confidence": parsed.confidence,
            "scoping": parsed,
            "scoped_at": now_text,
            "messages": snapshot.messages,
        },
    )


def _fixing_terminal(
    snapshot: SessionSnapshot,
    issue_number: int,
    now_text: str,
    branch_prefix: str,
) -> PollResult:
    updated_at = snapshot.updated_at or None
    if snapshot.pull_request_url:
        ref = parse_pr_url(snapshot.pull_request_url)
        pr = None
        if ref is not None:
            pr = PRInfo(
                url=snapshot.pull_request_url,
                number=ref.pr_number,
                title=f"Fix for #{issue_number}",
                branch=f"{branch_prefix}{issue_number}",
            )
        return PollResult(
            action="done",
            patch={
                "status": "done",
                "completed_at": now_text,
                "pr": pr,
                "messages": snapshot.messages,
                "fix_session_updated_at": updated_at,
            },
        )

    if snapshot.status_enum == "stopped":
        return PollResult(
            action="failed",
            patch={
                "status": "failed",
                "fix_progress": FixProgress(
                    status="blocked",
                    current_step="",
                    completed_steps=(),
                    pr_url=None,
                    blockers=(snapshot.status or STOPPED_BLOCKER_TEXT,),
                ),
                "messages": snapshot.messages,
                "fix_session_updated_at": updated_at,
            },
        )

    # Finished without a PR is still a completion with nothing to show.
    return PollResult(
        action="done",
        patch={
            "status": "done",
            "completed_at": now_text,
            "messages": snapshot.messages,
            "fix_session_updated_at": updated_at,
        },
    )


def _blocker_text(snapshot: SessionSnapshot) -> str:
    source = ""
    for message in reversed(snapshot.messages):
        if message.role == "agent" and message.text:
            source = message.text
            break
    if not source:
        source = snapshot.status
    stripped = _TAG_MARKUP_PATTERN.sub("", source).strip()
    return stripped or DEFAULT_BLOCKER_TEXT


def _conversation_messages(
    raw_messages: Sequence[object], updated_at: str
) -> tuple[ConversationMessage, ...]:
    anchor = parse_timestamp(updated_at)
    total = len(raw_messages)
    out: list[ConversationMessage] = []
    for index, item in enumerate(raw_messages):
        if not isinstance(item, Mapping):
            continue
        role: MessageRole = "user" if item.get("type") == "user_message" else "agent"
        if anchor is None:
            timestamp = updated_at
        elif index == total - 1:
            timestamp = updated_at
        else:
            timestamp = format_timestamp(anchor - timedelta(seconds=total - 1 - index))
        out.append(
            ConversationMessage(role=role, text=_message_text(item), timestamp=timestamp)
        )
    return tuple(out)


def _parse_schema_json(text: str) -> dict[str, object] | None:
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if isinstance(parsed, dict) and "confidence" in parsed:
        return cast(dict[str, object], parsed)
    return None


def _message_text(message: Mapping[object, object]) -> str:
    for key in ("message", "content"):
        value = message.get(key)
        if isinstance(value, str) and value:
            return value
    return ""


def _status_enum(value: object) -> StatusEnum:
    if isinstance(value, str) and value in STATUS_ENUMS:
        return cast(StatusEnum, value)
    return "working"


def _string(value: object) -> str:
    return value if isinstance(value, str) else ""


def _string_list(value: object) -> tuple[str, ...]:
    if isinstance(value, list | tuple):
        return tuple(item for item in value if isinstance(item, str))
    if isinstance(value, str):
        return (value,)
    return ()
