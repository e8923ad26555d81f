from __future__ import annotations

from datetime import datetime, timedelta
import re

from issuepilot.clock import parse_timestamp
from issuepilot.models import BlockerInfo, ScopingResult


BOT_NAME = "Issue Pilot"
SELF_AUTHORED_MARKER = f"Posted by [{BOT_NAME}]"
DEFAULT_DUPLICATE_WINDOW = timedelta(seconds=60)

_WHITESPACE_RUN = re.compile(r"\s+")


def format_scoping_question_comment(issue_number: int, scoping: ScopingResult) -> str:
    lines = [
        "### \U0001f50d **The agent scoped this issue: questions before fixing**",
        "",
        _confidence_line(scoping),
        "",
    ]
    if scoping.open_questions:
        lines.append("**Questions:**")
        lines.extend(f"- {question}" for question in scoping.open_questions)
        lines.append("")
    if scoping.current_behavior:
        lines.extend((f"**Current behavior:** {scoping.current_behavior}", ""))
    if scoping.requested_fix:
        lines.extend((f"**Requested fix:** {scoping.requested_fix}", ""))
    lines.extend(("---", "> Reply to this comment and the agent will incorporate your answers"))
    return _with_footer(lines, issue_number)


def format_ready_after_clarification_comment(issue_number: int, scoping: ScopingResult) -> str:
    lines = [
        "### ✅ **Clarification received: ready to fix**",
        "",
        _confidence_line(scoping),
        "",
        "---",
        "> Head to the dashboard to start the fix",
    ]
    return _with_footer(lines, issue_number)


def format_green_scoped_comment(issue_number: int, scoping: ScopingResult) -> str:
    lines = [
        "### ✅ **The agent scoped this issue: ready to fix**",
        "",
        _confidence_line(scoping),
        "",
    ]
    if scoping.action_plan:
        lines.append("**Plan:**")
        lines.extend(f"- {step}" for step in scoping.action_plan)
        lines.append("")
    if scoping.files_to_modify:
        files = ", ".join(f"`{path}`" for path in scoping.files_to_modify)
        lines.extend((f"**Files:** {files}", ""))
    lines.extend(("---", "> Head to the dashboard to start the fix"))
    return _with_footer(lines, issue_number)


def format_blocked_comment(issue_number: int, blocker: BlockerInfo) -> str:
    lines = [
        "### ⚠️ **The agent is blocked and needs input**",
        "",
        f"**What happened:** {blocker.what_happened}",
        "",
    ]
    if blocker.suggestion:
        lines.extend((f"**Suggestion:** {blocker.suggestion}", ""))
    lines.extend(("---", "> Reply to this comment to unblock the agent"))
    return _with_footer(lines, issue_number)


def format_done_comment(issue_number: int, pr_url: str, pr_title: str) -> str:
    lines = [
        "### ✅ **The agent created a fix**",
        "",
        f"**PR:** [{pr_title}]({pr_url})",
        "",
        "---",
    ]
    return "\n".join((*lines, _footer(issue_number)))


def is_self_authored(body: str) -> bool:
    return SELF_AUTHORED_MARKER in body


def is_duplicate(
    new_text: str,
    existing_text: str,
    new_timestamp: str | datetime,
    existing_timestamp: str | datetime,
    window: timedelta = DEFAULT_DUPLICATE_WINDOW,
) -> bool:
    """True when both texts match after normalization and are close in time."""
    new_at = parse_timestamp(new_timestamp)
    existing_at = parse_timestamp(existing_timestamp)
    if new_at is None or existing_at is None:
        return False
    if abs(new_at - existing_at) > window:
        return False
    return _normalize(new_text) == _normalize(existing_text)


def _confidence_line(scoping: ScopingResult) -> str:
    return f"**Confidence:** {scoping.confidence} - {scoping.confidence_reason}"


def _with_footer(lines: list[str], issue_number: int) -> str:
    return "\n".join((*lines, "", _footer(issue_number)))


def _footer(issue_number: int) -> str:
    return f"<sub>\U0001f916 {SELF_AUTHORED_MARKER} • Issue #{issue_number}</sub>"


def _normalize(text: str) -> str:
    return _WHITESPACE_RUN.sub(" ", text.strip().lower())
