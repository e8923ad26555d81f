from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import fields, replace
from typing import Literal

from issuepilot.clock import parse_timestamp
from issuepilot.models import (
    ISSUE_STATUSES,
    Confidence,
    ConversationMessage,
    DashboardIssue,
    Issue,
    IssuePatch,
    IssueStatus,
    PollResult,
)


StatusGroup = Literal["all", "active", "needs_attention", "finished", "queued"]
ConfidenceFilter = Literal["all", "green", "yellow", "red"]

STATUS_GROUPS: dict[StatusGroup, frozenset[IssueStatus]] = {
    "all": frozenset(ISSUE_STATUSES),
    "active": frozenset({"scoping", "fixing"}),
    "needs_attention": frozenset({"blocked", "awaiting_reply", "timed_out", "failed"}),
    "finished": frozenset({"done", "pr_open", "aborted"}),
    "queued": frozenset({"pending", "scoped"}),
}
STATUS_GROUP_ORDER: tuple[StatusGroup, ...] = (
    "all",
    "active",
    "needs_attention",
    "queued",
    "finished",
)
CONFIDENCE_SORT_ORDER: dict[Confidence, int] = {"green": 0, "yellow": 1, "red": 2}

_PATCHABLE_FIELDS = frozenset(field.name for field in fields(DashboardIssue)) - {"number"}


def create_pending_issue(issue: Issue) -> DashboardIssue:
    return DashboardIssue(
        number=issue.number,
        title=issue.title,
        body=issue.body,
        github_url=issue.html_url,
        labels=issue.labels,
        created_at=issue.created_at,
        updated_at=issue.updated_at,
    )


def apply_patch(issue: DashboardIssue, patch: IssuePatch) -> DashboardIssue:
    """Return ``issue`` with ``patch`` merged in.

    ``messages`` entries are merged into the existing conversation instead of
    replacing it.
    """
    if not patch:
        return issue
    unknown = sorted(set(patch) - _PATCHABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown issue patch fields: {', '.join(unknown)}")
    status = patch.get("status", issue.status)
    if status not in ISSUE_STATUSES:
        raise ValueError(f"Unknown issue status: {status!r}")

    changes = dict(patch)
    if "messages" in changes:
        incoming = changes["messages"]
        if not isinstance(incoming, tuple | list):
            raise ValueError("messages patch must be a sequence of ConversationMessage")
        changes["messages"] = merge_messages(issue.messages, incoming)
    if "forwarded_comment_ids" in changes:
        ids = changes["forwarded_comment_ids"]
        if not isinstance(ids, tuple | list | frozenset | set):
            raise ValueError("forwarded_comment_ids patch must be a collection of ints")
        changes["forwarded_comment_ids"] = tuple(dict.fromkeys(sorted(ids)))
    return replace(issue, **changes)  # type: ignore[arg-type]


def apply_poll_result(issue: DashboardIssue, result: PollResult) -> DashboardIssue:
    return apply_patch(issue, result.patch)


def merge_messages(
    existing: Sequence[ConversationMessage], incoming: Iterable[object]
) -> tuple[ConversationMessage, ...]:
    """Union two conversations, dropping exact role/text/timestamp repeats."""
    seen: dict[tuple[str, str, str], ConversationMessage] = {}
    for message in (*existing, *incoming):
        if not isinstance(message, ConversationMessage):
            raise ValueError("messages patch must contain ConversationMessage values")
        key = (message.role, message.text, message.timestamp)
        if key not in seen:
            seen[key] = message
    return tuple(sorted(seen.values(), key=_message_sort_key))


def filter_issues(
    issues: Iterable[DashboardIssue],
    *,
    status_group: StatusGroup = "all",
    confidence: ConfidenceFilter = "all",
) -> tuple[DashboardIssue, ...]:
    allowed = STATUS_GROUPS[status_group]
    return tuple(
        issue
        for issue in issues
        if issue.status in allowed and (confidence == "all" or issue.confidence == confidence)
    )


def sort_issues(issues: Iterable[DashboardIssue]) -> tuple[DashboardIssue, ...]:
    return tuple(sorted(issues, key=_confidence_sort_key))


def next_status_group(current: StatusGroup) -> StatusGroup:
    index = STATUS_GROUP_ORDER.index(current)
    return STATUS_GROUP_ORDER[(index + 1) % len(STATUS_GROUP_ORDER)]


def _confidence_sort_key(issue: DashboardIssue) -> tuple[int, int]:
    if issue.confidence is None:
        return (len(CONFIDENCE_SORT_ORDER), issue.number)
    return (CONFIDENCE_SORT_ORDER[issue.confidence], issue.number)


def _message_sort_key(message: ConversationMessage) -> float:
    parsed = parse_timestamp(message.timestamp)
    return parsed.timestamp() if parsed is not None else 0.0
