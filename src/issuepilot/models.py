from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Literal


IssueStatus = Literal[
    "pending",
    "scoping",
    "scoped",
    "fixing",
    "blocked",
    "awaiting_reply",
    "timed_out",
    "failed",
    "aborted",
    "done",
    "pr_open",
]
Confidence = Literal["green", "yellow", "red"]
StatusEnum = Literal[
    "working",
    "blocked",
    "finished",
    "stopped",
    "expired",
    "suspend_requested",
    "resumed",
]
SessionKind = Literal["scoping", "fixing"]
PollCategory = Literal["scoping", "fixing", "blocked", "default"]
PollAction = Literal["scoped", "done", "failed", "blocked", "timed_out", "continue"]
MessageRole = Literal["user", "agent"]
MessageSource = Literal["app", "github"]
DiffLineKind = Literal["add", "remove", "context"]
StepStatus = Literal["pending", "in_progress", "done"]

ISSUE_STATUSES: tuple[IssueStatus, ...] = (
    "pending",
    "scoping",
    "scoped",
    "fixing",
    "blocked",
    "awaiting_reply",
    "timed_out",
    "failed",
    "aborted",
    "done",
    "pr_open",
)
CONFIDENCE_LEVELS: tuple[Confidence, ...] = ("green", "yellow", "red")
STATUS_ENUMS: tuple[StatusEnum, ...] = (
    "working",
    "blocked",
    "finished",
    "stopped",
    "expired",
    "suspend_requested",
    "resumed",
)

# Field name -> new value, merged into a DashboardIssue.
IssuePatch = Mapping[str, object]


@dataclass(frozen=True)
class Issue:
    number: int
    title: str
    body: str
    html_url: str
    labels: tuple[str, ...]
    created_at: str = ""
    updated_at: str = ""


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    html_url: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class DiffLine:
    kind: DiffLineKind
    text: str


@dataclass(frozen=True)
class PRFileChange:
    path: str
    additions: int
    deletions: int
    is_new: bool
    diff_lines: tuple[DiffLine, ...] = ()


@dataclass(frozen=True)
class PullRequestDetails:
    number: int
    url: str
    title: str
    branch: str
    body: str
    files: tuple[PRFileChange, ...]


@dataclass(frozen=True)
class PRInfo:
    url: str
    number: int
    title: str
    branch: str
    files_changed: tuple[PRFileChange, ...] = ()


@dataclass(frozen=True)
class ScopingResult:
    confidence: Confidence
    confidence_reason: str
    current_behavior: str
    requested_fix: str
    files_to_modify: tuple[str, ...]
    tests_needed: str
    action_plan: tuple[str, ...]
    risks: tuple[str, ...]
    open_questions: tuple[str, ...]


@dataclass(frozen=True)
class BlockerInfo:
    what_happened: str
    suggestion: str


@dataclass(frozen=True)
class FixProgress:
    status: str
    current_step: str
    completed_steps: tuple[str, ...]
    pr_url: str | None
    blockers: tuple[str, ...]


@dataclass(frozen=True)
class StepItem:
    label: str
    status: StepStatus


@dataclass(frozen=True)
class ConversationMessage:
    role: MessageRole
    text: str
    timestamp: str
    source: MessageSource = "app"


@dataclass(frozen=True)
class SessionInfo:
    session_id: str
    session_url: str
    started_at: str


@dataclass(frozen=True)
class CreatedSession:
    session_id: str
    url: str


@dataclass(frozen=True)
class ActiveSession:
    session_id: str
    issue_number: int
    kind: SessionKind
    session_url: str = ""


@dataclass(frozen=True)
class PendingMessage:
    text: str
    sent_at: str


@dataclass(frozen=True)
class SessionSnapshot:
    session_id: str
    status_enum: StatusEnum
    status: str
    created_at: str
    updated_at: str
    pull_request_url: str | None = None
    structured_output: Mapping[str, object] | None = None
    messages: tuple[ConversationMessage, ...] = ()


@dataclass(frozen=True)
class DashboardIssue:
    number: int
    title: str
    body: str
    github_url: str
    labels: tuple[str, ...] = ()
    created_at: str = ""
    updated_at: str = ""
    status: IssueStatus = "pending"
    confidence: Confidence | None = None
    scoping: ScopingResult | None = None
    fix_progress: FixProgress | None = None
    blocker: BlockerInfo | None = None
    pr: PRInfo | None = None
    steps: tuple[StepItem, ...] = ()
    messages: tuple[ConversationMessage, ...] = ()
    scoping_session: SessionInfo | None = None
    fix_session: SessionInfo | None = None
    fix_session_updated_at: str | None = None
    scoped_at: str | None = None
    fix_started_at: str | None = None
    completed_at: str | None = None
    last_agent_comment_id: int | None = None
    last_agent_comment_at: str | None = None
    github_comment_url: str | None = None
    forwarded_comment_ids: tuple[int, ...] = ()


@dataclass(frozen=True)
class PollResult:
    """Outcome of interpreting one session poll.

    Every action except ``continue`` carries a patch; ``continue`` carries the
    category that selects the next poll interval and may carry a patch.
    """

    action: PollAction
    patch: IssuePatch
    next_poll_category: PollCategory | None = None

    def __post_init__(self) -> None:
        if self.action == "continue" and self.next_poll_category is None:
            raise ValueError("continue results require next_poll_category")
        if self.action != "continue" and self.next_poll_category is not None:
            raise ValueError(f"{self.action} results do not schedule a poll category")


@dataclass(frozen=True)
class WakeDecision:
    session_id: str
    message: str
    kind: Literal["wake"] = "wake"


@dataclass(frozen=True)
class RecreateDecision:
    previous_context: str | None = None
    session_id: str | None = None
    kind: Literal["recreate"] = "recreate"


RetryDecision = WakeDecision | RecreateDecision


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    pr_number: int
