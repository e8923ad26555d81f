from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import timedelta
import logging

from issuepilot.agent_adapter import AgentAdapter
from issuepilot.board import IssueBoard
from issuepilot.clock import format_timestamp
from issuepilot.comment_templates import (
    DEFAULT_DUPLICATE_WINDOW,
    format_blocked_comment,
    format_done_comment,
    format_green_scoped_comment,
    format_ready_after_clarification_comment,
    format_scoping_question_comment,
    is_duplicate,
    is_self_authored,
)
from issuepilot.error_messages import translate_error
from issuepilot.github_gateway import GitHubApiError
from issuepilot.issue_tracker import IssueTracker
from issuepilot.models import ConversationMessage, DashboardIssue, IssueComment, SessionKind
from issuepilot.observability import log_event, log_warning_event


LOGGER = logging.getLogger("issuepilot.comment_bridge")
WRITE_ACCESS_NOTICE = "GitHub comments disabled: token is missing write access"


def build_clarification_message(comment: IssueComment) -> str:
    author = comment.user_login or "unknown"
    return (
        "The user has provided the following clarification to your open questions "
        f"(via GitHub comment from @{author}):\n"
        f'"{comment.body}"\n'
        "\n"
        "Please re-analyze the issue with this new information and output an UPDATED JSON "
        "analysis wrapped in ```json fences (same schema). Update your confidence level "
        "accordingly.\n"
        "Do NOT start implementing the fix. Only provide the updated analysis."
    )


def build_guidance_message(comment: IssueComment) -> str:
    author = comment.user_login or "unknown"
    return (
        f"The user replied to your blocker via GitHub comment from @{author}:\n"
        f'"{comment.body}"\n'
        "\n"
        "Please continue working on the fix."
    )


class IssueLockTable:
    """In-flight markers keyed by issue number.

    ``acquire`` yields False without taking the lock when another holder is
    active, and always releases its own token on exit.
    """

    def __init__(self) -> None:
        self._holders: dict[int, object] = {}

    def is_held(self, issue_number: int) -> bool:
        return issue_number in self._holders

    @contextmanager
    def acquire(self, issue_number: int) -> Iterator[bool]:
        if issue_number in self._holders:
            yield False
            return
        token = object()
        self._holders[issue_number] = token
        try:
            yield True
        finally:
            if self._holders.get(issue_number) is token:
                del self._holders[issue_number]


class CommentBridge:
    def __init__(
        self,
        *,
        board: IssueBoard,
        tracker: IssueTracker,
        agent: AgentAdapter,
        enabled: bool = True,
        duplicate_window: timedelta = DEFAULT_DUPLICATE_WINDOW,
    ) -> None:
        self._board = board
        self._tracker = tracker
        self._agent = agent
        self._enabled = enabled
        self._duplicate_window = duplicate_window
        self._locks = IssueLockTable()
        self._write_access_notified = False

    @property
    def locks(self) -> IssueLockTable:
        return self._locks

    async def post(self, issue_number: int, body: str) -> IssueComment | None:
        """Post a comment; any failure yields None and is never retried."""
        if not self._enabled:
            return None
        try:
            comment = await self._tracker.create_comment(issue_number, body)
        except GitHubApiError as exc:
            if exc.status_code == 403:
                if not self._write_access_notified:
                    self._write_access_notified = True
                    self._board.notify(WRITE_ACCESS_NOTICE)
                log_warning_event(LOGGER, "github_comment_forbidden", issue_number=issue_number)
                return None
            self._log_post_failure(issue_number, exc)
            return None
        except Exception as exc:  # noqa: BLE001
            self._log_post_failure(issue_number, exc)
            return None
        log_event(
            LOGGER,
            "github_comment_posted",
            issue_number=issue_number,
            comment_id=comment.comment_id,
        )
        return comment

    async def poll_inbound(
        self,
        issue: DashboardIssue,
        session_id: str,
        *,
        kind: SessionKind = "scoping",
    ) -> bool:
        """Forward net-new human replies on ``issue`` into ``session_id``.

        Returns True when at least one reply was forwarded. A scoping session
        is asked to re-analyze and the issue goes back to ``scoping``; a
        blocked fix session is told to continue and the issue goes back to
        ``fixing``.
        """
        with self._locks.acquire(issue.number) as acquired:
            if not acquired:
                return False
            if not issue.last_agent_comment_at:
                return False
            try:
                comments = await self._tracker.list_comments(
                    issue.number, since=issue.last_agent_comment_at
                )
            except Exception as exc:  # noqa: BLE001
                log_warning_event(
                    LOGGER,
                    "inbound_comments_fetch_failed",
                    issue_number=issue.number,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if isinstance(exc, GitHubApiError) and exc.status_code in (401, 403):
                    self._board.set_error(translate_error(exc))
                return False

            seen = set(issue.forwarded_comment_ids)
            pending = self._board.pending_message(issue.number)
            new_ids: list[int] = []
            echoed: list[ConversationMessage] = []
            for comment in comments:
                if comment.comment_id in seen:
                    continue
                if is_self_authored(comment.body):
                    continue
                seen.add(comment.comment_id)
                if pending is not None and is_duplicate(
                    comment.body,
                    pending.text,
                    comment.created_at,
                    pending.sent_at,
                    self._duplicate_window,
                ):
                    new_ids.append(comment.comment_id)
                    continue
                if not await self._forward(issue.number, session_id, comment, kind=kind):
                    seen.discard(comment.comment_id)
                    continue
                new_ids.append(comment.comment_id)
                echoed.append(
                    ConversationMessage(
                        role="user",
                        text=comment.body,
                        timestamp=comment.created_at,
                        source="github",
                    )
                )

            if not echoed:
                if new_ids:
                    patch: dict[str, object] = {
                        "forwarded_comment_ids": (*issue.forwarded_comment_ids, *new_ids)
                    }
                    self._board.update(issue.number, patch)
                    self._board.persist(issue.number, patch)
                return False

            patch = {
                "forwarded_comment_ids": (*issue.forwarded_comment_ids, *new_ids),
                "messages": tuple(echoed),
            }
            if kind == "scoping":
                patch.update(status="scoping", confidence=None, scoping=None, scoped_at=None)
            else:
                # Replies on a blocked fix session resume the fix instead of re-scoping;
                # see "Inbound forwarding text" in DESIGN.md.
                patch.update(status="fixing", blocker=None)
            patch.update(self._rearmed_session(issue, session_id, kind))
            self._board.update(issue.number, patch)
            self._board.persist(issue.number, patch)
            return True

    async def announce_scoped(self, issue_number: int) -> None:
        issue = self._board.require(issue_number)
        scoping = issue.scoping
        if scoping is None:
            return
        if scoping.confidence in ("yellow", "red") and scoping.open_questions:
            comment = await self.post(issue_number, format_scoping_question_comment(issue_number, scoping))
            if comment is None:
                return
            patch: dict[str, object] = {
                "status": "awaiting_reply",
                **_comment_watermark(comment),
            }
            self._board.update(issue_number, patch)
            self._board.persist(issue_number, patch)
            return
        if scoping.confidence != "green":
            return
        if issue.forwarded_comment_ids:
            await self.post(issue_number, format_ready_after_clarification_comment(issue_number, scoping))
            return
        await self.post(issue_number, format_green_scoped_comment(issue_number, scoping))

    async def announce_blocked(self, issue_number: int, *, was_blocked: bool) -> None:
        issue = self._board.require(issue_number)
        if was_blocked or issue.blocker is None:
            return
        comment = await self.post(issue_number, format_blocked_comment(issue_number, issue.blocker))
        if comment is None:
            return
        patch = _comment_watermark(comment)
        self._board.update(issue_number, patch)
        self._board.persist(issue_number, patch)

    async def announce_done(self, issue_number: int) -> None:
        issue = self._board.require(issue_number)
        if issue.pr is None or not issue.pr.url:
            return
        title = issue.pr.title or f"Fix for #{issue_number}"
        await self.post(issue_number, format_done_comment(issue_number, issue.pr.url, title))

    async def _forward(
        self,
        issue_number: int,
        session_id: str,
        comment: IssueComment,
        *,
        kind: SessionKind,
    ) -> bool:
        if kind == "scoping":
            message = build_clarification_message(comment)
        else:
            message = build_guidance_message(comment)
        try:
            await self._agent.send_message(session_id, message)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "github_comment_forward_failed",
                issue_number=issue_number,
                comment_id=comment.comment_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        try:
            await self._tracker.create_reaction(comment.comment_id, "eyes")
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "github_reaction_failed",
                comment_id=comment.comment_id,
                error_type=type(exc).__name__,
            )
        log_event(
            LOGGER,
            "github_comment_forwarded",
            issue_number=issue_number,
            comment_id=comment.comment_id,
            session_id=session_id,
        )
        return True

    def _rearmed_session(
        self, issue: DashboardIssue, session_id: str, kind: SessionKind
    ) -> dict[str, object]:
        """Restart the local timeout budget of the session a reply was forwarded to."""
        field = "scoping_session" if kind == "scoping" else "fix_session"
        session = issue.scoping_session if kind == "scoping" else issue.fix_session
        if session is None or session.session_id != session_id:
            return {}
        return {field: replace(session, started_at=format_timestamp(self._board.clock()))}

    def _log_post_failure(self, issue_number: int, exc: Exception) -> None:
        log_warning_event(
            LOGGER,
            "github_comment_post_failed",
            issue_number=issue_number,
            error_type=type(exc).__name__,
            error=str(exc),
        )


def _comment_watermark(comment: IssueComment) -> dict[str, object]:
    return {
        "last_agent_comment_id": comment.comment_id,
        "last_agent_comment_at": comment.created_at,
        "github_comment_url": comment.html_url,
    }
