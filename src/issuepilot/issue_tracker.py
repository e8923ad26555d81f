from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio

from issuepilot.github_gateway import GitHubGateway
from issuepilot.models import Issue, IssueComment, PullRequestDetails


class IssueTracker(ABC):
    @abstractmethod
    async def list_issues(self) -> list[Issue]:
        """Return open issues, excluding pull requests."""

    @abstractmethod
    async def list_comments(self, issue_number: int, *, since: str | None = None) -> list[IssueComment]:
        """Return comments on an issue, optionally only those updated at or after ``since``."""

    @abstractmethod
    async def create_comment(self, issue_number: int, body: str) -> IssueComment:
        """Post a comment and return it as created."""

    @abstractmethod
    async def create_reaction(self, comment_id: int, content: str = "eyes") -> None:
        """Acknowledge a comment with a reaction."""

    @abstractmethod
    async def get_pr_details(self, pr_number: int) -> PullRequestDetails:
        """Fetch title, branch, body, and changed files of a pull request."""


class GitHubIssueTracker(IssueTracker):
    """Runs the blocking ``gh`` gateway calls in worker threads."""

    def __init__(self, gateway: GitHubGateway) -> None:
        self._gateway = gateway

    @property
    def gateway(self) -> GitHubGateway:
        return self._gateway

    async def list_issues(self) -> list[Issue]:
        return await asyncio.to_thread(self._gateway.list_open_issues)

    async def list_comments(self, issue_number: int, *, since: str | None = None) -> list[IssueComment]:
        return await asyncio.to_thread(self._gateway.list_issue_comments, issue_number, since=since)

    async def create_comment(self, issue_number: int, body: str) -> IssueComment:
        return await asyncio.to_thread(self._gateway.create_issue_comment, issue_number, body)

    async def create_reaction(self, comment_id: int, content: str = "eyes") -> None:
        await asyncio.to_thread(self._gateway.create_comment_reaction, comment_id, content)

    async def get_pr_details(self, pr_number: int) -> PullRequestDetails:
        return await asyncio.to_thread(self._gateway.get_pull_request_details, pr_number)
