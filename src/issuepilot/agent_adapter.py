from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from issuepilot.models import CreatedSession, SessionKind, SessionSnapshot


class AgentApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AgentAuthError(AgentApiError):
    """The agent service rejected the credentials (401) or the request (403)."""


class SessionNotFoundError(AgentApiError):
    """The session id is unknown to the agent service, usually because it expired."""


class AgentAdapter(ABC):
    @abstractmethod
    async def create_session(
        self,
        *,
        prompt: str,
        kind: SessionKind,
        title: str,
        acu_limit: int | None = None,
        tags: Sequence[str] = (),
    ) -> CreatedSession:
        """Start a new scoping or fixing session."""

    @abstractmethod
    async def get_session(self, session_id: str) -> SessionSnapshot:
        """Fetch the current snapshot of a session."""

    @abstractmethod
    async def send_message(self, session_id: str, message: str) -> None:
        """Deliver a message into a running or sleeping session."""

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Terminate a session."""
