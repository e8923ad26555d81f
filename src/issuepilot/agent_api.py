from __future__ import annotations

from collections.abc import Sequence
import logging
import os

import httpx

from issuepilot.agent_adapter import (
    AgentAdapter,
    AgentApiError,
    AgentAuthError,
    SessionNotFoundError,
)
from issuepilot.config import AgentConfig
from issuepilot.models import CreatedSession, SessionKind, SessionSnapshot
from issuepilot.observability import log_event
from issuepilot.status_interpreter import parse_session_snapshot


LOGGER = logging.getLogger("issuepilot.agent_api")


class AgentApiClient(AgentAdapter):
    """REST client for the agent session service."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: AgentConfig) -> AgentApiClient:
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise AgentAuthError(
                f"Missing agent API key: set the {config.api_key_env} environment variable",
                status_code=401,
            )
        return cls(
            base_url=config.api_base_url,
            api_key=api_key,
            timeout_seconds=config.request_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def create_session(
        self,
        *,
        prompt: str,
        kind: SessionKind,
        title: str,
        acu_limit: int | None = None,
        tags: Sequence[str] = (),
    ) -> CreatedSession:
        body: dict[str, object] = {
            "prompt": prompt,
            "idempotent": True,
            "title": title,
            "tags": list(tags),
        }
        if acu_limit is not None:
            body["max_acu_limit"] = acu_limit
        payload = await self._request_json("POST", "/sessions", json_body=body)
        if not isinstance(payload, dict):
            raise AgentApiError("Unexpected agent response: expected object for created session")
        session_id = payload.get("session_id")
        url = payload.get("url")
        if not isinstance(session_id, str) or not session_id:
            raise AgentApiError("Unexpected agent response: missing session_id")
        created = CreatedSession(session_id=session_id, url=url if isinstance(url, str) else "")
        log_event(
            LOGGER,
            "agent_session_created",
            kind=kind,
            session_id=created.session_id,
            acu_limit=acu_limit,
        )
        return created

    async def get_session(self, session_id: str) -> SessionSnapshot:
        payload = await self._request_json("GET", f"/sessions/{session_id}")
        return parse_session_snapshot(payload)

    async def send_message(self, session_id: str, message: str) -> None:
        await self._request_json("POST", f"/sessions/{session_id}/messages", json_body={"message": message})
        log_event(LOGGER, "agent_message_sent", session_id=session_id, length=len(message))

    async def delete_session(self, session_id: str) -> None:
        await self._request_json("DELETE", f"/sessions/{session_id}")
        log_event(LOGGER, "agent_session_deleted", session_id=session_id)

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, object] | None = None,
    ) -> object:
        try:
            response = await self._client.request(method, path, json=json_body)
        except httpx.HTTPError as exc:
            log_event(
                LOGGER,
                "agent_request_failed",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise AgentApiError(f"Agent API request failed: {exc}") from exc

        if response.status_code >= 400:
            raise _error_for_response(response)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise AgentApiError(
                f"Agent API returned invalid JSON for {method} {path}",
                status_code=response.status_code,
            ) from exc


def _error_for_response(response: httpx.Response) -> AgentApiError:
    status = response.status_code
    message = f"Agent API error {status}: {response.text}"
    if status in (401, 403):
        return AgentAuthError(message, status_code=status)
    if status == 404:
        return SessionNotFoundError(message, status_code=status)
    return AgentApiError(message, status_code=status)
