from __future__ import annotations

from issuepilot.agent_adapter import AgentApiError
from issuepilot.github_gateway import GitHubApiError


_MAX_MESSAGE_CHARS = 200

_AGENT_MESSAGES: dict[int, str] = {
    401: "Invalid agent API key. Check the configured key and try again.",
    403: "Agent API access denied. The key may lack permission for this action.",
    429: "Agent API rate limit reached. Wait a moment and try again.",
}
_GITHUB_MESSAGES: dict[int, str] = {
    401: "Invalid GitHub token. Check the token and try again.",
    403: "GitHub access denied. The token may lack access to this repository.",
    404: "Repository not found. Check the owner/name and token access.",
}


def translate_error(exc: BaseException) -> str:
    """Banner text for ``exc``, naming the service that failed where known."""
    if isinstance(exc, AgentApiError) and exc.status_code in _AGENT_MESSAGES:
        return _AGENT_MESSAGES[exc.status_code]
    if isinstance(exc, GitHubApiError) and exc.status_code in _GITHUB_MESSAGES:
        return _GITHUB_MESSAGES[exc.status_code]
    message = str(exc).strip() or type(exc).__name__
    if len(message) > _MAX_MESSAGE_CHARS:
        return f"{message[:_MAX_MESSAGE_CHARS]}..."
    return message
