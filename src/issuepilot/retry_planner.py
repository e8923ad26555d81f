from __future__ import annotations

from issuepilot.models import (
    BlockerInfo,
    DashboardIssue,
    RecreateDecision,
    RetryDecision,
    WakeDecision,
)


DEFAULT_WAKE_MESSAGE = "Please continue working on this fix."
_CONTINUE_LINE = "Please continue working on the fix."


def decide(issue: DashboardIssue, pending_message: str | None = None) -> RetryDecision:
    """Choose between waking the blocked fix session and recreating it.

    Only a ``blocked`` issue with a live fix session can be woken in place;
    every other stalled state needs a fresh session seeded with the context
    the old one would have had.
    """
    guidance = _normalized_guidance(pending_message)
    fix_session_id = issue.fix_session.session_id if issue.fix_session is not None else None
    if issue.status == "blocked" and fix_session_id:
        return WakeDecision(
            session_id=fix_session_id,
            message=build_wake_message(issue.blocker, guidance),
        )
    return RecreateDecision(
        previous_context=build_recreate_context(issue.blocker, guidance),
        session_id=fix_session_id or None,
    )


def build_wake_message(blocker: BlockerInfo | None, guidance: str | None) -> str:
    guidance = _normalized_guidance(guidance)
    if blocker is not None and guidance is not None:
        return "\n".join(
            (
                f'The user has responded to your blocker ("{blocker.what_happened}").',
                f'Here is their guidance: "{guidance}"',
                _CONTINUE_LINE,
            )
        )
    if guidance is not None:
        return "\n".join((f'The user has provided additional guidance: "{guidance}"', _CONTINUE_LINE))
    if blocker is not None:
        return "\n".join((f'Previous blocker: "{blocker.what_happened}"', _CONTINUE_LINE))
    return DEFAULT_WAKE_MESSAGE


def build_recreate_context(blocker: BlockerInfo | None, guidance: str | None) -> str | None:
    guidance = _normalized_guidance(guidance)
    lines: list[str] = []
    if blocker is not None:
        lines.append(f'A previous session asked: "{blocker.what_happened}"')
        lines.append(f'Suggestion was: "{blocker.suggestion}"')
    if guidance is not None:
        lines.append(f'The user responded: "{guidance}"')
    if not lines:
        return None
    return "\n".join(lines)


def _normalized_guidance(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None
