from __future__ import annotations

import json

from issuepilot.models import DashboardIssue, ScopingResult, SessionKind


_SCOPING_SCHEMA_EXAMPLE = {
    "confidence": "green | yellow | red",
    "confidence_reason": "...",
    "current_behavior": "...",
    "requested_fix": "...",
    "files_to_modify": ["..."],
    "tests_needed": "...",
    "action_plan": ["step 1", "step 2"],
    "risks": ["..."],
    "open_questions": ["..."],
}


def build_scoping_prompt(*, issue: DashboardIssue, repo_full_name: str) -> str:
    schema = json.dumps(_SCOPING_SCHEMA_EXAMPLE, indent=2)
    return f"""
You are analyzing GitHub issue #{issue.number} from {repo_full_name}.

Issue title:
{issue.title}

Issue body:
{issue.body}

Task:
1. Describe the current behavior.
2. Describe the requested fix or change.
3. List the files that would need to be modified.
4. Describe the tests that would be needed.
5. Rate your confidence that you can fix this issue:
   - green: clear requirements and a well-defined scope
   - yellow: mostly clear, but some questions remain
   - red: unclear requirements, more information needed
6. List the risks.
7. List your open questions. Leave the list empty when you have none.

Do NOT implement anything. Only analyze.

Response format:
- Reply with a single JSON object wrapped in ```json fences.
- The object must have exactly these keys:
{schema}
""".strip()


def build_fix_prompt(
    *,
    issue: DashboardIssue,
    repo_full_name: str,
    scoping: ScopingResult | None,
    previous_context: str | None = None,
) -> str:
    sections = [
        f"You are fixing GitHub issue #{issue.number} from {repo_full_name}.",
        f"Issue title:\n{issue.title}",
        f"Issue body:\n{issue.body}",
    ]
    if scoping is not None:
        files = ", ".join(scoping.files_to_modify) or "(not identified)"
        sections.append(
            "Scoping analysis:\n"
            f"- Current behavior: {scoping.current_behavior}\n"
            f"- Requested fix: {scoping.requested_fix}\n"
            f"- Files to modify: {files}\n"
            f"- Tests needed: {scoping.tests_needed}"
        )
        if scoping.action_plan:
            steps = "\n".join(f"{index}. {step}" for index, step in enumerate(scoping.action_plan, start=1))
            sections.append(f"Action plan:\n{steps}")
    if previous_context:
        sections.append(f"Context from a previous attempt:\n{previous_context}")
    sections.append(
        "Task:\n"
        "- Implement the fix, following the action plan when one is given.\n"
        "- Add or update tests covering the change.\n"
        "- Open a pull request when done.\n"
        f"- CRITICAL: the pull request description MUST contain `Closes #{issue.number}` "
        "so the issue is closed when it merges."
    )
    return "\n\n".join(sections)


def session_title(*, kind: SessionKind, repo_full_name: str, issue: DashboardIssue) -> str:
    prefix = "Scope" if kind == "scoping" else "Fix"
    return f"{prefix}: {repo_full_name}#{issue.number} - {issue.title}"


def session_tags(*, kind: SessionKind, repo_full_name: str, issue_number: int) -> tuple[str, ...]:
    prefix = "scope" if kind == "scoping" else "fix"
    return (f"{prefix}-{repo_full_name}-{issue_number}",)
