from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from urllib.parse import urlencode

from issuepilot.models import (
    DiffLine,
    Issue,
    IssueComment,
    PRFileChange,
    PullRequestDetails,
)
from issuepilot.observability import log_event
from issuepilot.shell import run


LOGGER = logging.getLogger("issuepilot.github_gateway")
_PATCH_METADATA_PREFIXES = ("@@", "diff ", "index ")
_CLOSE_KEYWORDS = ("close", "closes", "closed", "fix", "fixes", "fixed", "resolve", "resolves", "resolved")


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubPollingError(GitHubApiError):
    """Recoverable GitHub read failure; caller should retry on its next tick."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    token: str | None = field(default=None, repr=False)
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_issues(self) -> list[Issue]:
        query = urlencode({"state": "open", "per_page": "100"})
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/issues?{query}")
        if not isinstance(payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list for issues")

        issues: list[Issue] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            # The issues endpoint also returns pull requests.
            if "pull_request" in item_obj:
                continue
            issues.append(_parse_issue(item_obj))
        log_event(LOGGER, "github_read", endpoint="issues", count=len(issues))
        return issues

    def list_issue_comments(self, issue_number: int, *, since: str | None = None) -> list[IssueComment]:
        comments: list[IssueComment] = []
        page = 1
        while True:
            query_items: dict[str, object] = {"per_page": 100, "page": page}
            if since is not None:
                query_items["since"] = since
            path = (
                f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments?"
                f"{urlencode(query_items)}"
            )
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubApiError("Unexpected GitHub response: expected list of issue comments")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is not None:
                    comments.append(_parse_comment(item_obj))
            if len(payload) < 100:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            since=since,
            count=len(comments),
        )
        return comments

    def create_issue_comment(self, issue_number: int, body: str) -> IssueComment:
        payload = self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments",
            payload={"body": body},
        )
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for comment")
        comment = _parse_comment(payload_obj)
        log_event(
            LOGGER,
            "github_write",
            endpoint="issue_comment",
            issue_number=issue_number,
            comment_id=comment.comment_id,
        )
        return comment

    def create_comment_reaction(self, comment_id: int, content: str = "eyes") -> None:
        self._api_json(
            "POST",
            f"/repos/{self.owner}/{self.name}/issues/comments/{comment_id}/reactions",
            payload={"content": content},
        )

    def get_pull_request_details(self, pr_number: int) -> PullRequestDetails:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}")
        pr_obj = _as_object_dict(payload)
        if pr_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for pull request")
        head_obj = _as_object_dict(pr_obj.get("head"))

        files_payload = self._api_json(
            "GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}/files?per_page=100"
        )
        if not isinstance(files_payload, list):
            raise GitHubApiError("Unexpected GitHub response: expected list of pull request files")
        files: list[PRFileChange] = []
        for item in files_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            filename = item_obj.get("filename")
            if not isinstance(filename, str) or not filename:
                continue
            files.append(
                PRFileChange(
                    path=filename,
                    additions=_as_count(item_obj.get("additions")),
                    deletions=_as_count(item_obj.get("deletions")),
                    is_new=item_obj.get("status") == "added",
                    diff_lines=parse_patch(_as_string(item_obj.get("patch"))),
                )
            )

        details = PullRequestDetails(
            number=_as_int(pr_obj.get("number"), field="number"),
            url=_as_string(pr_obj.get("html_url")),
            title=_as_string(pr_obj.get("title")),
            branch=_as_string(head_obj.get("ref") if head_obj else None),
            body=_as_string(pr_obj.get("body")),
            files=tuple(files),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_details",
            pr_number=pr_number,
            count=len(files),
        )
        return details

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include"]
        stdin_payload: str | None = None
        if method_upper == "GET":
            etag = self._etags_by_path.get(path)
            if etag:
                cmd.extend(["--header", f"If-None-Match: {etag}"])
        elif payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        cmd.append(path)

        env = {"GH_TOKEN": self.token} if self.token else None
        raw = run(cmd, input_text=stdin_payload, env=env, check=False)
        try:
            status_code, headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            error_type = GitHubPollingError if method_upper == "GET" else GitHubApiError
            raise error_type(f"GitHub {method_upper} failed for path {path}: {exc}") from exc

        if method_upper == "GET" and status_code == 304:
            cached_payload = self._cached_get_payload_by_path.get(path)
            if cached_payload is None:
                raise GitHubPollingError(
                    f"GitHub returned 304 for uncached path: {path}", status_code=304
                )
            return cached_payload

        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                error=message,
            )
            error_type = GitHubPollingError if method_upper == "GET" else GitHubApiError
            raise error_type(
                f"GitHub API request failed with status {status_code}: {message}",
                status_code=status_code,
            )

        if not body.strip():
            return None
        try:
            payload_obj = json.loads(body)
        except ValueError as exc:
            raise GitHubApiError(
                f"GitHub returned invalid JSON for path {path}", status_code=status_code
            ) from exc
        if method_upper == "GET":
            etag = headers.get("etag")
            if etag:
                self._etags_by_path[path] = etag
                self._cached_get_payload_by_path[path] = payload_obj
        return payload_obj


def parse_patch(patch: str) -> tuple[DiffLine, ...]:
    """Classify unified-diff lines, skipping hunk and file metadata."""
    lines: list[DiffLine] = []
    for line in patch.splitlines():
        if line.startswith(_PATCH_METADATA_PREFIXES):
            continue
        if line.startswith("+") and not line.startswith("+++"):
            lines.append(DiffLine(kind="add", text=line[1:]))
        elif line.startswith("-") and not line.startswith("---"):
            lines.append(DiffLine(kind="remove", text=line[1:]))
        else:
            lines.append(DiffLine(kind="context", text=line[1:] if line.startswith(" ") else line))
    return tuple(lines)


def pr_body_closes_issue(body: str | None, issue_number: int) -> bool:
    if not body:
        return False
    pattern = re.compile(
        rf"\b(?:{'|'.join(_CLOSE_KEYWORDS)})\s*:?\s+#{issue_number}(?!\d)",
        re.IGNORECASE,
    )
    return pattern.search(body) is not None


def _parse_issue(item_obj: dict[str, object]) -> Issue:
    labels_obj = item_obj.get("labels")
    label_names: list[str] = []
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is None:
                continue
            label_name = entry_obj.get("name")
            if isinstance(label_name, str):
                label_names.append(label_name)
    return Issue(
        number=_as_int(item_obj.get("number"), field="number"),
        title=_as_string(item_obj.get("title")),
        body=_as_string(item_obj.get("body")),
        html_url=_as_string(item_obj.get("html_url")),
        labels=tuple(label_names),
        created_at=_as_string(item_obj.get("created_at")),
        updated_at=_as_string(item_obj.get("updated_at")),
    )


def _parse_comment(item_obj: dict[str, object]) -> IssueComment:
    user_obj = _as_object_dict(item_obj.get("user"))
    return IssueComment(
        comment_id=_as_int(item_obj.get("id"), field="id"),
        body=_as_string(item_obj.get("body")),
        user_login=_as_string(user_obj.get("login") if user_obj else None),
        html_url=_as_string(item_obj.get("html_url")),
        created_at=_as_string(item_obj.get("created_at")),
        updated_at=_as_string(item_obj.get("updated_at")),
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    lines = raw.replace("\r\n", "\n").split("\n")

    # Redirects and 100-continue produce several status blocks; the last wins.
    status_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_index = index
    if status_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_index]
    parts = status_line.split(" ", 2)
    if len(parts) < 2 or not parts[1].isdigit():
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")
    status_code = int(parts[1])

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return status_code, headers, "\n".join(lines[body_start:])


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    return compact if len(compact) <= limit else f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value):
        return None
    return value


def _as_string(value: object) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")


def _as_count(value: object) -> int:
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return 0
