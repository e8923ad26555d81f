from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import pytest

from issuepilot.github_gateway import (
    GitHubApiError,
    GitHubGateway,
    GitHubPollingError,
    _as_int,
    _parse_http_response,
    parse_patch,
    pr_body_closes_issue,
)


def _http(status: str, body: object, *, etag: str | None = None) -> str:
    lines = [f"HTTP/2.0 {status}"]
    if etag is not None:
        lines.append(f"ETag: {etag}")
    lines.extend(("", body if isinstance(body, str) else json.dumps(body)))
    return "\n".join(lines)


class FakeGh:
    def __init__(self, responses: dict[str, str]) -> None:
        self.responses = responses
        self.calls: list[tuple[list[str], str | None, dict[str, str] | None]] = []

    def __call__(
        self,
        cmd: list[str],
        *,
        input_text: str | None = None,
        env: dict[str, str] | None = None,
        check: bool = True,
    ) -> str:
        assert check is False
        self.calls.append((cmd, input_text, env))
        path = cmd[-1]
        for prefix, response in self.responses.items():
            if path.startswith(prefix):
                return response
        raise AssertionError(f"unexpected path {path}")


def _install(monkeypatch: pytest.MonkeyPatch, responses: dict[str, str]) -> FakeGh:
    fake = FakeGh(responses)
    monkeypatch.setattr("issuepilot.github_gateway.run", fake)
    return fake


def test_list_open_issues_skips_pull_requests(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(
        monkeypatch,
        {
            "/repos/o/r/issues?": _http(
                "200 OK",
                [
                    {
                        "number": 3,
                        "title": "Crash",
                        "body": None,
                        "html_url": "https://github.com/o/r/issues/3",
                        "labels": [{"name": "bug"}, "junk"],
                        "created_at": "2026-01-01T00:00:00Z",
                        "updated_at": "2026-01-02T00:00:00Z",
                    },
                    {"number": 4, "title": "PR", "pull_request": {}},
                ],
            )
        },
    )

    issues = GitHubGateway("o", "r", token="tkn").list_open_issues()

    assert [issue.number for issue in issues] == [3]
    assert issues[0].body == ""
    assert issues[0].labels == ("bug",)
    query = parse_qs(urlparse(fake.calls[0][0][-1]).query)
    assert query == {"state": ["open"], "per_page": ["100"]}
    assert fake.calls[0][2] == {"GH_TOKEN": "tkn"}


def test_list_issue_comments_pages_and_passes_since(monkeypatch: pytest.MonkeyPatch) -> None:
    full_page = [
        {"id": n, "body": "b", "user": {"login": "alice"}, "html_url": "u", "created_at": "t", "updated_at": "t"}
        for n in range(100)
    ]
    fake = FakeGh({})
    pages = [_http("200 OK", full_page), _http("200 OK", [{"id": 100, "body": "last", "user": None}])]

    def run(cmd: list[str], **kwargs: object) -> str:
        fake.calls.append((cmd, None, None))
        _ = kwargs
        return pages[len(fake.calls) - 1]

    monkeypatch.setattr("issuepilot.github_gateway.run", run)

    comments = GitHubGateway("o", "r").list_issue_comments(7, since="2026-03-01T12:00:00Z")

    assert len(comments) == 101
    assert comments[-1].body == "last"
    assert comments[-1].user_login == ""
    second_query = parse_qs(urlparse(fake.calls[1][0][-1]).query)
    assert second_query["page"] == ["2"]
    assert second_query["since"] == ["2026-03-01T12:00:00Z"]


def test_create_issue_comment_posts_body(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(
        monkeypatch,
        {
            "/repos/o/r/issues/7/comments": _http(
                "201 Created",
                {
                    "id": 55,
                    "body": "hello",
                    "user": {"login": "bot"},
                    "html_url": "https://github.com/o/r/issues/7#issuecomment-55",
                    "created_at": "2026-03-01T12:00:00Z",
                    "updated_at": "2026-03-01T12:00:00Z",
                },
            )
        },
    )

    comment = GitHubGateway("o", "r").create_issue_comment(7, "hello")

    assert comment.comment_id == 55
    assert comment.user_login == "bot"
    cmd, stdin, env = fake.calls[0]
    assert cmd[:5] == ["gh", "api", "--method", "POST", "--include"]
    assert "--input" in cmd
    assert json.loads(stdin or "") == {"body": "hello"}
    assert env is None


def test_create_comment_forbidden_raises_with_status(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, {"/repos/o/r/issues/7/comments": _http("403 Forbidden", "no write")})
    with pytest.raises(GitHubApiError) as excinfo:
        GitHubGateway("o", "r").create_issue_comment(7, "hello")
    assert excinfo.value.status_code == 403
    assert not isinstance(excinfo.value, GitHubPollingError)


def test_create_comment_reaction(monkeypatch: pytest.MonkeyPatch) -> None:
    fake = _install(monkeypatch, {"/repos/o/r/issues/comments/55/reactions": _http("201 Created", {"id": 1})})
    GitHubGateway("o", "r").create_comment_reaction(55)
    assert json.loads(fake.calls[0][1] or "") == {"content": "eyes"}


def test_get_pull_request_details_parses_files(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(
        monkeypatch,
        {
            "/repos/o/r/pulls/8/files": _http(
                "200 OK",
                [
                    {
                        "filename": "src/a.py",
                        "additions": 2,
                        "deletions": -1,
                        "status": "added",
                        "patch": "@@ -0,0 +1,2 @@\n+one\n two\n-three",
                    },
                    {"filename": ""},
                ],
            ),
            "/repos/o/r/pulls/8": _http(
                "200 OK",
                {
                    "number": 8,
                    "html_url": "https://github.com/o/r/pull/8",
                    "title": "Fix crash",
                    "head": {"ref": "agent/fix-7"},
                    "body": "Closes #7",
                },
            ),
        },
    )

    details = GitHubGateway("o", "r").get_pull_request_details(8)

    assert details.title == "Fix crash"
    assert details.branch == "agent/fix-7"
    assert len(details.files) == 1
    change = details.files[0]
    assert (change.path, change.additions, change.deletions, change.is_new) == ("src/a.py", 2, 0, True)
    assert [line.kind for line in change.diff_lines] == ["add", "context", "remove"]


def test_get_requests_reuse_cached_payload_on_304(monkeypatch: pytest.MonkeyPatch) -> None:
    responses = iter(
        [_http("200 OK", {"value": 7}, etag='"etag-2"'), "HTTP/2.0 304 Not Modified\n\n"]
    )
    calls: list[list[str]] = []

    def run(cmd: list[str], **kwargs: object) -> str:
        _ = kwargs
        calls.append(cmd)
        return next(responses)

    monkeypatch.setattr("issuepilot.github_gateway.run", run)
    gateway = GitHubGateway("o", "r")

    assert gateway._api_json("GET", "/path") == {"value": 7}
    assert gateway._api_json("GET", "/path") == {"value": 7}
    header_index = calls[1].index("--header")
    assert calls[1][header_index + 1] == 'If-None-Match: "etag-2"'


def test_uncached_304_and_read_errors_are_polling_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, {"/a": "HTTP/2.0 304 Not Modified\n\n", "/b": _http("502 Bad Gateway", "")})
    gateway = GitHubGateway("o", "r")
    with pytest.raises(GitHubPollingError, match="uncached"):
        gateway._api_json("GET", "/a")
    with pytest.raises(GitHubPollingError) as excinfo:
        gateway._api_json("GET", "/b")
    assert excinfo.value.status_code == 502


def test_garbled_response_and_invalid_json(monkeypatch: pytest.MonkeyPatch) -> None:
    _install(monkeypatch, {"/garbled": "gh: not logged in", "/json": _http("200 OK", "{nope")})
    gateway = GitHubGateway("o", "r")
    with pytest.raises(GitHubApiError, match="missing HTTP status line"):
        gateway._api_json("POST", "/garbled", payload={})
    with pytest.raises(GitHubApiError, match="invalid JSON"):
        gateway._api_json("GET", "/json")


def test_parse_http_response_uses_last_status_block() -> None:
    raw = "HTTP/1.1 100 Continue\r\n\r\nHTTP/2.0 200 OK\r\nX-Test: 1\r\n\r\n{}"
    status, headers, body = _parse_http_response(raw)
    assert (status, headers, body) == (200, {"x-test": "1"}, "{}")
    with pytest.raises(RuntimeError, match="status line"):
        _parse_http_response("HTTP/2.0 OK\n\n")


def test_parse_patch_skips_metadata() -> None:
    lines = parse_patch("diff --git a b\nindex 1..2\n--- a/x\n+++ b/x\n@@ -1 +1 @@\n-old\n+new\n keep")
    assert [(line.kind, line.text) for line in lines] == [
        ("context", "--- a/x"),
        ("context", "+++ b/x"),
        ("remove", "old"),
        ("add", "new"),
        ("context", "keep"),
    ]


@pytest.mark.parametrize(
    ("body", "expected"),
    [
        ("Closes #7", True),
        ("fixes: #7", True),
        ("Resolved #7 and more", True),
        ("Closes #70", False),
        ("Related to #7", False),
        (None, False),
    ],
)
def test_pr_body_closes_issue(body: str | None, expected: bool) -> None:
    assert pr_body_closes_issue(body, 7) is expected


def test_as_int_validates() -> None:
    assert _as_int("12", field="id") == 12
    with pytest.raises(GitHubApiError):
        _as_int(True, field="id")
    with pytest.raises(GitHubApiError):
        _as_int("x", field="id")
    with pytest.raises(GitHubApiError):
        _as_int(1.5, field="id")
