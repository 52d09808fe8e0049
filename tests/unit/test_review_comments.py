from __future__ import annotations

import json
from typing import Any, Dict, List

import httpx
import pytest

from deployfix.errors import NonRetriableError
from deployfix.gitops.github_rest import GitHubApiError, GitHubRestClient
from deployfix.gitops.review_comments import ReviewCommenter, format_finding_body
from deployfix.models import ReviewFinding
from deployfix.settings import Settings

REPO_URL = "https://github.com/owner/repo"


def _make_transport(calls: List[Dict[str, Any]], *, review_comment_status: int = 201) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method.upper()
        body = json.loads(request.content.decode("utf-8")) if request.content else None
        calls.append({"method": method, "path": path, "body": body})

        if method == "GET" and path.endswith("/repos/owner/repo/pulls/9"):
            return httpx.Response(200, json={"number": 9, "head": {"sha": "live-sha", "ref": "feat/x"}})
        if method == "POST" and path.endswith("/repos/owner/repo/pulls/9/comments"):
            if review_comment_status != 201:
                return httpx.Response(
                    review_comment_status,
                    json={"message": "Validation Failed", "errors": ["line must be part of the diff"]},
                )
            return httpx.Response(201, json={"id": 501, "html_url": "https://github.com/owner/repo/pull/9#r501"})
        if method == "POST" and path.endswith("/repos/owner/repo/issues/9/comments"):
            return httpx.Response(201, json={"id": 601, "html_url": "https://github.com/owner/repo/pull/9#c601"})
        return httpx.Response(404, json={"message": f"unhandled {method} {path}"})

    return httpx.MockTransport(handler)


def _real(transport: httpx.MockTransport) -> ReviewCommenter:
    return ReviewCommenter(Settings(github_mode="real", github_token="t"), transport=transport)


def test_finding_body_format() -> None:
    f = ReviewFinding(file="a.ts", line=3, severity="warning", message="Unused import", suggestion="Remove it")
    assert format_finding_body(f) == "## WARNING\n\nUnused import\n\n**Suggestion:** Remove it"
    assert format_finding_body(ReviewFinding(message="Looks fine")) == "## INFO\n\nLooks fine"


def test_rest_client_comment_endpoints() -> None:
    calls: List[Dict[str, Any]] = []
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport(calls))
    assert c.get_pull_request(9)["head"]["sha"] == "live-sha"
    c.create_review_comment(pr_number=9, body="b", commit_id="live-sha", path="src/a.ts", line=4)
    c.create_issue_comment(pr_number=9, body="general")

    assert calls[1]["body"] == {"body": "b", "commit_id": "live-sha", "path": "src/a.ts", "line": 4, "side": "RIGHT"}
    assert calls[2]["path"].endswith("/issues/9/comments")
    assert calls[2]["body"] == {"body": "general"}


def test_rest_client_rejects_unknown_pull_request() -> None:
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport([]))
    with pytest.raises(GitHubApiError) as ei:
        c.get_pull_request(10)
    assert ei.value.status_code == 404


def test_commenter_posts_inline_when_file_and_line_known() -> None:
    calls: List[Dict[str, Any]] = []
    commenter = _real(_make_transport(calls))
    sha = commenter.head_sha(repo_url=REPO_URL, pr_number=9, fallback="webhook-sha")
    assert sha == "live-sha"

    inline = commenter.post_finding(
        repo_url=REPO_URL,
        pr_number=9,
        commit_sha=sha,
        finding=ReviewFinding(file="src/a.ts", line=4, severity="error", message="Null deref"),
    )
    general = commenter.post_finding(
        repo_url=REPO_URL, pr_number=9, commit_sha=sha, finding=ReviewFinding(message="Add tests")
    )
    assert inline == {"kind": "review", "id": 501, "url": "https://github.com/owner/repo/pull/9#r501"}
    assert general["kind"] == "issue"
    assert calls[1]["body"]["path"] == "src/a.ts"
    assert calls[1]["body"]["commit_id"] == "live-sha"


def test_commenter_falls_back_to_conversation_when_line_is_outside_diff() -> None:
    calls: List[Dict[str, Any]] = []
    commenter = _real(_make_transport(calls, review_comment_status=422))
    out = commenter.post_finding(
        repo_url=REPO_URL,
        pr_number=9,
        commit_sha="live-sha",
        finding=ReviewFinding(file="src/a.ts", line=400, message="Dead code"),
    )
    assert out["kind"] == "issue"
    assert calls[-1]["body"]["body"].startswith("`src/a.ts:400`")


def test_commenter_does_not_retry_other_rejections() -> None:
    commenter = _real(_make_transport([], review_comment_status=403))
    with pytest.raises(NonRetriableError):
        commenter.post_finding(
            repo_url=REPO_URL,
            pr_number=9,
            commit_sha="live-sha",
            finding=ReviewFinding(file="src/a.ts", line=4, message="x"),
        )
    with pytest.raises(NonRetriableError):
        ReviewCommenter(Settings(github_mode="real")).head_sha(repo_url=REPO_URL, pr_number=9)


def test_commenter_mock_mode_writes_comment_files(tmp_path) -> None:
    commenter = ReviewCommenter(Settings(github_mode="mock", mock_github_dir=str(tmp_path / "gh")))
    assert commenter.head_sha(repo_url=REPO_URL, pr_number=9, fallback="webhook-sha") == "webhook-sha"
    commenter.post_finding(
        repo_url=REPO_URL, pr_number=9, commit_sha="webhook-sha", finding=ReviewFinding(file="a.ts", line=1, message="x")
    )
    commenter.post_finding(repo_url=REPO_URL, pr_number=9, commit_sha="webhook-sha", finding=ReviewFinding(message="y"))

    first = json.loads((tmp_path / "gh" / "comments" / "1.json").read_text(encoding="utf-8"))
    second = json.loads((tmp_path / "gh" / "comments" / "2.json").read_text(encoding="utf-8"))
    assert (first["path"], first["line"], first["commit_id"]) == ("a.ts", 1, "webhook-sha")
    assert second["path"] is None
    assert second["repo"] == "owner/repo"
