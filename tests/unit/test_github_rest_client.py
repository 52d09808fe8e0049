from __future__ import annotations

import json
from typing import Any, Dict

import httpx
import pytest

from deployfix.gitops.github_rest import GitHubApiError, GitHubRestClient
from deployfix.gitops.pr_creator import PullRequestCreator, repo_full_name_from_url
from deployfix.settings import Settings


def _make_transport(pr_status: int = 201) -> httpx.MockTransport:
    # In-memory "server state"
    state: Dict[str, Any] = {"default_branch": "main", "prs": []}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        method = request.method.upper()

        if method == "GET" and path.endswith("/repos/owner/repo"):
            return httpx.Response(200, json={"default_branch": state["default_branch"]})

        if method == "POST" and path.endswith("/repos/owner/repo/pulls"):
            body = json.loads(request.content.decode("utf-8"))
            if pr_status == 422:
                return httpx.Response(
                    422,
                    json={"message": "Validation Failed", "errors": [{"message": "No commits between main and fix/x"}]},
                )
            if pr_status != 201:
                return httpx.Response(pr_status, json={"message": "upstream"})
            pr_number = 123
            state["prs"].append(body)
            return httpx.Response(
                201,
                json={"number": pr_number, "title": body["title"], "html_url": f"https://github.com/owner/repo/pull/{pr_number}"},
            )

        return httpx.Response(404, json={"message": f"unhandled {method} {path}"})

    return httpx.MockTransport(handler)


def test_github_rest_client_pr_flow() -> None:
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport())
    assert c.get_repo_default_branch() == "main"
    pr = c.create_pull_request(title="Fix TS2322", body="b", head="fix/deployment-abc", base="main")
    assert pr.mode == "real"
    assert pr.pr_number == 123
    assert pr.branch_name == "fix/deployment-abc"


def test_github_rest_client_logical_rejection() -> None:
    c = GitHubRestClient(token="t", repo="owner/repo", transport=_make_transport(pr_status=422))
    with pytest.raises(GitHubApiError) as ei:
        c.create_pull_request(title="t", body="b", head="fix/x", base="main")
    assert ei.value.status_code == 422
    assert "No commits between" in str(ei.value)


def test_pr_creator_real_mode_maps_rejection_to_failure() -> None:
    s = Settings(github_mode="real", github_token="t")
    ok = PullRequestCreator(s, transport=_make_transport()).create(
        repo_url="https://github.com/owner/repo", branch_name="fix/x", title="t", body="b", base_branch="main"
    )
    assert ok.success and ok.pr_number == 123

    rejected = PullRequestCreator(s, transport=_make_transport(pr_status=422)).create(
        repo_url="https://github.com/owner/repo", branch_name="fix/x", title="t", body="b", base_branch="main"
    )
    assert not rejected.success
    assert "Validation Failed" in (rejected.error or "")


def test_pr_creator_real_mode_raises_on_server_error() -> None:
    s = Settings(github_mode="real", github_token="t")
    with pytest.raises(httpx.HTTPStatusError):
        PullRequestCreator(s, transport=_make_transport(pr_status=502)).create(
            repo_url="owner/repo", branch_name="fix/x", title="t", body="b", base_branch="main"
        )


def test_pr_creator_mock_mode_writes_pr_file(tmp_path) -> None:
    s = Settings(github_mode="mock", mock_github_dir=str(tmp_path / "gh"))
    c = PullRequestCreator(s)
    first = c.create(repo_url="https://github.com/acme/web", branch_name="fix/a", title="t1", body="b", base_branch="main")
    second = c.create(repo_url="https://github.com/acme/web", branch_name="fix/b", title="t2", body="b", base_branch="main")
    assert (first.pr_number, second.pr_number) == (1, 2)
    meta = json.loads((tmp_path / "gh" / "prs" / "2.json").read_text(encoding="utf-8"))
    assert meta["head"] == "fix/b"
    assert meta["repo"] == "acme/web"


def test_pr_creator_requires_token_in_real_mode() -> None:
    out = PullRequestCreator(Settings(github_mode="real")).create(
        repo_url="acme/web", branch_name="fix/a", title="t", body="b", base_branch="main"
    )
    assert not out.success


def test_repo_full_name_from_url() -> None:
    assert repo_full_name_from_url("https://github.com/acme/web") == "acme/web"
    assert repo_full_name_from_url("https://github.com/acme/web.git") == "acme/web"
    assert repo_full_name_from_url("acme/web") == "acme/web"
    with pytest.raises(ValueError):
        repo_full_name_from_url("not a repo")
