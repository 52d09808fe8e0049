from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

import httpx

from deployfix.gitops.github_rest import GitHubApiError, GitHubRestClient
from deployfix.gitops.mock_github import MockGitHub
from deployfix.models import PRCreateResult
from deployfix.settings import Settings

_REPO_URL_RE = re.compile(r"^(?:https?://github\.com/)?(?P<owner>[^/\s]+)/(?P<name>[^/\s]+?)(?:\.git)?/?$")


def repo_full_name_from_url(repo_url: str) -> str:
    m = _REPO_URL_RE.match((repo_url or "").strip())
    if not m:
        raise ValueError(f"not a GitHub repository url: {repo_url!r}")
    return f"{m.group('owner')}/{m.group('name')}"


class PullRequestOpener(Protocol):
    def create(self, *, repo_url: str, branch_name: str, title: str, body: str, base_branch: str) -> PRCreateResult:
        ...


@dataclass(frozen=True)
class PullRequestCreator:
    """
    Opens the fix PR for a branch the agent already pushed.

    Logical rejections (GitHub 4xx) come back as `success=False` with the API's message.
    Transport errors and 5xx propagate so the calling step retries them.
    """

    settings: Settings
    transport: httpx.BaseTransport | None = None

    def create(self, *, repo_url: str, branch_name: str, title: str, body: str, base_branch: str) -> PRCreateResult:
        try:
            repo = repo_full_name_from_url(repo_url)
        except ValueError as e:
            return PRCreateResult(success=False, error=str(e))

        if self.settings.github_mode == "mock":
            pr = MockGitHub(self.settings.mock_github_dir).create_pr(
                repo=repo,
                title=title,
                body=body,
                head=branch_name,
                base=base_branch,
                public_base_url=self.settings.public_base_url,
            )
            return PRCreateResult(success=True, pr_url=pr.pr_url, pr_number=pr.pr_number)

        if not self.settings.github_token:
            return PRCreateResult(success=False, error="DEPLOYFIX_GITHUB_TOKEN is required for github_mode=real")

        client = GitHubRestClient(
            token=self.settings.github_token,
            repo=repo,
            api_base=self.settings.github_api_base,
            timeout_s=self.settings.http_timeout_s,
            transport=self.transport,
        )
        try:
            pr = client.create_pull_request(title=title, body=body, head=branch_name, base=base_branch)
        except GitHubApiError as e:
            return PRCreateResult(success=False, error=str(e))
        return PRCreateResult(success=True, pr_url=pr.pr_url, pr_number=pr.pr_number)
