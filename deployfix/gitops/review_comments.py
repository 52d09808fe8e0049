from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Protocol

import httpx

from deployfix.errors import NonRetriableError
from deployfix.gitops.github_rest import GitHubApiError, GitHubRestClient
from deployfix.gitops.mock_github import MockGitHub
from deployfix.gitops.pr_creator import repo_full_name_from_url
from deployfix.models import ReviewFinding
from deployfix.settings import Settings

logger = logging.getLogger(__name__)


def format_finding_body(finding: ReviewFinding) -> str:
    body = f"## {finding.severity.upper()}\n\n{finding.message}"
    if finding.suggestion:
        body += f"\n\n**Suggestion:** {finding.suggestion}"
    return body


class ReviewCommentPoster(Protocol):
    def head_sha(self, *, repo_url: str, pr_number: int, fallback: str | None = None) -> str | None:
        ...

    def post_finding(
        self, *, repo_url: str, pr_number: int, commit_sha: str | None, finding: ReviewFinding
    ) -> Dict[str, Any]:
        ...


@dataclass(frozen=True)
class ReviewCommenter:
    """
    Posts review findings onto the pull request.

    A finding with a file and line becomes an inline review comment on the head commit; anything
    else (or an inline comment GitHub refuses because the line is outside the diff) becomes a
    conversation comment. Other 4xx answers are not retried.
    """

    settings: Settings
    transport: httpx.BaseTransport | None = None

    def _client(self, repo_url: str) -> GitHubRestClient:
        if not self.settings.github_token:
            raise NonRetriableError("DEPLOYFIX_GITHUB_TOKEN is required for github_mode=real")
        try:
            repo = repo_full_name_from_url(repo_url)
        except ValueError as e:
            raise NonRetriableError(str(e)) from e
        return GitHubRestClient(
            token=self.settings.github_token,
            repo=repo,
            api_base=self.settings.github_api_base,
            timeout_s=self.settings.http_timeout_s,
            transport=self.transport,
        )

    def head_sha(self, *, repo_url: str, pr_number: int, fallback: str | None = None) -> str | None:
        if self.settings.github_mode == "mock":
            return fallback
        try:
            pr = self._client(repo_url).get_pull_request(pr_number)
        except GitHubApiError as e:
            raise NonRetriableError(str(e)) from e
        return str((pr.get("head") or {}).get("sha") or "") or fallback

    def post_finding(
        self, *, repo_url: str, pr_number: int, commit_sha: str | None, finding: ReviewFinding
    ) -> Dict[str, Any]:
        body = format_finding_body(finding)
        inline = bool(finding.file and finding.line and commit_sha)

        if self.settings.github_mode == "mock":
            c = MockGitHub(self.settings.mock_github_dir).create_comment(
                repo=repo_full_name_from_url(repo_url),
                pr_number=pr_number,
                body=body,
                path=finding.file if inline else None,
                line=finding.line if inline else None,
                commit_id=commit_sha if inline else None,
            )
            return {"kind": "review" if inline else "issue", "id": c["id"]}

        client = self._client(repo_url)
        if inline:
            try:
                c = client.create_review_comment(
                    pr_number=pr_number,
                    body=body,
                    commit_id=str(commit_sha),
                    path=str(finding.file),
                    line=int(finding.line or 0),
                )
                return {"kind": "review", "id": c.get("id"), "url": c.get("html_url")}
            except GitHubApiError as e:
                if e.status_code != 422:
                    raise NonRetriableError(str(e)) from e
                logger.info("inline comment on %s:%s rejected, posting to conversation", finding.file, finding.line)
                body = f"`{finding.file}:{finding.line}`\n\n{body}"
        try:
            c = client.create_issue_comment(pr_number=pr_number, body=body)
        except GitHubApiError as e:
            raise NonRetriableError(str(e)) from e
        return {"kind": "issue", "id": c.get("id"), "url": c.get("html_url")}
