from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict

import httpx

from deployfix.models import PullRequestResult


class GitHubApiError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"github_http_{status_code}: {message}")


@dataclass(frozen=True)
class GitHubRestClient:
    """
    Minimal GitHub REST wrapper: opens fix PRs and posts review comments.

    The coding agent pushes the fix branch itself; this client only talks to the pulls/issues APIs.
    Mockable in tests via `transport` (httpx.MockTransport).
    """

    token: str
    repo: str  # owner/name
    api_base: str = "https://api.github.com"
    timeout_s: float = 15.0
    transport: httpx.BaseTransport | None = None

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport)

    def get_repo_default_branch(self) -> str:
        url = f"{self.api_base}/repos/{self.repo}"
        with self._client() as c:
            r = c.get(url, headers=self._headers())
            r.raise_for_status()
            data = r.json()
        return str(data.get("default_branch") or "main")

    def create_pull_request(self, *, title: str, body: str, head: str, base: str) -> PullRequestResult:
        url = f"{self.api_base}/repos/{self.repo}/pulls"
        payload = {"title": title, "body": body, "head": head, "base": base}
        with self._client() as c:
            r = c.post(url, headers=self._headers(), json=payload)
            self._raise_for_rejection(r)
            data = r.json()
        return PullRequestResult(
            mode="real",
            pr_number=int(data["number"]),
            pr_title=str(data["title"]),
            pr_url=str(data["html_url"]),
            branch_name=head,
        )

    def _raise_for_rejection(self, r: httpx.Response) -> None:
        # 4xx other than rate limiting is a logical rejection (no commits, branch missing, PR exists).
        if 400 <= r.status_code < 500 and r.status_code not in (408, 429):
            raise GitHubApiError(r.status_code, _error_text(r))
        r.raise_for_status()

    def get_pull_request(self, pr_number: int) -> Dict[str, Any]:
        url = f"{self.api_base}/repos/{self.repo}/pulls/{int(pr_number)}"
        with self._client() as c:
            r = c.get(url, headers=self._headers())
            self._raise_for_rejection(r)
            return r.json()

    def create_review_comment(
        self, *, pr_number: int, body: str, commit_id: str, path: str, line: int, side: str = "RIGHT"
    ) -> Dict[str, Any]:
        """Inline comment on one line of the PR diff."""
        url = f"{self.api_base}/repos/{self.repo}/pulls/{int(pr_number)}/comments"
        payload = {"body": body, "commit_id": commit_id, "path": path, "line": int(line), "side": side}
        with self._client() as c:
            r = c.post(url, headers=self._headers(), json=payload)
            self._raise_for_rejection(r)
            return r.json()

    def create_issue_comment(self, *, pr_number: int, body: str) -> Dict[str, Any]:
        """Top-level conversation comment (PRs are issues for the comments API)."""
        url = f"{self.api_base}/repos/{self.repo}/issues/{int(pr_number)}/comments"
        with self._client() as c:
            r = c.post(url, headers=self._headers(), json={"body": body})
            self._raise_for_rejection(r)
            return r.json()


def _error_text(r: httpx.Response) -> str:
    try:
        data: Any = r.json()
    except ValueError:
        return r.text[:500]
    if isinstance(data, dict):
        msg = str(data.get("message") or "")
        errs = data.get("errors")
        if isinstance(errs, list) and errs:
            details = "; ".join(str(e.get("message") or e) if isinstance(e, dict) else str(e) for e in errs)
            return f"{msg} ({details})" if msg else details
        return msg or r.text[:500]
    return r.text[:500]
