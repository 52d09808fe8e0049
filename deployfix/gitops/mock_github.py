from __future__ import annotations

import json
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict

from deployfix.models import PullRequestResult

_counter_lock = threading.Lock()


@dataclass(frozen=True)
class MockGitHub:
    """
    GitHub writes in mock-mode (no network).

    PRs land in .mock_github/prs/<n>.json and comments in .mock_github/comments/<n>.json,
    numbered sequentially per directory.
    """

    root_dir: str

    def create_pr(
        self,
        *,
        repo: str,
        title: str,
        body: str,
        head: str,
        base: str,
        public_base_url: str = "http://localhost:8088",
    ) -> PullRequestResult:
        pr_dir = os.path.join(self.root_dir, "prs")
        os.makedirs(pr_dir, exist_ok=True)
        with _counter_lock:
            existing = [int(n[:-5]) for n in os.listdir(pr_dir) if n.endswith(".json") and n[:-5].isdigit()]
            pr_number = max(existing, default=0) + 1
            meta = {
                "pr_number": pr_number,
                "repo": repo,
                "title": title,
                "body": body,
                "head": head,
                "base": base,
            }
            with open(os.path.join(pr_dir, f"{pr_number}.json"), "w", encoding="utf-8") as f:
                json.dump(meta, f, indent=2)

        pr_url = f"{public_base_url.rstrip('/')}/mock/pr/{pr_number}"
        return PullRequestResult(
            mode="mock",
            pr_number=pr_number,
            pr_title=title,
            pr_url=pr_url,
            branch_name=head,
        )

    def create_comment(
        self,
        *,
        repo: str,
        pr_number: int,
        body: str,
        path: str | None = None,
        line: int | None = None,
        commit_id: str | None = None,
    ) -> Dict[str, Any]:
        """
        Writes .mock_github/comments/<n>.json; `path`/`line` set means an inline review comment.
        """
        comment_dir = os.path.join(self.root_dir, "comments")
        os.makedirs(comment_dir, exist_ok=True)
        with _counter_lock:
            existing = [int(n[:-5]) for n in os.listdir(comment_dir) if n.endswith(".json") and n[:-5].isdigit()]
            comment_id = max(existing, default=0) + 1
            meta = {
                "id": comment_id,
                "repo": repo,
                "pr_number": int(pr_number),
                "body": body,
                "path": path,
                "line": line,
                "commit_id": commit_id,
            }
            with open(os.path.join(comment_dir, f"{comment_id}.json"), "w", encoding="utf-8") as f:
                json.dump(meta, f, indent=2)
        return meta
