from __future__ import annotations

import json
import sqlite3
from typing import Any, Iterable, List, Optional

from deployfix.errors import NotFound
from deployfix.models import Review, ReviewFinding, ReviewRule, ReviewStatus
from deployfix.store.database import Database, new_id, to_json, utcnow_iso


def _row_to_review(r: sqlite3.Row) -> Review:
    d = dict(r)
    d["findings"] = json.loads(d.pop("findings_json") or "[]")
    return Review.model_validate(d)


def _row_to_rule(r: sqlite3.Row) -> ReviewRule:
    d = dict(r)
    d["file_patterns"] = json.loads(d.pop("file_patterns_json") or "[]")
    return ReviewRule.model_validate(d)


class ReviewStore:
    """
    Pull request review records, keyed on (repo_url, pr_number, head_sha).
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def get(self, review_id: str) -> Optional[Review]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM reviews WHERE id=?", (review_id,)).fetchone()
        return _row_to_review(row) if row else None

    def require(self, review_id: str) -> Review:
        r = self.get(review_id)
        if r is None:
            raise NotFound(f"review {review_id} not found")
        return r

    def find_existing(self, repo_url: str, pr_number: int, head_sha: str | None) -> Optional[Review]:
        with self.db.reader() as con:
            row = con.execute(
                "SELECT * FROM reviews WHERE repo_url=? AND pr_number=? AND head_sha=?",
                (repo_url, int(pr_number), head_sha or ""),
            ).fetchone()
        return _row_to_review(row) if row else None

    def start(
        self,
        *,
        user_id: str,
        repo_url: str,
        pr_number: int,
        head_sha: str | None,
        installation_id: str | None = None,
        pr_title: str = "",
        pr_author: str | None = None,
        base_branch: str | None = None,
        head_branch: str | None = None,
    ) -> Review:
        """
        Insert an `in_progress` review, or return the row another run already created for the same commit.
        """
        now = utcnow_iso()
        with self.db.transaction() as con:
            con.execute(
                """
                INSERT OR IGNORE INTO reviews (
                    id, user_id, installation_id, repo_url, pr_number, pr_title, pr_author, head_sha,
                    base_branch, head_branch, status, started_at, created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    new_id(),
                    user_id,
                    installation_id,
                    repo_url,
                    int(pr_number),
                    pr_title,
                    pr_author,
                    head_sha or "",
                    base_branch,
                    head_branch,
                    ReviewStatus.in_progress.value,
                    now,
                    now,
                    now,
                ),
            )
            row = con.execute(
                "SELECT * FROM reviews WHERE repo_url=? AND pr_number=? AND head_sha=?",
                (repo_url, int(pr_number), head_sha or ""),
            ).fetchone()
        return _row_to_review(row)

    def _update(self, review_id: str, **fields: Any) -> Review:
        fields["updated_at"] = utcnow_iso()
        cols = ", ".join(f"{k}=?" for k in fields)
        with self.db.transaction() as con:
            cur = con.execute(f"UPDATE reviews SET {cols} WHERE id=?", (*fields.values(), review_id))
            if cur.rowcount != 1:
                raise NotFound(f"review {review_id} not found")
            row = con.execute("SELECT * FROM reviews WHERE id=?", (review_id,)).fetchone()
        return _row_to_review(row)

    def set_task(self, review_id: str, task_id: str) -> Review:
        return self._update(review_id, task_id=task_id)

    def complete(
        self,
        review_id: str,
        *,
        summary: str | None,
        findings: Iterable[ReviewFinding],
        score: int | None,
    ) -> Review:
        return self._update(
            review_id,
            status=ReviewStatus.completed.value,
            summary=summary,
            findings_json=to_json([f.model_dump(mode="json") for f in findings]),
            score=score,
            error=None,
            completed_at=utcnow_iso(),
        )

    def fail(self, review_id: str, error: str) -> Review:
        return self._update(review_id, status=ReviewStatus.error.value, error=error, completed_at=utcnow_iso())


class ReviewRuleStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        *,
        user_id: str,
        name: str,
        prompt: str,
        description: str | None = None,
        severity: str = "warning",
        repo_url: str | None = None,
        file_patterns: List[str] | None = None,
        enabled: bool = True,
    ) -> ReviewRule:
        rid = new_id()
        with self.db.transaction() as con:
            con.execute(
                """
                INSERT INTO review_rules (
                    id, user_id, name, description, prompt, severity, repo_url, file_patterns_json,
                    enabled, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    rid,
                    user_id,
                    name,
                    description,
                    prompt,
                    severity,
                    repo_url,
                    to_json(file_patterns or []),
                    1 if enabled else 0,
                    utcnow_iso(),
                ),
            )
            row = con.execute("SELECT * FROM review_rules WHERE id=?", (rid,)).fetchone()
        return _row_to_rule(row)

    def list_enabled(self, user_id: str, repo_url: str | None = None) -> List[ReviewRule]:
        """
        The user's enabled rules that apply to `repo_url`: global rules plus rules scoped to that repo.
        """
        with self.db.reader() as con:
            rows = con.execute(
                """
                SELECT * FROM review_rules
                WHERE user_id=? AND enabled=1 AND (repo_url IS NULL OR repo_url=?)
                ORDER BY created_at ASC, name ASC
                """,
                (user_id, repo_url or ""),
            ).fetchall()
        return [_row_to_rule(r) for r in rows]
