from __future__ import annotations

import json
import sqlite3
from typing import Any, Dict, Optional

from deployfix.errors import NotFound
from deployfix.models import AgentTask
from deployfix.store.database import Database, new_id, to_json, utcnow_iso


def _row_to_task(r: sqlite3.Row) -> AgentTask:
    d = dict(r)
    d["metadata"] = json.loads(d.pop("metadata_json") or "{}")
    return AgentTask.model_validate(d)


class TaskStore:
    """
    Coding-agent task rows. The agent processor picks up `pending` rows; completion is
    reported back through `complete`.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        *,
        user_id: str,
        prompt: str,
        title: str | None,
        repo_url: str | None,
        selected_provider: str,
        idempotency_key: str | None = None,
        metadata: Dict[str, Any] | None = None,
    ) -> AgentTask:
        """
        Insert-or-return: a second create with the same idempotency key returns the first row,
        so a retried step never spawns a second agent run.
        """
        tid = new_id()
        now = utcnow_iso()
        with self.db.transaction() as con:
            if idempotency_key:
                row = con.execute("SELECT * FROM tasks WHERE idempotency_key=?", (idempotency_key,)).fetchone()
                if row:
                    return _row_to_task(row)
            con.execute(
                """
                INSERT INTO tasks (
                    id, user_id, prompt, title, repo_url, selected_provider, status, idempotency_key,
                    metadata_json, created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    tid,
                    user_id,
                    prompt,
                    title,
                    repo_url,
                    selected_provider,
                    "pending",
                    idempotency_key,
                    to_json(metadata or {}),
                    now,
                    now,
                ),
            )
            row = con.execute("SELECT * FROM tasks WHERE id=?", (tid,)).fetchone()
        return _row_to_task(row)

    def get(self, task_id: str) -> Optional[AgentTask]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def complete(
        self,
        task_id: str,
        *,
        success: bool,
        branch_name: str | None = None,
        pr_url: str | None = None,
        error: str | None = None,
    ) -> AgentTask:
        now = utcnow_iso()
        with self.db.transaction() as con:
            cur = con.execute(
                """
                UPDATE tasks SET status=?, branch_name=COALESCE(?, branch_name), pr_url=COALESCE(?, pr_url),
                    error=?, updated_at=?, completed_at=?
                WHERE id=?
                """,
                ("completed" if success else "error", branch_name, pr_url, error, now, now, task_id),
            )
            if cur.rowcount != 1:
                raise NotFound(f"task {task_id} not found")
            row = con.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        return _row_to_task(row)
