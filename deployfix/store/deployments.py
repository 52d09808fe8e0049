from __future__ import annotations

import sqlite3
from typing import Any, Dict, List, Optional

from deployfix.errors import InvalidTransition, NotFound, RetryNotAllowed
from deployfix.models import RETRYABLE_STATUSES, Deployment, FixStatus
from deployfix.store.database import Database, new_id, utcnow_iso
from deployfix.telemetry.audit import AuditLogger


# Forward-only lifecycle. Same-state entries let a step update fields without moving the record.
# failed/skipped -> pending is reserved for the manual retry path (`reset_for_retry`).
ALLOWED_TRANSITIONS: Dict[FixStatus, frozenset[FixStatus]] = {
    FixStatus.pending: frozenset({FixStatus.pending, FixStatus.analyzing, FixStatus.failed}),
    FixStatus.analyzing: frozenset({FixStatus.analyzing, FixStatus.fixing, FixStatus.failed, FixStatus.skipped}),
    FixStatus.fixing: frozenset({FixStatus.fixing, FixStatus.reviewing, FixStatus.pr_created, FixStatus.failed}),
    FixStatus.reviewing: frozenset({FixStatus.reviewing, FixStatus.pr_created, FixStatus.failed}),
    FixStatus.pr_created: frozenset({FixStatus.merged}),
    FixStatus.merged: frozenset(),
    FixStatus.failed: frozenset(),
    FixStatus.skipped: frozenset(),
}

_UPDATABLE_FIELDS = frozenset(
    {
        "error_type",
        "error_message",
        "error_context",
        "logs",
        "matched_rule_id",
        "task_id",
        "pr_url",
        "pr_number",
        "fix_branch_name",
        "fix_summary",
        "fix_details",
        "started_at",
        "completed_at",
    }
)


def can_transition(current: FixStatus, target: FixStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def _row_to_deployment(r: sqlite3.Row) -> Deployment:
    return Deployment.model_validate(dict(r))


class DeploymentStore:
    """
    Persistence contract for fix records.

    - `platform_deployment_id` is UNIQUE: `insert_if_absent` reports duplicates instead of raising.
    - Every status write is a read-modify-write inside one write transaction and is validated
      against ALLOWED_TRANSITIONS, so two writers can never move a record backwards.
    """

    def __init__(self, db: Database, *, audit: AuditLogger | None = None) -> None:
        self.db = db
        self.audit = audit

    def insert_if_absent(
        self,
        *,
        subscription_id: str,
        platform_deployment_id: str,
        webhook_delivery_id: str | None = None,
        deployment_url: str | None = None,
        branch: str | None = None,
        fix_id: str | None = None,
        con: sqlite3.Connection | None = None,
    ) -> str | None:
        """
        Returns the new fix id, or None when a record for this provider deployment already exists.
        Pass `con` to join an enclosing transaction (webhook ingest enqueues in the same commit).
        """
        fid = fix_id or new_id()
        now = utcnow_iso()
        sql = """
            INSERT INTO deployments (
                id, subscription_id, platform_deployment_id, webhook_delivery_id, deployment_url, branch,
                fix_status, fix_attempt_number, created_at, updated_at
            ) VALUES (?,?,?,?,?,?,?,?,?,?)
            ON CONFLICT(platform_deployment_id) DO NOTHING
        """
        params = (
            fid,
            subscription_id,
            platform_deployment_id,
            webhook_delivery_id,
            deployment_url,
            branch,
            FixStatus.pending.value,
            0,
            now,
            now,
        )
        if con is not None:
            cur = con.execute(sql, params)
            inserted = cur.rowcount == 1
        else:
            with self.db.transaction() as tx:
                inserted = tx.execute(sql, params).rowcount == 1
        return fid if inserted else None

    def get(self, fix_id: str) -> Optional[Deployment]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM deployments WHERE id=?", (fix_id,)).fetchone()
        return _row_to_deployment(row) if row else None

    def require(self, fix_id: str) -> Deployment:
        d = self.get(fix_id)
        if d is None:
            raise NotFound(f"deployment {fix_id} not found")
        return d

    def get_by_platform_id(self, platform_deployment_id: str) -> Optional[Deployment]:
        with self.db.reader() as con:
            row = con.execute(
                "SELECT * FROM deployments WHERE platform_deployment_id=?", (platform_deployment_id,)
            ).fetchone()
        return _row_to_deployment(row) if row else None

    def count_for_platform_id(self, platform_deployment_id: str) -> int:
        with self.db.reader() as con:
            row = con.execute(
                "SELECT COUNT(*) AS n FROM deployments WHERE platform_deployment_id=?", (platform_deployment_id,)
            ).fetchone()
        return int(row["n"])

    def transition(self, fix_id: str, target: FixStatus, **fields: Any) -> Deployment:
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"not updatable: {sorted(unknown)}")
        with self.db.transaction() as con:
            row = con.execute("SELECT fix_status FROM deployments WHERE id=?", (fix_id,)).fetchone()
            if row is None:
                raise NotFound(f"deployment {fix_id} not found")
            current = FixStatus(row["fix_status"])
            if not can_transition(current, target):
                raise InvalidTransition(fix_id, current.value, target.value)
            self._update(con, fix_id, {"fix_status": target.value, **fields})
            out = _row_to_deployment(con.execute("SELECT * FROM deployments WHERE id=?", (fix_id,)).fetchone())
        if self.audit is not None and current != target:
            self.audit.write(fix_id, "deployment.transition", {"from": current.value, "to": target.value})
        return out

    def record_error(self, fix_id: str, message: str) -> bool:
        """
        Write a step error onto a record that is still in flight. Terminal records are left untouched.
        """
        with self.db.transaction() as con:
            cur = con.execute(
                "UPDATE deployments SET error_message=?, updated_at=? WHERE id=? AND fix_status IN (?,?,?,?)",
                (
                    message,
                    utcnow_iso(),
                    fix_id,
                    FixStatus.pending.value,
                    FixStatus.analyzing.value,
                    FixStatus.fixing.value,
                    FixStatus.reviewing.value,
                ),
            )
            return cur.rowcount == 1

    def reset_for_retry(self, con: sqlite3.Connection, fix_id: str, *, max_attempts: int | None = None) -> int:
        """
        failed|skipped -> pending. Runs inside the caller's transaction; returns the new attempt number.

        Status and attempt budget are read under the write lock, so of two racing retries only one wins.
        """
        row = con.execute("SELECT fix_status, fix_attempt_number FROM deployments WHERE id=?", (fix_id,)).fetchone()
        if row is None:
            raise NotFound(f"deployment {fix_id} not found")
        current = FixStatus(row["fix_status"])
        if current not in RETRYABLE_STATUSES:
            raise InvalidTransition(fix_id, current.value, FixStatus.pending.value)
        attempt = int(row["fix_attempt_number"] or 0) + 1
        if max_attempts is not None and attempt > max_attempts:
            raise RetryNotAllowed(f"maximum fix attempts reached ({max_attempts})")
        con.execute(
            """
            UPDATE deployments SET fix_status=?, fix_attempt_number=?, error_message=NULL,
                started_at=NULL, completed_at=NULL, updated_at=?
            WHERE id=?
            """,
            (FixStatus.pending.value, attempt, utcnow_iso(), fix_id),
        )
        if self.audit is not None:
            self.audit.write(fix_id, "deployment.transition", {"from": current.value, "to": "pending", "attempt": attempt})
        return attempt

    def list_in_status(self, status: FixStatus, *, updated_before: str | None = None) -> List[Deployment]:
        q = "SELECT * FROM deployments WHERE fix_status=?"
        params: list[Any] = [status.value]
        if updated_before is not None:
            q += " AND updated_at < ?"
            params.append(updated_before)
        q += " ORDER BY updated_at ASC"
        with self.db.reader() as con:
            rows = con.execute(q, params).fetchall()
        return [_row_to_deployment(r) for r in rows]

    def find_by_fix_branch(self, *, repo_full_name: str, branch_name: str) -> List[Deployment]:
        with self.db.reader() as con:
            rows = con.execute(
                """
                SELECT d.* FROM deployments d
                JOIN subscriptions s ON s.id = d.subscription_id
                WHERE lower(s.github_repo_full_name)=lower(?) AND d.fix_branch_name=?
                """,
                (repo_full_name, branch_name),
            ).fetchall()
        return [_row_to_deployment(r) for r in rows]

    @staticmethod
    def _update(con: sqlite3.Connection, fix_id: str, values: Dict[str, Any]) -> None:
        values = dict(values)
        values["updated_at"] = utcnow_iso()
        cols = ", ".join(f"{k}=?" for k in values)
        params = [v.value if hasattr(v, "value") else v for v in values.values()]
        con.execute(f"UPDATE deployments SET {cols} WHERE id=?", (*params, fix_id))
