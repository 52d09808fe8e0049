from __future__ import annotations

from typing import List

from deployfix.models import ErrorType, FixRule
from deployfix.store.database import Database, new_id, utcnow_iso


class RuleStore:
    def __init__(self, db: Database) -> None:
        self.db = db

    def create(
        self,
        *,
        subscription_id: str,
        error_pattern: str,
        name: str = "",
        error_type: ErrorType | None = None,
        skip_fix: bool = False,
        custom_prompt: str | None = None,
        priority: int = 0,
        enabled: bool = True,
        created_at: str | None = None,
        rule_id: str | None = None,
    ) -> FixRule:
        rid = rule_id or new_id()
        with self.db.transaction() as con:
            con.execute(
                """
                INSERT INTO fix_rules (
                    id, subscription_id, name, error_pattern, error_type, skip_fix, custom_prompt,
                    priority, enabled, created_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    rid,
                    subscription_id,
                    name,
                    error_pattern,
                    error_type.value if error_type else None,
                    1 if skip_fix else 0,
                    custom_prompt,
                    int(priority),
                    1 if enabled else 0,
                    created_at or utcnow_iso(),
                ),
            )
            row = con.execute("SELECT * FROM fix_rules WHERE id=?", (rid,)).fetchone()
        return FixRule.model_validate(dict(row))

    def list_enabled(self, subscription_id: str) -> List[FixRule]:
        with self.db.reader() as con:
            rows = con.execute(
                "SELECT * FROM fix_rules WHERE subscription_id=? AND enabled=1",
                (subscription_id,),
            ).fetchall()
        return [FixRule.model_validate(dict(r)) for r in rows]
