from __future__ import annotations

import json
import sqlite3
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from deployfix.store.database import Database, new_id, to_json, utcnow_iso


@dataclass(frozen=True)
class Idempotency:
    """
    At most one event per key is accepted while the key is live (now < expires_at).
    """

    key: str
    expires_in_s: float


@dataclass(frozen=True)
class SendResult:
    event_id: str
    duplicate: bool


@dataclass(frozen=True)
class QueuedEvent:
    id: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


class EventQueue:
    """
    Transactional outbox on the shared SQLite database.

    `send` can join the caller's transaction (pass `con`) so that a business row and the event
    that drives it commit together. Workers `claim` events under a time-bounded lease; a lease
    that expires without `complete`/`fail` means the worker died, and the event becomes claimable
    again (its completed steps replay from the steps table).
    """

    def __init__(self, db: Database, *, clock: Callable[[], float] = time.time) -> None:
        self.db = db
        self._clock = clock

    def send(
        self,
        name: str,
        data: Dict[str, Any],
        *,
        idempotency: Idempotency | None = None,
        con: sqlite3.Connection | None = None,
    ) -> SendResult:
        if con is not None:
            return self._send(con, name, data, idempotency)
        with self.db.transaction() as tx:
            return self._send(tx, name, data, idempotency)

    def _send(
        self,
        con: sqlite3.Connection,
        name: str,
        data: Dict[str, Any],
        idempotency: Idempotency | None,
    ) -> SendResult:
        now = self._clock()
        event_id = new_id()
        if idempotency is not None:
            row = con.execute(
                "SELECT event_id, expires_at FROM idempotency_keys WHERE key=?", (idempotency.key,)
            ).fetchone()
            if row and float(row["expires_at"]) > now:
                return SendResult(event_id=str(row["event_id"]), duplicate=True)
            con.execute(
                "INSERT OR REPLACE INTO idempotency_keys (key, event_id, expires_at) VALUES (?,?,?)",
                (idempotency.key, event_id, now + float(idempotency.expires_in_s)),
            )
        ts = utcnow_iso()
        con.execute(
            "INSERT INTO events (id, name, data_json, status, attempts, created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
            (event_id, name, to_json(data), "queued", 0, ts, ts),
        )
        return SendResult(event_id=event_id, duplicate=False)

    def claim(self, name: str, *, limit: int, lease_s: float) -> List[QueuedEvent]:
        if limit <= 0:
            return []
        now = self._clock()
        with self.db.transaction() as con:
            rows = con.execute(
                """
                SELECT id, name, data_json, attempts FROM events
                WHERE name=? AND (status='queued' OR (status='running' AND locked_until < ?))
                ORDER BY created_at ASC
                LIMIT ?
                """,
                (name, now, int(limit)),
            ).fetchall()
            out: List[QueuedEvent] = []
            for r in rows:
                con.execute(
                    "UPDATE events SET status='running', attempts=attempts+1, locked_until=?, updated_at=? WHERE id=?",
                    (now + float(lease_s), utcnow_iso(), r["id"]),
                )
                out.append(
                    QueuedEvent(
                        id=str(r["id"]),
                        name=str(r["name"]),
                        data=json.loads(r["data_json"] or "{}"),
                        attempts=int(r["attempts"]) + 1,
                    )
                )
        return out

    def complete(self, event_id: str, result: Any = None) -> None:
        with self.db.transaction() as con:
            con.execute(
                "UPDATE events SET status='completed', locked_until=NULL, result_json=?, updated_at=? WHERE id=?",
                (to_json(result), utcnow_iso(), event_id),
            )

    def fail(self, event_id: str, error: str) -> None:
        with self.db.transaction() as con:
            con.execute(
                "UPDATE events SET status='failed', locked_until=NULL, error=?, updated_at=? WHERE id=?",
                (error, utcnow_iso(), event_id),
            )

    def get(self, event_id: str) -> Optional[Dict[str, Any]]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM events WHERE id=?", (event_id,)).fetchone()
        if not row:
            return None
        d = dict(row)
        d["data"] = json.loads(d.pop("data_json") or "{}")
        d["result"] = json.loads(d.pop("result_json")) if d.get("result_json") else None
        return d

    def list_events(self, name: str | None = None) -> List[Dict[str, Any]]:
        q = "SELECT id FROM events"
        params: list[Any] = []
        if name is not None:
            q += " WHERE name=?"
            params.append(name)
        q += " ORDER BY created_at ASC"
        with self.db.reader() as con:
            ids = [str(r["id"]) for r in con.execute(q, params).fetchall()]
        return [e for e in (self.get(i) for i in ids) if e is not None]

    def has_live_event(self, name: str, *, field_name: str, value: str) -> bool:
        """
        True when a queued or running event of `name` carries `data[field_name] == value`.
        """
        with self.db.reader() as con:
            row = con.execute(
                """
                SELECT 1 FROM events
                WHERE name=? AND status IN ('queued','running') AND json_extract(data_json, ?) = ?
                LIMIT 1
                """,
                (name, f"$.{field_name}", value),
            ).fetchone()
        return bool(row)
