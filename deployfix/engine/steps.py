from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from deployfix.errors import NonRetriableError, StepFailed
from deployfix.store.database import Database, to_json, utcnow_iso

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0

    def delay_s(self, attempt: int) -> float:
        # Exponential backoff without jitter, capped.
        return min(self.backoff_max_s, self.backoff_base_s * (2 ** max(0, attempt - 1)))


StepErrorHook = Callable[[str, int, BaseException], None]


class StepContext:
    """
    Durable step runner for one event.

    `run(name, fn)`:
    - if the step already completed for this event, returns the persisted output without calling fn
    - otherwise calls fn, retrying per policy, and persists the output before returning

    Step outputs must be JSON-serializable; the returned value is always the JSON round-trip
    so a first execution and a replay look identical to the caller.
    """

    def __init__(
        self,
        *,
        db: Database,
        event_id: str,
        policy: RetryPolicy,
        on_error: Optional[StepErrorHook] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.event_id = event_id
        self.policy = policy
        self._on_error = on_error
        self._sleep = sleep
        self._seen: set[str] = set()

    def run(self, name: str, fn: Callable[[], Any]) -> Any:
        if name in self._seen:
            raise ValueError(f"duplicate step name in one run: {name}")
        self._seen.add(name)

        with self.db.reader() as con:
            row = con.execute(
                "SELECT output_json FROM steps WHERE event_id=? AND step_name=?", (self.event_id, name)
            ).fetchone()
        if row is not None:
            logger.debug("step %s replayed for event %s", name, self.event_id)
            return json.loads(row["output_json"])

        attempt = 0
        while True:
            attempt += 1
            try:
                out = fn()
                encoded = to_json(out)
            except Exception as e:  # noqa: BLE001
                logger.warning("step %s attempt %d/%d failed: %s", name, attempt, self.policy.max_attempts, e)
                if self._on_error is not None:
                    self._on_error(name, attempt, e)
                if isinstance(e, NonRetriableError) or attempt >= self.policy.max_attempts:
                    raise StepFailed(name, attempt, e) from e
                self._sleep(self.policy.delay_s(attempt))
                continue
            break

        with self.db.transaction() as con:
            con.execute(
                "INSERT OR REPLACE INTO steps (event_id, step_name, output_json, attempts, completed_at) VALUES (?,?,?,?,?)",
                (self.event_id, name, encoded, attempt, utcnow_iso()),
            )
        return json.loads(encoded)

    def completed_steps(self) -> list[str]:
        with self.db.reader() as con:
            rows = con.execute(
                "SELECT step_name FROM steps WHERE event_id=? ORDER BY completed_at ASC", (self.event_id,)
            ).fetchall()
        return [str(r["step_name"]) for r in rows]
