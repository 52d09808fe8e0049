from __future__ import annotations

import json
import os
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class AuditLogger:
    """
    Append-only JSONL audit trail. Correlation id is the fix id for deployment workflows,
    so `grep <fix_id>` reconstructs every transition and step failure of one record.
    """

    def __init__(self, path: str):
        self.path = path
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._lock = threading.Lock()

    def new_correlation_id(self) -> str:
        return uuid.uuid4().hex

    def write(
        self,
        correlation_id: str,
        event_type: str,
        payload: Dict[str, Any],
        *,
        actor: str = "deployfix",
        timestamp: Optional[str] = None,
    ) -> None:
        record = {
            "ts": timestamp or datetime.now(timezone.utc).isoformat(),
            "correlation_id": correlation_id,
            "actor": actor,
            "event_type": event_type,
            "payload": payload,
        }
        line = json.dumps(record, ensure_ascii=False, default=str) + "\n"
        # Worker threads share one logger instance.
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line)


def read_audit(path: str, *, correlation_id: str | None = None) -> list[Dict[str, Any]]:
    if not os.path.exists(path):
        return []
    out: list[Dict[str, Any]] = []
    with open(path, "r", encoding="utf-8") as f:
        for ln in f:
            ln = ln.strip()
            if not ln:
                continue
            rec = json.loads(ln)
            if correlation_id is None or rec.get("correlation_id") == correlation_id:
                out.append(rec)
    return out
