from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List

import httpx

from deployfix.errors import NonRetriableError

# Deployment event types that carry build output text.
_LOG_EVENT_TYPES = frozenset({"stdout", "stderr", "command", "fatal"})


def _is_log_event(ev: Any) -> bool:
    return isinstance(ev, dict) and str(ev.get("type") or "") in _LOG_EVENT_TYPES


def _event_text(ev: Dict[str, Any]) -> str:
    payload = ev.get("payload") if isinstance(ev.get("payload"), dict) else {}
    text = ev.get("text") or payload.get("text") or ""
    return str(text)


@dataclass(frozen=True)
class VercelClient:
    """
    Minimal Vercel REST wrapper for build log retrieval.

    Mockable in tests via `transport` (httpx.MockTransport), same as the GitHub client.
    """

    token: str
    team_id: str | None = None
    api_base: str = "https://api.vercel.com"
    timeout_s: float = 20.0
    transport: httpx.BaseTransport | None = None

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout_s, transport=self.transport)

    def get_deployment_events(self, deployment_id: str) -> List[Dict[str, Any]]:
        url = f"{self.api_base}/v3/deployments/{deployment_id}/events"
        params: Dict[str, Any] = {"builds": 1, "direction": "backward", "limit": -1}
        if self.team_id:
            params["teamId"] = self.team_id
        with self._client() as c:
            r = c.get(url, headers=self._headers(), params=params)
            # Bad token / unknown deployment will not heal on retry.
            if r.status_code in (401, 403, 404):
                raise NonRetriableError(f"vercel_http_{r.status_code}: {r.text[:500]}")
            r.raise_for_status()
            data = r.json()
        if isinstance(data, list):
            return [e for e in data if isinstance(e, dict)]
        if isinstance(data, dict):
            return [data]
        return []

    def get_build_logs(self, deployment_id: str) -> str:
        """
        Build output as text, oldest line first (the API is queried newest-first).
        """
        events = [e for e in self.get_deployment_events(deployment_id) if _is_log_event(e)]
        events.reverse()
        return "\n".join(t for t in (_event_text(e) for e in events) if t)
