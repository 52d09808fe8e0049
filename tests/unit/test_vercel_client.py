from __future__ import annotations

import httpx
import pytest

from deployfix.clients.vercel import VercelClient
from deployfix.errors import NonRetriableError


def _transport(status: int = 200, seen: list | None = None) -> httpx.MockTransport:
    # Newest first, like the API with direction=backward.
    events = [
        {"type": "stderr", "created": 3, "payload": {"text": "Error: Command \"npm run build\" exited with 1"}},
        {"type": "delimiter", "created": 2, "payload": {"text": "----"}},
        {"type": "stdout", "created": 2, "text": "src/a.ts(1,1): error TS2322: nope"},
        {"type": "command", "created": 1, "payload": {"text": "npm run build"}},
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path != "/v3/deployments/dpl_1/events":
            return httpx.Response(404, json={"error": {"message": "not found"}})
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "nope"}})
        return httpx.Response(200, json=events)

    return httpx.MockTransport(handler)


def test_build_logs_are_text_events_oldest_first() -> None:
    seen: list = []
    c = VercelClient(token="tok", team_id="team_1", transport=_transport(seen=seen))
    logs = c.get_build_logs("dpl_1")
    assert logs.splitlines() == [
        "npm run build",
        "src/a.ts(1,1): error TS2322: nope",
        'Error: Command "npm run build" exited with 1',
    ]
    req = seen[0]
    assert req.headers["Authorization"] == "Bearer tok"
    assert req.url.params["teamId"] == "team_1"
    assert req.url.params["builds"] == "1"


def test_auth_and_not_found_errors_are_not_retriable() -> None:
    for status in (401, 403):
        c = VercelClient(token="bad", transport=_transport(status=status))
        with pytest.raises(NonRetriableError):
            c.get_build_logs("dpl_1")
    with pytest.raises(NonRetriableError):
        VercelClient(token="t", transport=_transport()).get_build_logs("dpl_missing")


def test_server_errors_propagate_for_retry() -> None:
    c = VercelClient(token="t", transport=_transport(status=503))
    with pytest.raises(httpx.HTTPStatusError):
        c.get_build_logs("dpl_1")
