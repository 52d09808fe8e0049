from __future__ import annotations

import hashlib
import hmac
import json
import os
from typing import Any, Dict, List, Optional

import pytest

from deployfix.container import Services, build_services
from deployfix.models import PRCreateResult
from deployfix.security.crypto import SecretBox
from deployfix.settings import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """
    Keep tests deterministic and isolated from developer machine env.
    """
    for k in list(os.environ.keys()):
        if k.startswith("DEPLOYFIX_"):
            monkeypatch.delenv(k, raising=False)


TS_BUILD_LOG = "\n".join(
    [
        "Running build in Washington, D.C., USA (East) - iad1",
        "Cloning github.com/acme/web (Branch: main, Commit: 1a2b3c4)",
        "Installing dependencies...",
        "added 312 packages in 9s",
        "> web@0.1.0 build",
        "> next build",
        "   Creating an optimized production build ...",
        "src/lib/math.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.",
        "   Linting and checking validity of types ...",
        'Error: Command "npm run build" exited with 1',
    ]
)


class FakeRunner:
    """
    In-memory agent runner. Honors idempotency keys like the real task table.
    """

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.by_key: Dict[str, str] = {}
        self.fail_times = 0

    def create_task(
        self,
        *,
        prompt: str,
        repo_url: str,
        provider: str,
        metadata: Dict[str, Any],
        user_id: str,
        title: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("agent runner unavailable")
        if idempotency_key and idempotency_key in self.by_key:
            return self.by_key[idempotency_key]
        task_id = f"task-{len(self.calls) + 1}"
        self.calls.append(
            {
                "task_id": task_id,
                "prompt": prompt,
                "repo_url": repo_url,
                "provider": provider,
                "metadata": metadata,
                "user_id": user_id,
                "title": title,
                "idempotency_key": idempotency_key,
            }
        )
        if idempotency_key:
            self.by_key[idempotency_key] = task_id
        return task_id


class FakePRCreator:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.result = PRCreateResult(success=True, pr_url="https://github.com/acme/web/pull/7", pr_number=7)

    def create(self, *, repo_url: str, branch_name: str, title: str, body: str, base_branch: str) -> PRCreateResult:
        self.calls.append(
            {"repo_url": repo_url, "branch_name": branch_name, "title": title, "body": body, "base_branch": base_branch}
        )
        return self.result


class FakeVercel:
    def __init__(self) -> None:
        self.logs = TS_BUILD_LOG
        self.error: Optional[BaseException] = None
        self.calls: List[Dict[str, Any]] = []

    def factory(self, token: str, team_id: Optional[str]) -> "FakeVercel":
        self.calls.append({"token": token, "team_id": team_id})
        return self

    def get_build_logs(self, deployment_id: str) -> str:
        if self.error is not None:
            raise self.error
        return self.logs


def sign_sha1(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha1).hexdigest()


def sign_sha256(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def post_completion(client, task_id: str, payload: Dict[str, Any], *, secret: str = "agent-secret"):
    body = json.dumps(payload).encode("utf-8")
    return client.post(
        f"/tasks/{task_id}/complete",
        content=body,
        headers={"content-type": "application/json", "x-deployfix-signature": sign_sha256(body, secret)},
    )


def vercel_payload(
    *,
    delivery_id: str = "dlv_1",
    event_type: str = "deployment.error",
    deployment_id: str = "dpl_123",
    project_id: str = "prj_web",
) -> bytes:
    return json.dumps(
        {
            "id": delivery_id,
            "type": event_type,
            "createdAt": 1760000000000,
            "payload": {
                "deployment": {
                    "id": deployment_id,
                    "url": "web-abc123.vercel.app",
                    "name": "web",
                    "meta": {"githubCommitRef": "main"},
                },
                "project": {"id": project_id},
                "team": {"id": "team_1"},
                "user": {"id": "usr_1"},
            },
        }
    ).encode("utf-8")


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        db_path=str(tmp_path / "deployfix.sqlite3"),
        audit_log_path=str(tmp_path / "audit.jsonl"),
        encryption_key=SecretBox.generate_key(),
        mock_github_dir=str(tmp_path / "mock_github"),
        github_webhook_secret="gh-secret",
        agent_callback_secret="agent-secret",
        worker_enabled=False,
        step_backoff_base_s=0.0,
    )


@pytest.fixture()
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def pr_creator() -> FakePRCreator:
    return FakePRCreator()


@pytest.fixture()
def vercel() -> FakeVercel:
    return FakeVercel()


@pytest.fixture()
def services(settings: Settings, runner: FakeRunner, pr_creator: FakePRCreator, vercel: FakeVercel) -> Services:
    return build_services(settings, runner=runner, pr_creator=pr_creator, vercel_client=vercel.factory)


@pytest.fixture()
def subscription(services: Services) -> Dict[str, Any]:
    """
    One user with a Vercel integration and an auto-fix subscription for project `prj_web`.
    """
    box = services.require_secrets()
    integ = services.subscriptions.create_integration(
        user_id="user-1", access_token_encrypted=box.encrypt("vercel-token"), team_id="team_1"
    )
    sub = services.subscriptions.create_subscription(
        integration_id=integ.id,
        user_id="user-1",
        platform_project_id="prj_web",
        github_repo_full_name="acme/web",
        webhook_secret_encrypted=box.encrypt("whsec"),
        project_name="web",
    )
    return {"integration": integ, "subscription": sub, "webhook_secret": "whsec"}


@pytest.fixture()
def worker(services: Services):
    from deployfix.pipelines.registry import build_worker

    return build_worker(services, sleep=lambda _s: None)


@pytest.fixture()
def make_payload():
    return vercel_payload


@pytest.fixture()
def sign_vercel():
    return sign_sha1


@pytest.fixture()
def sign_github():
    return sign_sha256


@pytest.fixture()
def complete_task():
    return post_completion


@pytest.fixture()
def ts_build_log() -> str:
    return TS_BUILD_LOG
