from __future__ import annotations

import json
from typing import Any, Dict

import pytest
from fastapi.testclient import TestClient

from deployfix.models import FixStatus
from deployfix.pipelines.review import review_task_key
from deployfix.service.app import create_app

REPO_URL = "https://github.com/acme/web"


def _pr_event(action: str, *, number: int = 9, sha: str = "abc123", draft: bool = False, merged: bool = False,
              head_ref: str = "feat/x") -> bytes:
    payload: Dict[str, Any] = {
        "action": action,
        "number": number,
        "pull_request": {
            "number": number,
            "title": "Add pricing page",
            "draft": draft,
            "merged": merged,
            "user": {"login": "octocat"},
            "head": {"ref": head_ref, "sha": sha},
            "base": {"ref": "main"},
        },
        "repository": {"full_name": "acme/web", "html_url": REPO_URL},
    }
    return json.dumps(payload).encode("utf-8")


@pytest.fixture()
def post(services, sign_github):
    client = TestClient(create_app(services=services))

    def _post(body: bytes, *, delivery: str = "gh-1", event: str = "pull_request", signature: str | None = None):
        return client.post(
            "/webhooks/github",
            content=body,
            headers={
                "content-type": "application/json",
                "x-github-event": event,
                "x-github-delivery": delivery,
                "x-hub-signature-256": signature if signature is not None else sign_github(body, "gh-secret"),
            },
        )

    return _post


@pytest.fixture()
def installation(services):
    return services.subscriptions.create_github_installation(user_id="user-1", repo_url=REPO_URL)


def test_opened_pull_request_queues_one_review(services, installation, post, worker, runner) -> None:
    body = _pr_event("opened")
    r = post(body)
    assert r.status_code == 200
    assert r.json()["action"] == "review_queued"
    assert post(body).json()["action"] == "duplicate"

    worker.drain()

    assert len(runner.calls) == 1
    call = runner.calls[0]
    assert call["repo_url"] == REPO_URL
    assert call["user_id"] == "user-1"
    assert call["metadata"]["type"] == "pr-review"
    assert call["idempotency_key"] == review_task_key(REPO_URL, 9, "abc123")
    assert "#9" in call["prompt"]


def test_new_commits_get_a_new_review(services, installation, post, worker, runner) -> None:
    post(_pr_event("opened", sha="c1"), delivery="gh-1")
    post(_pr_event("synchronize", sha="c2"), delivery="gh-2")
    worker.drain()
    assert [c["metadata"]["head_sha"] for c in runner.calls] == ["c1", "c2"]


def test_drafts_and_unknown_repos_are_ignored(services, post, worker, runner) -> None:
    assert post(_pr_event("opened")).json()["action"] == "ignored"
    services.subscriptions.create_github_installation(user_id="user-1", repo_url=REPO_URL)
    r = post(_pr_event("opened", draft=True), delivery="gh-2")
    assert r.json() == {"received": True, "action": "ignored", "reason": "draft"}
    assert post(_pr_event("labeled"), delivery="gh-3").json()["action"] == "ignored"
    assert post(b"{}", delivery="gh-4", event="push").json()["action"] == "ignored"
    worker.drain()
    assert runner.calls == []


def test_draft_reviewed_when_installation_opts_in(services, post) -> None:
    services.subscriptions.create_github_installation(user_id="user-1", repo_url=REPO_URL, review_on_draft=True)
    assert post(_pr_event("opened", draft=True)).json()["action"] == "review_queued"


def test_bad_signature_and_bad_json(services, installation, post, sign_github) -> None:
    assert post(_pr_event("opened"), signature="sha256=deadbeef").status_code == 401
    assert post(_pr_event("opened"), signature="").status_code == 401
    assert post(b"{oops", signature=sign_github(b"{oops", "gh-secret")).status_code == 400
    assert services.queue.list_events() == []


def test_missing_github_secret_is_server_error(services) -> None:
    services.settings = services.settings.model_copy(update={"github_webhook_secret": None})
    client = TestClient(create_app(services=services))
    r = client.post("/webhooks/github", content=b"{}", headers={"x-github-event": "pull_request"})
    assert r.status_code == 500


def test_merged_fix_pull_request_marks_record_merged(services, subscription, post) -> None:
    fix_id = services.deployments.insert_if_absent(
        subscription_id=subscription["subscription"].id, platform_deployment_id="dpl_merge"
    )
    services.deployments.transition(fix_id, FixStatus.analyzing)
    services.deployments.transition(fix_id, FixStatus.fixing, fix_branch_name="fix/deployment-abc12345")
    services.deployments.transition(fix_id, FixStatus.pr_created, pr_number=7)

    r = post(_pr_event("closed", merged=True, head_ref="fix/deployment-abc12345"))
    assert r.json() == {"received": True, "action": "merged", "fix_ids": [fix_id]}
    assert services.deployments.require(fix_id).fix_status == FixStatus.merged

    # Redelivery: nothing left to move.
    assert post(_pr_event("closed", merged=True, head_ref="fix/deployment-abc12345"), delivery="gh-2").json()[
        "action"
    ] == "ignored"


def test_closed_without_merge_is_ignored(services, subscription, post) -> None:
    r = post(_pr_event("closed", merged=False, head_ref="fix/deployment-abc12345"))
    assert r.json()["action"] == "ignored"


@pytest.mark.parametrize(
    "field,value",
    [
        ("user", "octocat"),
        ("head", ["feat/x"]),
        ("base", "main"),
        ("number", "nine"),
        ("number", None),
        ("number", True),
    ],
)
def test_malformed_pull_request_fields_do_not_crash(services, installation, post, field, value) -> None:
    payload = json.loads(_pr_event("opened"))
    payload["pull_request"][field] = value
    r = post(json.dumps(payload).encode("utf-8"))
    assert r.status_code == 200
    if field == "number":
        assert r.json() == {"received": True, "action": "ignored", "reason": "malformed pull_request"}
        assert services.queue.list_events() == []
    else:
        assert r.json()["action"] == "review_queued"


def test_merge_with_non_object_head_is_ignored(services, post) -> None:
    payload = json.loads(_pr_event("closed", merged=True))
    payload["pull_request"]["head"] = "fix/deployment-abc12345"
    r = post(json.dumps(payload).encode("utf-8"))
    assert r.status_code == 200
    assert r.json()["action"] == "ignored"
