from __future__ import annotations

import logging
from typing import Any, Dict

from deployfix.engine.queue import Idempotency, QueuedEvent
from deployfix.engine.steps import StepContext
from deployfix.engine.worker import FunctionDef
from deployfix.errors import NotFound
from deployfix.events import DEPLOYMENT_FIX_COMPLETED, DEPLOYMENT_FIX_CREATE_PR, create_pr_key
from deployfix.models import CreateFixPrRequested, FixCompleted, FixStatus
from deployfix.pipelines.base import RecordPipeline
from deployfix.store.database import utcnow_iso

logger = logging.getLogger(__name__)

FUNCTION_ID = "handle-fix-completed"


class FixCompletedPipeline(RecordPipeline):
    """
    Routes an agent completion onto the fix record:

    - agent error -> failed
    - agent already opened the PR -> pr_created
    - otherwise -> reviewing, and a `deployment-fix/create-pr` request is queued
    """

    function_id = FUNCTION_ID
    record_field = "deployment_id"

    def handle(self, ev: QueuedEvent, step: StepContext) -> Dict[str, Any]:
        data = FixCompleted.model_validate(ev.data)

        info = step.run("get-deployment", lambda: self._load(data.deployment_id))

        if not data.success:
            error = data.error or "Agent task failed"
            step.run("update-status-failed", lambda: self.mark_failed(data.deployment_id, error))
            return {"success": False, "error": error}

        branch = data.branch_name or info.get("fix_branch_name")
        if data.pr_url:
            step.run("update-deployment-pr-info", lambda: self._record_agent_pr(data, branch, info))
            return {"success": True, "action": "pr_created", "pr_url": data.pr_url}

        if not branch:
            error = "Agent completed without reporting a branch"
            step.run("update-status-failed", lambda: self.mark_failed(data.deployment_id, error))
            return {"success": False, "error": error}

        summary = data.summary or f"Fix deployment error: {info.get('error_type') or 'build'}"
        details = data.details or _default_details(info)
        request = CreateFixPrRequested(
            deployment_id=data.deployment_id,
            repo_full_name=str(info["repo_full_name"]),
            branch_name=branch,
            fix_summary=summary,
            fix_details=details,
            error_message=info.get("error_message"),
        )
        event_id = step.run("request-pull-request", lambda: self._request_pr(data, request))
        return {"success": True, "action": "create-pr", "event_id": event_id}

    def _load(self, deployment_id: str) -> Dict[str, Any]:
        d = self.s.deployments.require(deployment_id)
        sub = self.s.subscriptions.get(d.subscription_id)
        if sub is None:
            raise NotFound(f"subscription {d.subscription_id} not found")
        return {
            "repo_full_name": sub.github_repo_full_name,
            "fix_branch_name": d.fix_branch_name,
            "error_type": d.error_type.value if d.error_type else None,
            "error_message": d.error_message,
            "platform_deployment_id": d.platform_deployment_id,
            "deployment_url": d.deployment_url,
        }

    def _record_agent_pr(self, data: FixCompleted, branch: str | None, info: Dict[str, Any]) -> str:
        d = self.s.deployments.transition(
            data.deployment_id,
            FixStatus.pr_created,
            pr_url=data.pr_url,
            pr_number=data.pr_number,
            fix_branch_name=branch,
            fix_summary=data.summary,
            fix_details=data.details,
            error_message=info.get("error_message"),
            completed_at=utcnow_iso(),
        )
        self.s.audit.write(data.deployment_id, "pr.created", {"pr_url": data.pr_url, "source": "agent"})
        return d.fix_status.value

    def _request_pr(self, data: FixCompleted, request: CreateFixPrRequested) -> str:
        self.s.deployments.transition(
            data.deployment_id,
            FixStatus.reviewing,
            fix_branch_name=request.branch_name,
            fix_summary=request.fix_summary,
            fix_details=request.fix_details,
            error_message=request.error_message,
        )
        sent = self.s.queue.send(
            DEPLOYMENT_FIX_CREATE_PR,
            request.model_dump(),
            idempotency=Idempotency(create_pr_key(data.deployment_id, data.task_id), self.s.settings.idempotency_ttl_s),
        )
        return sent.event_id

    def function_def(self) -> FunctionDef:
        return FunctionDef(
            id=FUNCTION_ID,
            event=DEPLOYMENT_FIX_COMPLETED,
            handler=self.handle,
            concurrency=self.s.settings.fix_concurrency,
            on_step_error=self.on_step_error,
            on_failure=self.on_failure,
        )


def _default_details(info: Dict[str, Any]) -> str:
    lines = ["Automated fix for a failed deployment.", ""]
    if info.get("platform_deployment_id"):
        lines.append(f"- Deployment: `{info['platform_deployment_id']}`")
    if info.get("deployment_url"):
        lines.append(f"- URL: {info['deployment_url']}")
    if info.get("error_type"):
        lines.append(f"- Error type: `{info['error_type']}`")
    if info.get("error_message"):
        lines.append(f"- Error: {info['error_message']}")
    return "\n".join(lines)
