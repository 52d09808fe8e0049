from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from deployfix.engine.queue import QueuedEvent
from deployfix.engine.steps import StepContext
from deployfix.engine.worker import FunctionDef
from deployfix.events import DEPLOYMENT_FIX_CREATE_PR
from deployfix.models import CreateFixPrRequested, FixStatus
from deployfix.pipelines.base import RecordPipeline
from deployfix.store.database import utcnow_iso

logger = logging.getLogger(__name__)

FUNCTION_ID = "create-fix-pr"


class CreateFixPrPipeline(RecordPipeline):
    """
    Opens the pull request for a finished agent fix and records the outcome on the fix record.
    """

    function_id = FUNCTION_ID
    record_field = "deployment_id"

    def handle(self, ev: QueuedEvent, step: StepContext) -> Dict[str, Any]:
        data = CreateFixPrRequested.model_validate(ev.data)

        found = step.run("get-deployment", lambda: self._get_deployment(data.deployment_id))
        if not found:
            logger.error("create-fix-pr: deployment %s not found", data.deployment_id)
            return {"success": False, "error": "Deployment not found"}

        base = data.base_branch or self.s.settings.default_base_branch
        pr = step.run(
            "create-pull-request",
            lambda: self.s.pr_creator.create(
                repo_url=f"https://github.com/{data.repo_full_name}",
                branch_name=data.branch_name,
                title=data.fix_summary,
                body=data.fix_details,
                base_branch=base,
            ).model_dump(mode="json"),
        )

        if not pr.get("success"):
            error = pr.get("error") or "Failed to create pull request"
            step.run("update-status-failed", lambda: self.mark_failed(data.deployment_id, error))
            return {"success": False, "error": error}

        step.run("update-deployment-pr-info", lambda: self._mark_pr_created(data, pr))
        self.s.audit.write(
            data.deployment_id,
            "pr.created",
            {"pr_url": pr.get("pr_url"), "pr_number": pr.get("pr_number"), "branch": data.branch_name},
        )
        return {"success": True, "pr_url": pr.get("pr_url"), "pr_number": pr.get("pr_number")}

    def _get_deployment(self, deployment_id: str) -> Optional[Dict[str, Any]]:
        d = self.s.deployments.get(deployment_id)
        if d is None:
            return None
        return {"id": d.id, "fix_status": d.fix_status.value, "subscription_id": d.subscription_id}

    def _mark_pr_created(self, data: CreateFixPrRequested, pr: Dict[str, Any]) -> str:
        d = self.s.deployments.transition(
            data.deployment_id,
            FixStatus.pr_created,
            pr_url=pr.get("pr_url"),
            pr_number=pr.get("pr_number"),
            fix_branch_name=data.branch_name,
            fix_summary=data.fix_summary,
            fix_details=data.fix_details,
            error_message=data.error_message,
            completed_at=utcnow_iso(),
        )
        return d.fix_status.value

    def function_def(self) -> FunctionDef:
        return FunctionDef(
            id=FUNCTION_ID,
            event=DEPLOYMENT_FIX_CREATE_PR,
            handler=self.handle,
            concurrency=self.s.settings.create_pr_concurrency,
            on_step_error=self.on_step_error,
            on_failure=self.on_failure,
        )
