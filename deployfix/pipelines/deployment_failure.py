from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from deployfix.analyzer.build_logs import analyze_build_logs
from deployfix.engine.queue import QueuedEvent
from deployfix.engine.steps import StepContext
from deployfix.engine.worker import FunctionDef
from deployfix.events import DEPLOYMENT_FAILURE_RECEIVED, fix_task_key
from deployfix.models import BuildLogAnalysis, DeploymentFailureReceived, FixRule, FixStatus
from deployfix.pipelines.base import RecordPipeline
from deployfix.prompting.fix_prompt import build_fix_prompt
from deployfix.store.database import utcnow_iso

logger = logging.getLogger(__name__)

FUNCTION_ID = "handle-deployment-failure"
SUBSCRIPTION_NOT_FOUND = "Subscription not found"


def _classification(analysis: BuildLogAnalysis) -> Dict[str, Any]:
    return {
        "error_type": analysis.error_type,
        "error_message": analysis.error_message,
        "error_context": analysis.error_context,
    }


class DeploymentFailurePipeline(RecordPipeline):
    """
    Durable steps for one `deployment-failure/received` event:

    analyzing -> fetch + persist logs -> classify -> match rule -> skipped | agent task (fixing)

    Each step's output is persisted, so a resumed run skips what already happened
    (in particular it never creates a second agent task).
    """

    function_id = FUNCTION_ID
    record_field = "fix_id"

    # ---------- steps ----------

    def handle(self, ev: QueuedEvent, step: StepContext) -> Dict[str, Any]:
        data = DeploymentFailureReceived.model_validate(ev.data)
        fix_id = data.fix_id

        step.run("update-status-analyzing", lambda: self._mark_analyzing(fix_id))

        sub_info = step.run("get-subscription", lambda: self._get_subscription(data.subscription_id))
        if not sub_info:
            step.run("mark-subscription-missing", lambda: self.mark_failed(fix_id, SUBSCRIPTION_NOT_FOUND))
            return {"success": False, "error": SUBSCRIPTION_NOT_FOUND}

        logs = step.run("fetch-logs", lambda: self._fetch_logs(data.subscription_id, data.deployment_id))
        step.run("save-logs", lambda: self._save_logs(fix_id, logs))

        analysis = BuildLogAnalysis.model_validate(
            step.run("analyze-error", lambda: analyze_build_logs(logs).model_dump(mode="json"))
        )

        rule_data = step.run("find-matching-rule", lambda: self._find_rule(data.subscription_id, analysis))
        rule = FixRule.model_validate(rule_data) if rule_data else None

        if rule is not None and rule.skip_fix:
            step.run("mark-skipped", lambda: self._mark_skipped(fix_id, analysis, rule))
            logger.info("fix %s skipped by rule %s", fix_id, rule.id)
            return {"success": True, "action": "skipped", "reason": "Matched skip rule", "rule_id": rule.id}

        step.run("save-analysis", lambda: self._save_analysis(fix_id, analysis, rule))

        repo = str(sub_info["github_repo_full_name"])
        prompt = build_fix_prompt(analysis, repo, rule.custom_prompt if rule else None)
        task_id = step.run(
            "create-fix-task",
            lambda: self._create_fix_task(fix_id, sub_info, analysis, prompt, rule),
        )
        return {
            "success": True,
            "action": "fixing",
            "task_id": task_id,
            "analysis": analysis.model_dump(mode="json"),
        }

    def _mark_analyzing(self, fix_id: str) -> str:
        d = self.s.deployments.transition(fix_id, FixStatus.analyzing, started_at=utcnow_iso())
        return d.fix_status.value

    def _get_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        info = self.s.subscriptions.get_with_integration(subscription_id)
        if info is None:
            return None
        sub = info.subscription
        # Secrets stay out of persisted step output; steps that need them decrypt on use.
        return {
            "subscription_id": sub.id,
            "integration_id": info.integration.id,
            "user_id": sub.user_id,
            "github_repo_full_name": sub.github_repo_full_name,
            "team_id": sub.team_id or info.integration.team_id,
            "fix_branch_prefix": sub.fix_branch_prefix,
        }

    def _fetch_logs(self, subscription_id: str, platform_deployment_id: str) -> str:
        info = self.s.subscriptions.get_with_integration(subscription_id)
        if info is None:
            raise LookupError(SUBSCRIPTION_NOT_FOUND)
        token = self.s.require_secrets().decrypt(info.integration.access_token)
        team_id = info.subscription.team_id or info.integration.team_id
        client = self.s.vercel_client(token, team_id)
        return client.get_build_logs(platform_deployment_id)

    def _save_logs(self, fix_id: str, logs: str) -> int:
        cap = self.s.settings.max_persisted_log_chars
        stored = logs[-cap:] if cap > 0 and len(logs) > cap else logs
        self.s.deployments.transition(fix_id, FixStatus.analyzing, logs=stored)
        return len(stored)

    def _find_rule(self, subscription_id: str, analysis: BuildLogAnalysis) -> Optional[Dict[str, Any]]:
        rule = self.s.matcher.match(subscription_id, analysis)
        return rule.model_dump(mode="json") if rule else None

    def _mark_skipped(self, fix_id: str, analysis: BuildLogAnalysis, rule: FixRule) -> str:
        d = self.s.deployments.transition(
            fix_id,
            FixStatus.skipped,
            matched_rule_id=rule.id,
            completed_at=utcnow_iso(),
            **_classification(analysis),
        )
        return d.fix_status.value

    def _save_analysis(self, fix_id: str, analysis: BuildLogAnalysis, rule: FixRule | None) -> str:
        d = self.s.deployments.transition(
            fix_id,
            FixStatus.analyzing,
            matched_rule_id=rule.id if rule else None,
            **_classification(analysis),
        )
        return d.fix_status.value

    def _create_fix_task(
        self,
        fix_id: str,
        sub_info: Dict[str, Any],
        analysis: BuildLogAnalysis,
        prompt: str,
        rule: FixRule | None,
    ) -> str:
        d = self.s.deployments.require(fix_id)
        repo = str(sub_info["github_repo_full_name"])
        branch_name = f"{sub_info.get('fix_branch_prefix') or 'fix/deployment-'}{fix_id[:8]}"
        if d.fix_attempt_number:
            branch_name += f"-{d.fix_attempt_number}"
        task_id = self.s.runner.create_task(
            prompt=prompt,
            repo_url=f"https://github.com/{repo}",
            provider=self.s.settings.agent_provider,
            metadata={
                "type": "deployment-fix",
                "deployment_id": fix_id,
                "platform_deployment_id": d.platform_deployment_id,
                "error_type": analysis.error_type.value,
                "matched_rule_id": rule.id if rule else None,
                "branch_name": branch_name,
            },
            user_id=str(sub_info["user_id"]),
            title=f"Fix deployment error: {analysis.error_type.value}",
            idempotency_key=fix_task_key(fix_id, d.fix_attempt_number),
        )
        self.s.deployments.transition(
            fix_id,
            FixStatus.fixing,
            task_id=task_id,
            fix_branch_name=branch_name,
            error_message=analysis.error_message,
        )
        return task_id

    def function_def(self) -> FunctionDef:
        return FunctionDef(
            id=FUNCTION_ID,
            event=DEPLOYMENT_FAILURE_RECEIVED,
            handler=self.handle,
            concurrency=self.s.settings.fix_concurrency,
            on_step_error=self.on_step_error,
            on_failure=self.on_failure,
        )
