from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from deployfix.container import Services
from deployfix.engine.queue import Idempotency
from deployfix.errors import Forbidden, InvalidTransition, NotFound, RetryNotAllowed
from deployfix.events import (
    DEPLOYMENT_FAILURE_RECEIVED,
    DEPLOYMENT_FIX_COMPLETED,
    REVIEW_COMPLETED,
    fix_completed_key,
    manual_retry_key,
    review_completed_key,
)
from deployfix.models import AgentTask, DeploymentFailureReceived, FixCompleted, ReviewCompleted, ReviewFinding

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryResult:
    fix_id: str
    attempt_number: int
    event_id: str


class FixService:
    """
    User- and agent-facing mutations on fix records (everything that is not a webhook).
    """

    def __init__(self, services: Services) -> None:
        self.s = services

    def retry_fix(self, fix_id: str, user_id: str) -> RetryResult:
        """
        Manual retry of a failed or skipped fix.

        Ownership is re-checked on every call by walking deployment -> subscription -> integration.
        The status reset and the new run are committed together.
        """
        d = self.s.deployments.get(fix_id)
        if d is None:
            raise NotFound(f"deployment {fix_id} not found")
        owner = self.s.subscriptions.owner_user_id(d.subscription_id)
        if owner is None:
            raise NotFound(f"deployment {fix_id} not found")
        if owner != user_id:
            raise Forbidden(f"user {user_id} does not own deployment {fix_id}")

        sub = self.s.subscriptions.get(d.subscription_id)
        max_attempts = sub.max_fix_attempts if sub else 3

        with self.s.db.transaction() as con:
            try:
                attempt = self.s.deployments.reset_for_retry(con, fix_id, max_attempts=max_attempts)
            except InvalidTransition as e:
                raise RetryNotAllowed(f"cannot retry a fix in status {e.current}") from e
            event = DeploymentFailureReceived(
                fix_id=fix_id,
                subscription_id=d.subscription_id,
                deployment_id=d.platform_deployment_id,
                webhook_delivery_id=d.webhook_delivery_id,
            )
            sent = self.s.queue.send(
                DEPLOYMENT_FAILURE_RECEIVED,
                event.model_dump(),
                idempotency=Idempotency(manual_retry_key(fix_id, attempt), self.s.settings.idempotency_ttl_s),
                con=con,
            )
        self.s.audit.write(fix_id, "fix.retry", {"attempt": attempt, "user_id": user_id, "event_id": sent.event_id})
        logger.info("fix %s retry #%d queued", fix_id, attempt)
        return RetryResult(fix_id=fix_id, attempt_number=attempt, event_id=sent.event_id)

    def complete_task(
        self,
        task_id: str,
        *,
        success: bool,
        branch_name: Optional[str] = None,
        summary: Optional[str] = None,
        details: Optional[str] = None,
        pr_url: Optional[str] = None,
        pr_number: Optional[int] = None,
        error: Optional[str] = None,
        findings: Optional[List[ReviewFinding]] = None,
        score: Optional[int] = None,
    ) -> AgentTask:
        """
        Agent completion callback. Deployment-fix tasks emit `deployment-fix/completed` and
        pr-review tasks emit `review/completed`; other task types only update the task row.
        """
        task = self.s.tasks.complete(task_id, success=success, branch_name=branch_name, pr_url=pr_url, error=error)
        kind = task.metadata.get("type")
        if kind == "pr-review" and task.metadata.get("review_id"):
            review_id = str(task.metadata["review_id"])
            review = ReviewCompleted(
                review_id=review_id,
                task_id=task_id,
                success=success,
                summary=summary,
                findings=findings or [],
                score=score,
                error=error,
            )
            self.s.queue.send(
                REVIEW_COMPLETED,
                review.model_dump(mode="json"),
                idempotency=Idempotency(review_completed_key(review_id, task_id), self.s.settings.idempotency_ttl_s),
            )
            return task

        deployment_id = task.metadata.get("deployment_id") if kind == "deployment-fix" else None
        if not deployment_id:
            return task

        event = FixCompleted(
            deployment_id=str(deployment_id),
            task_id=task_id,
            success=success,
            branch_name=branch_name or task.metadata.get("branch_name"),
            summary=summary,
            details=details,
            pr_url=pr_url,
            pr_number=pr_number,
            error=error,
        )
        self.s.queue.send(
            DEPLOYMENT_FIX_COMPLETED,
            event.model_dump(),
            idempotency=Idempotency(fix_completed_key(str(deployment_id), task_id), self.s.settings.idempotency_ttl_s),
        )
        return task
