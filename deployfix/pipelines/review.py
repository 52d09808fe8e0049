from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from deployfix.engine.queue import QueuedEvent
from deployfix.engine.steps import StepContext
from deployfix.engine.worker import FunctionDef
from deployfix.events import PR_REVIEW_REQUESTED
from deployfix.models import ReviewRequested, ReviewRule
from deployfix.pipelines.base import ReviewPipeline
from deployfix.prompting.fix_prompt import build_review_prompt

logger = logging.getLogger(__name__)

FUNCTION_ID = "handle-pr-review"
REVIEW_EXISTS = "Review already exists"


def review_task_key(repo_url: str, pr_number: int, head_sha: str | None) -> str:
    return f"review:{repo_url}:{pr_number}:{head_sha or 'unknown'}"


class PullRequestReviewPipeline(ReviewPipeline):
    """
    One review per (repo, PR, head commit). Pushing new commits re-reviews;
    redelivering the same webhook does not.

    check-existing -> create-review (in_progress) -> fetch-rules -> create-review-task
    """

    function_id = FUNCTION_ID

    def handle(self, ev: QueuedEvent, step: StepContext) -> Dict[str, Any]:
        data = ReviewRequested.model_validate(ev.data)

        existing = step.run("check-existing", lambda: self._existing(data))
        if existing:
            logger.info("review %s already exists for %s#%d", existing, data.repo_url, data.pr_number)
            return {"skipped": True, "reason": REVIEW_EXISTS, "review_id": existing}

        review_id = step.run("create-review", lambda: self._create_review(data))
        rules = step.run("fetch-rules", lambda: self._fetch_rules(data))
        task_id = step.run(
            "create-review-task",
            lambda: self._create_task(data, review_id, [ReviewRule.model_validate(r) for r in rules]),
        )
        logger.info("review task %s for %s#%d", task_id, data.repo_url, data.pr_number)
        return {"review_id": review_id, "task_id": task_id, "pr_number": data.pr_number, "rules": len(rules)}

    def _existing(self, data: ReviewRequested) -> Optional[str]:
        r = self.s.reviews.find_existing(data.repo_url, data.pr_number, data.head_sha)
        return r.id if r else None

    def _create_review(self, data: ReviewRequested) -> str:
        review = self.s.reviews.start(
            user_id=data.user_id,
            installation_id=data.installation_id,
            repo_url=data.repo_url,
            pr_number=data.pr_number,
            head_sha=data.head_sha,
            pr_title=data.pr_title,
            pr_author=data.pr_author,
            base_branch=data.base_branch,
            head_branch=data.head_branch,
        )
        self.s.audit.write(review.id, "review.started", {"repo_url": data.repo_url, "pr_number": data.pr_number})
        return review.id

    def _fetch_rules(self, data: ReviewRequested) -> List[Dict[str, Any]]:
        return [r.model_dump(mode="json") for r in self.s.review_rules.list_enabled(data.user_id, data.repo_url)]

    def _create_task(self, data: ReviewRequested, review_id: str, rules: List[ReviewRule]) -> str:
        prompt = build_review_prompt(
            repo_url=data.repo_url,
            pr_number=data.pr_number,
            pr_title=data.pr_title,
            head_branch=data.head_branch,
            base_branch=data.base_branch,
            rules=rules,
        )
        task_id = self.s.runner.create_task(
            prompt=prompt,
            repo_url=data.repo_url,
            provider=self.s.settings.agent_provider,
            metadata={
                "type": "pr-review",
                "review_id": review_id,
                "installation_id": data.installation_id,
                "pr_number": data.pr_number,
                "pr_author": data.pr_author,
                "head_sha": data.head_sha,
            },
            user_id=data.user_id,
            title=f"Review PR #{data.pr_number}: {data.pr_title}"[:200],
            idempotency_key=review_task_key(data.repo_url, data.pr_number, data.head_sha),
        )
        self.s.reviews.set_task(review_id, task_id)
        return task_id

    def review_id(self, ev: QueuedEvent) -> str | None:
        try:
            data = ReviewRequested.model_validate(ev.data)
        except ValueError:
            return None
        r = self.s.reviews.find_existing(data.repo_url, data.pr_number, data.head_sha)
        return r.id if r else None

    def function_def(self) -> FunctionDef:
        return FunctionDef(
            id=FUNCTION_ID,
            event=PR_REVIEW_REQUESTED,
            handler=self.handle,
            concurrency=self.s.settings.review_concurrency,
            on_failure=self.on_failure,
        )
