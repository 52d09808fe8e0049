from __future__ import annotations

import logging
from typing import Any, Dict, List

from deployfix.engine.queue import QueuedEvent
from deployfix.engine.steps import StepContext
from deployfix.engine.worker import FunctionDef
from deployfix.events import REVIEW_POST_COMMENTS
from deployfix.models import ReviewCommentsRequested, ReviewFinding
from deployfix.pipelines.base import ReviewPipeline

logger = logging.getLogger(__name__)

FUNCTION_ID = "post-review-comments"


class PostReviewCommentsPipeline(ReviewPipeline):
    """
    Posts each finding on the pull request, one step per comment so a retried run
    does not post the same finding twice.
    """

    function_id = FUNCTION_ID

    def handle(self, ev: QueuedEvent, step: StepContext) -> Dict[str, Any]:
        data = ReviewCommentsRequested.model_validate(ev.data)
        if not data.findings:
            return {"posted": 0}

        commit_sha = step.run(
            "get-pull-request",
            lambda: self.s.review_commenter.head_sha(
                repo_url=data.repo_url, pr_number=data.pr_number, fallback=data.head_sha
            ),
        )

        posted: List[Dict[str, Any]] = []
        for i, finding in enumerate(data.findings):
            posted.append(step.run(f"post-comment-{i}", lambda f=finding: self._post(data, commit_sha, f)))

        self.s.audit.write(
            data.review_id,
            "review.comments_posted",
            {"pr_number": data.pr_number, "count": len(posted), "inline": sum(1 for c in posted if c["kind"] == "review")},
        )
        logger.info("posted %d review comment(s) on %s#%d", len(posted), data.repo_url, data.pr_number)
        return {"posted": len(posted)}

    def _post(self, data: ReviewCommentsRequested, commit_sha: str | None, finding: ReviewFinding) -> Dict[str, Any]:
        return self.s.review_commenter.post_finding(
            repo_url=data.repo_url, pr_number=data.pr_number, commit_sha=commit_sha, finding=finding
        )

    def function_def(self) -> FunctionDef:
        return FunctionDef(
            id=FUNCTION_ID,
            event=REVIEW_POST_COMMENTS,
            handler=self.handle,
            concurrency=self.s.settings.review_concurrency,
            on_failure=self.on_failure,
        )
