from __future__ import annotations

import logging
from typing import Any, Dict

from deployfix.engine.queue import Idempotency, QueuedEvent
from deployfix.engine.steps import StepContext
from deployfix.engine.worker import FunctionDef
from deployfix.events import REVIEW_COMPLETED, REVIEW_POST_COMMENTS, review_comments_key
from deployfix.models import ReviewCommentsRequested, ReviewCompleted
from deployfix.pipelines.base import ReviewPipeline

logger = logging.getLogger(__name__)

FUNCTION_ID = "save-review-findings"


class ReviewCompletedPipeline(ReviewPipeline):
    """
    Stores the review agent's result and fans out to `review/post-comments`.
    """

    function_id = FUNCTION_ID

    def handle(self, ev: QueuedEvent, step: StepContext) -> Dict[str, Any]:
        data = ReviewCompleted.model_validate(ev.data)

        info = step.run("get-review", lambda: self._load(data.review_id))

        if not data.success:
            error = data.error or "Review agent failed"
            step.run("update-status-error", lambda: self.s.reviews.fail(data.review_id, error).status.value)
            return {"success": False, "error": error}

        step.run("save-findings", lambda: self._save(data))
        event_id = step.run("request-comments", lambda: self._request_comments(data, info))
        return {"success": True, "findings": len(data.findings), "event_id": event_id}

    def _load(self, review_id: str) -> Dict[str, Any]:
        r = self.s.reviews.require(review_id)
        return {"user_id": r.user_id, "repo_url": r.repo_url, "pr_number": r.pr_number, "head_sha": r.head_sha}

    def _save(self, data: ReviewCompleted) -> str:
        r = self.s.reviews.complete(data.review_id, summary=data.summary, findings=data.findings, score=data.score)
        self.s.audit.write(data.review_id, "review.completed", {"findings": len(data.findings), "score": data.score})
        return r.status.value

    def _request_comments(self, data: ReviewCompleted, info: Dict[str, Any]) -> str:
        request = ReviewCommentsRequested(
            review_id=data.review_id,
            user_id=str(info["user_id"]),
            repo_url=str(info["repo_url"]),
            pr_number=int(info["pr_number"]),
            head_sha=info.get("head_sha") or None,
            findings=data.findings,
        )
        sent = self.s.queue.send(
            REVIEW_POST_COMMENTS,
            request.model_dump(mode="json"),
            idempotency=Idempotency(review_comments_key(data.review_id), self.s.settings.idempotency_ttl_s),
        )
        return sent.event_id

    def function_def(self) -> FunctionDef:
        return FunctionDef(
            id=FUNCTION_ID,
            event=REVIEW_COMPLETED,
            handler=self.handle,
            concurrency=self.s.settings.review_concurrency,
            on_failure=self.on_failure,
        )
