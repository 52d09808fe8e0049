from __future__ import annotations

import logging

from deployfix.container import Services
from deployfix.engine.queue import QueuedEvent
from deployfix.errors import InvalidTransition, NotFound, StepFailed
from deployfix.models import FixStatus, ReviewStatus
from deployfix.store.database import utcnow_iso

logger = logging.getLogger(__name__)


def error_text(exc: BaseException) -> str:
    if isinstance(exc, StepFailed):
        return exc.error_message
    return str(exc) or type(exc).__name__


class RecordPipeline:
    """
    Shared failure handling for pipelines that drive one fix record.

    Subclasses set `function_id` and `record_field` (the event data key holding the fix id).
    Every failed step attempt lands on the record's error_message; a run that gives up
    marks the record failed with the last error.
    """

    function_id: str = ""
    record_field: str = "fix_id"

    def __init__(self, services: Services) -> None:
        self.s = services

    def _record_id(self, ev: QueuedEvent) -> str:
        return str(ev.data.get(self.record_field) or "")

    def mark_failed(self, fix_id: str, message: str) -> str:
        d = self.s.deployments.transition(fix_id, FixStatus.failed, error_message=message, completed_at=utcnow_iso())
        return d.fix_status.value

    def on_step_error(self, ev: QueuedEvent, step_name: str, attempt: int, exc: BaseException) -> None:
        fix_id = self._record_id(ev)
        msg = error_text(exc)
        if fix_id:
            self.s.deployments.record_error(fix_id, msg)
        self.s.audit.write(fix_id or ev.id, "step.failed", {"step": step_name, "attempt": attempt, "error": msg})

    def on_failure(self, ev: QueuedEvent, exc: BaseException) -> None:
        fix_id = self._record_id(ev)
        msg = error_text(exc)
        self.s.audit.write(fix_id or ev.id, "run.failed", {"function": self.function_id, "error": msg})
        if not fix_id:
            return
        try:
            self.mark_failed(fix_id, msg)
        except (InvalidTransition, NotFound) as e:
            logger.warning("fix %s not marked failed: %s", fix_id, e)


class ReviewPipeline:
    """
    Shared failure handling for the pull request review functions.

    A run that gives up is audited under the review id and leaves an unfinished review in `error`.
    """

    function_id: str = ""

    def __init__(self, services: Services) -> None:
        self.s = services

    def review_id(self, ev: QueuedEvent) -> str | None:
        return str(ev.data.get("review_id") or "") or None

    def on_failure(self, ev: QueuedEvent, exc: BaseException) -> None:
        review_id = self.review_id(ev)
        msg = error_text(exc)
        self.s.audit.write(review_id or ev.id, "run.failed", {"function": self.function_id, "error": msg})
        if not review_id:
            return
        review = self.s.reviews.get(review_id)
        if review is not None and review.status in (ReviewStatus.pending, ReviewStatus.in_progress):
            self.s.reviews.fail(review_id, msg)
