from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List

from deployfix.container import Services
from deployfix.errors import InvalidTransition
from deployfix.events import DEPLOYMENT_FAILURE_RECEIVED
from deployfix.models import FixStatus
from deployfix.store.database import utcnow_iso

logger = logging.getLogger(__name__)

STALE_MESSAGE = "Fix run stalled in analyzing; marked failed by reconciler"


class StaleFixReconciler:
    """
    Fails records stuck in `analyzing` with no queued or running event left to move them.

    A run that crashed and exhausted its lease is re-claimed by the worker, so this only
    fires when the run itself is gone (e.g. the event row was failed without its hook).
    """

    def __init__(self, services: Services, *, now: Callable[[], datetime] | None = None) -> None:
        self.s = services
        self._now = now or (lambda: datetime.now(timezone.utc))

    def run_once(self) -> List[str]:
        cutoff = (self._now() - timedelta(seconds=self.s.settings.stale_analyzing_after_s)).isoformat()
        failed: List[str] = []
        for d in self.s.deployments.list_in_status(FixStatus.analyzing, updated_before=cutoff):
            if self.s.queue.has_live_event(DEPLOYMENT_FAILURE_RECEIVED, field_name="fix_id", value=d.id):
                continue
            try:
                self.s.deployments.transition(
                    d.id, FixStatus.failed, error_message=d.error_message or STALE_MESSAGE, completed_at=utcnow_iso()
                )
            except InvalidTransition:
                # Moved on between the listing and the write.
                continue
            self.s.audit.write(d.id, "reconciler.failed", {"stale_since": d.updated_at})
            failed.append(d.id)
        if failed:
            logger.warning("reconciler marked %d stale fix(es) failed", len(failed))
        return failed
