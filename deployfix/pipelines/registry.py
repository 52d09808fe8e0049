from __future__ import annotations

from typing import Callable, List

from deployfix.container import Services
from deployfix.engine.worker import FunctionDef, PeriodicJob, Worker
from deployfix.pipelines.create_fix_pr import CreateFixPrPipeline
from deployfix.pipelines.deployment_failure import DeploymentFailurePipeline
from deployfix.pipelines.fix_completed import FixCompletedPipeline
from deployfix.pipelines.reconcile import StaleFixReconciler
from deployfix.pipelines.review import PullRequestReviewPipeline
from deployfix.pipelines.review_comments import PostReviewCommentsPipeline
from deployfix.pipelines.review_completed import ReviewCompletedPipeline


def build_functions(services: Services) -> List[FunctionDef]:
    return [
        DeploymentFailurePipeline(services).function_def(),
        FixCompletedPipeline(services).function_def(),
        CreateFixPrPipeline(services).function_def(),
        PullRequestReviewPipeline(services).function_def(),
        ReviewCompletedPipeline(services).function_def(),
        PostReviewCommentsPipeline(services).function_def(),
    ]


def build_worker(services: Services, *, sleep: Callable[[float], None] | None = None) -> Worker:
    s = services.settings
    reconciler = StaleFixReconciler(services)
    kwargs = {} if sleep is None else {"sleep": sleep}
    return Worker(
        db=services.db,
        queue=services.queue,
        functions=build_functions(services),
        policy=services.policy,
        poll_interval_s=s.worker_poll_interval_s,
        lease_s=s.event_lease_s,
        periodic=[PeriodicJob("reconcile-stale-fixes", s.reconcile_interval_s, reconciler.run_once)],
        **kwargs,
    )
