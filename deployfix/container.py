from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx

from deployfix.agents.runner import AgentTaskRunner, TaskTableRunner
from deployfix.clients.vercel import VercelClient
from deployfix.engine.queue import EventQueue
from deployfix.engine.steps import RetryPolicy
from deployfix.gitops.pr_creator import PullRequestCreator, PullRequestOpener
from deployfix.gitops.review_comments import ReviewCommentPoster, ReviewCommenter
from deployfix.rules.matcher import MATCH_MODES, RuleMatcher
from deployfix.security.crypto import SecretBox
from deployfix.settings import Settings
from deployfix.store.database import Database
from deployfix.store.deployments import DeploymentStore
from deployfix.store.reviews import ReviewRuleStore, ReviewStore
from deployfix.store.rules import RuleStore
from deployfix.store.subscriptions import SubscriptionStore
from deployfix.store.tasks import TaskStore
from deployfix.telemetry.audit import AuditLogger

logger = logging.getLogger(__name__)

VercelClientFactory = Callable[[str, Optional[str]], Any]


@dataclass
class Services:
    """
    Everything the routes and pipelines share. Built once per app (or per test).
    """

    settings: Settings
    db: Database
    audit: AuditLogger
    secrets: SecretBox | None
    deployments: DeploymentStore
    subscriptions: SubscriptionStore
    rules: RuleStore
    tasks: TaskStore
    reviews: ReviewStore
    review_rules: ReviewRuleStore
    queue: EventQueue
    matcher: RuleMatcher
    runner: AgentTaskRunner
    pr_creator: PullRequestOpener
    review_commenter: ReviewCommentPoster
    vercel_client: VercelClientFactory
    policy: RetryPolicy

    def require_secrets(self) -> SecretBox:
        if self.secrets is None:
            raise RuntimeError("DEPLOYFIX_ENCRYPTION_KEY is not configured")
        return self.secrets


def build_services(
    settings: Settings | None = None,
    *,
    runner: AgentTaskRunner | None = None,
    pr_creator: PullRequestOpener | None = None,
    review_commenter: ReviewCommentPoster | None = None,
    vercel_client: VercelClientFactory | None = None,
    http_transport: httpx.BaseTransport | None = None,
    queue_clock: Callable[[], float] | None = None,
) -> Services:
    s = settings or Settings()
    if s.rule_match_mode not in MATCH_MODES:
        raise ValueError(f"DEPLOYFIX_RULE_MATCH_MODE must be one of {MATCH_MODES}, got {s.rule_match_mode!r}")
    if s.github_mode not in ("mock", "real"):
        raise ValueError(f"DEPLOYFIX_GITHUB_MODE must be mock or real, got {s.github_mode!r}")

    db = Database(db_path=s.db_path)
    audit = AuditLogger(s.audit_log_path)
    secrets = SecretBox(s.encryption_key) if s.encryption_key else None
    if secrets is None:
        logger.warning("DEPLOYFIX_ENCRYPTION_KEY not set; stored secrets cannot be decrypted")

    tasks = TaskStore(db)
    rules = RuleStore(db)

    def _vercel(token: str, team_id: str | None) -> VercelClient:
        return VercelClient(
            token=token,
            team_id=team_id,
            api_base=s.vercel_api_base,
            timeout_s=s.http_timeout_s,
            transport=http_transport,
        )

    return Services(
        settings=s,
        db=db,
        audit=audit,
        secrets=secrets,
        deployments=DeploymentStore(db, audit=audit),
        subscriptions=SubscriptionStore(db),
        rules=rules,
        tasks=tasks,
        reviews=ReviewStore(db),
        review_rules=ReviewRuleStore(db),
        queue=EventQueue(db, clock=queue_clock) if queue_clock else EventQueue(db),
        matcher=RuleMatcher(rules, mode=s.rule_match_mode),
        runner=runner or TaskTableRunner(tasks),
        pr_creator=pr_creator or PullRequestCreator(s, transport=http_transport),
        review_commenter=review_commenter or ReviewCommenter(s, transport=http_transport),
        vercel_client=vercel_client or _vercel,
        policy=RetryPolicy(
            max_attempts=s.step_max_attempts,
            backoff_base_s=s.step_backoff_base_s,
            backoff_max_s=s.step_backoff_max_s,
        ),
    )
