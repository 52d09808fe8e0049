from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from deployfix.engine.queue import EventQueue, Idempotency, SendResult
from deployfix.errors import DecryptionError, InvalidTransition
from deployfix.events import (
    DEPLOYMENT_FAILURE_RECEIVED,
    PR_REVIEW_REQUESTED,
    github_delivery_key,
    vercel_delivery_key,
)
from deployfix.models import DeploymentFailureReceived, FixStatus, ReviewRequested
from deployfix.security.crypto import SecretBox
from deployfix.settings import Settings
from deployfix.store.database import Database, new_id
from deployfix.store.deployments import DeploymentStore
from deployfix.store.subscriptions import SubscriptionStore
from deployfix.telemetry.audit import AuditLogger
from deployfix.webhooks.signatures import verify_github_signature, verify_vercel_signature

logger = logging.getLogger(__name__)

FAILURE_EVENT_TYPES = frozenset({"deployment.error", "deployment-error"})
# Looked up so a delivery for an unknown project reports `no_subscription` instead of `ignored`.
SUBSCRIPTION_EVENT_TYPES = FAILURE_EVENT_TYPES | {"deployment.ready"}
REVIEW_ACTIONS = frozenset({"opened", "synchronize", "reopened"})


class _VercelDeployment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    url: Optional[str] = None
    name: Optional[str] = None
    meta: Dict[str, Any] = {}


class _VercelProject(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None


class _VercelBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    deployment: Optional[_VercelDeployment] = None
    project: Optional[_VercelProject] = None


class VercelWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    payload: _VercelBody = _VercelBody()

    @property
    def deployment_id(self) -> Optional[str]:
        return self.payload.deployment.id if self.payload.deployment else None

    @property
    def project_id(self) -> Optional[str]:
        return self.payload.project.id if self.payload.project else None

    @property
    def branch(self) -> Optional[str]:
        d = self.payload.deployment
        if d is None:
            return None
        ref = d.meta.get("githubCommitRef")
        if not ref and isinstance(d.meta.get("gitSource"), dict):
            ref = d.meta["gitSource"].get("ref")
        return str(ref) if ref else None

    @property
    def deployment_url(self) -> Optional[str]:
        d = self.payload.deployment
        if d is None or not d.url:
            return None
        return d.url if d.url.startswith("http") else f"https://{d.url}"


class _DuplicateDelivery(Exception):
    pass


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: Dict[str, Any] = field(default_factory=dict)


def _ack(action: str, **extra: Any) -> WebhookResponse:
    return WebhookResponse(200, {"received": True, "action": action, **extra})


def _error(status_code: int, message: str) -> WebhookResponse:
    return WebhookResponse(status_code, {"error": message})


def _obj(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def _pr_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        n = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    return n if n > 0 else None


class WebhookIngestor:
    """
    Inbound webhook handling, independent of the HTTP framework.

    Routes pass the raw body bytes and the relevant headers; the ingestor verifies, dedups and
    enqueues, and returns the status code plus JSON body to send back.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        db: Database,
        deployments: DeploymentStore,
        subscriptions: SubscriptionStore,
        queue: EventQueue,
        secrets: SecretBox | None,
        audit: AuditLogger | None = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self.deployments = deployments
        self.subscriptions = subscriptions
        self.queue = queue
        self.secrets = secrets
        self.audit = audit

    # ---------- Vercel ----------

    def handle_vercel(self, body: bytes, signature: str | None) -> WebhookResponse:
        try:
            payload = VercelWebhookPayload.model_validate_json(body)
        except (ValidationError, ValueError):
            return _error(400, "Invalid payload")

        logger.info("vercel webhook received type=%s delivery=%s", payload.type, payload.id)
        if payload.type not in SUBSCRIPTION_EVENT_TYPES:
            return _ack("ignored")

        project_id = payload.project_id
        if not project_id:
            if payload.type in FAILURE_EVENT_TYPES:
                return _error(400, "Invalid payload")
            return _ack("no_subscription")

        sub = self.subscriptions.find_active_for_project(project_id)
        if sub is None or not sub.auto_fix_enabled:
            return _ack("no_subscription")
        if payload.type not in FAILURE_EVENT_TYPES:
            return _ack("ignored")

        deployment_id = payload.deployment_id
        if not deployment_id:
            return _error(400, "Invalid payload")

        if not sub.webhook_secret or self.secrets is None:
            logger.error("webhook secret not configured for subscription %s", sub.id)
            return _error(500, "Webhook secret not configured")
        try:
            secret = self.secrets.decrypt(sub.webhook_secret)
        except DecryptionError:
            logger.error("webhook secret for subscription %s could not be decrypted", sub.id)
            return _error(500, "Webhook secret not configured")

        if not verify_vercel_signature(body, signature, secret):
            logger.warning("invalid vercel signature for delivery %s", payload.id)
            return _error(401, "Invalid signature")

        fix_id = new_id()
        try:
            sent = self._record_and_enqueue(sub.id, project_id, deployment_id, fix_id, payload)
        except _DuplicateDelivery as e:
            logger.info("duplicate delivery %s for deployment %s (%s)", payload.id, deployment_id, e)
            return _ack("duplicate")

        if self.audit is not None:
            self.audit.write(
                fix_id,
                "webhook.received",
                {"source": "vercel", "delivery_id": payload.id, "deployment_id": deployment_id, "event_id": sent.event_id},
            )
        logger.info("fix %s queued for deployment %s", fix_id, deployment_id)
        return _ack("queued", fix_id=fix_id)

    def _record_and_enqueue(
        self,
        subscription_id: str,
        project_id: str,
        deployment_id: str,
        fix_id: str,
        payload: VercelWebhookPayload,
    ) -> SendResult:
        """
        Fix record + run event in one commit. Either dedup layer rejecting the delivery rolls
        back both, so a record never exists without the run that drives it.
        """
        with self.db.transaction() as con:
            inserted = self.deployments.insert_if_absent(
                subscription_id=subscription_id,
                platform_deployment_id=deployment_id,
                webhook_delivery_id=payload.id,
                deployment_url=payload.deployment_url,
                branch=payload.branch,
                fix_id=fix_id,
                con=con,
            )
            if inserted is None:
                raise _DuplicateDelivery("deployment already recorded")
            event = DeploymentFailureReceived(
                fix_id=fix_id,
                subscription_id=subscription_id,
                deployment_id=deployment_id,
                project_id=project_id,
                webhook_delivery_id=payload.id,
            )
            sent = self.queue.send(
                DEPLOYMENT_FAILURE_RECEIVED,
                event.model_dump(),
                idempotency=Idempotency(vercel_delivery_key(payload.id), self.settings.idempotency_ttl_s),
                con=con,
            )
            if sent.duplicate:
                raise _DuplicateDelivery(f"delivery already started event {sent.event_id}")
        return sent

    # ---------- GitHub ----------

    def handle_github(
        self,
        body: bytes,
        signature: str | None,
        *,
        event_name: str | None,
        delivery_id: str | None,
    ) -> WebhookResponse:
        secret = self.settings.github_webhook_secret
        if not secret:
            return _error(500, "GitHub webhook secret not configured")
        if not verify_github_signature(body, signature, secret):
            return _error(401, "Invalid signature")
        try:
            payload = json.loads(body)
        except ValueError:
            return _error(400, "Invalid JSON")
        if not isinstance(payload, dict) or event_name != "pull_request":
            return _ack("ignored")

        action = payload.get("action")
        pr = payload.get("pull_request") or {}
        repo = payload.get("repository") or {}
        if not isinstance(pr, dict) or not isinstance(repo, dict):
            return _ack("ignored")

        if action == "closed" and pr.get("merged"):
            return self._mark_merged(repo, pr)
        if action not in REVIEW_ACTIONS:
            return _ack("ignored")

        repo_url = str(repo.get("html_url") or "")
        installation = self.subscriptions.find_review_installation(repo_url)
        if installation is None:
            return _ack("ignored")
        if pr.get("draft") and not installation.review_on_draft:
            return _ack("ignored", reason="draft")

        pr_number = _pr_number(pr.get("number"))
        if pr_number is None:
            return _ack("ignored", reason="malformed pull_request")
        head = _obj(pr.get("head"))
        base = _obj(pr.get("base"))
        event = ReviewRequested(
            installation_id=installation.id,
            user_id=installation.user_id,
            repo_url=repo_url,
            pr_number=pr_number,
            pr_title=str(pr.get("title") or ""),
            pr_author=_text(_obj(pr.get("user")).get("login")),
            head_sha=_text(head.get("sha")),
            base_branch=_text(base.get("ref")),
            head_branch=_text(head.get("ref")),
        )
        idem = Idempotency(github_delivery_key(delivery_id), self.settings.idempotency_ttl_s) if delivery_id else None
        sent = self.queue.send(PR_REVIEW_REQUESTED, event.model_dump(), idempotency=idem)
        if sent.duplicate:
            return _ack("duplicate")
        logger.info("review queued for %s#%s", repo_url, event.pr_number)
        return _ack("review_queued", event_id=sent.event_id)

    def _mark_merged(self, repo: Dict[str, Any], pr: Dict[str, Any]) -> WebhookResponse:
        full_name = str(repo.get("full_name") or "")
        branch = _text(_obj(pr.get("head")).get("ref")) or ""
        if not full_name or not branch:
            return _ack("ignored")
        merged = []
        for d in self.deployments.find_by_fix_branch(repo_full_name=full_name, branch_name=branch):
            if d.fix_status != FixStatus.pr_created:
                continue
            try:
                self.deployments.transition(d.id, FixStatus.merged)
            except InvalidTransition as e:
                logger.info("skip merge mark: %s", e)
                continue
            merged.append(d.id)
        if not merged:
            return _ack("ignored")
        return _ack("merged", fix_ids=merged)
