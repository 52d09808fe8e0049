from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from deployfix import __version__
from deployfix.container import Services, build_services
from deployfix.errors import Forbidden, InvalidTransition, NotFound, RetryNotAllowed
from deployfix.models import ReviewFinding
from deployfix.pipelines.fix_service import FixService
from deployfix.pipelines.registry import build_worker
from deployfix.settings import Settings
from deployfix.webhooks.ingest import WebhookIngestor, WebhookResponse
from deployfix.webhooks.signatures import verify_agent_callback_signature

logger = logging.getLogger(__name__)

AGENT_SIGNATURE_HEADER = "x-deployfix-signature"


class TaskCompletion(BaseModel):
    success: bool
    branch_name: Optional[str] = None
    summary: Optional[str] = None
    details: Optional[str] = None
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    error: Optional[str] = None
    # pr-review tasks only
    findings: List[ReviewFinding] = Field(default_factory=list)
    score: Optional[int] = Field(default=None, ge=0, le=100)


def _respond(r: WebhookResponse) -> JSONResponse:
    return JSONResponse(r.body, status_code=r.status_code)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """
    App factory used by uvicorn (`uvicorn deployfix.service.app:create_app --factory`) and tests.

    Tests pass prebuilt `services` (fake runner / PR creator / transports) and usually disable
    the background worker, driving pipelines with `app.state.worker.drain()` instead.
    """
    svc = services or build_services(settings)
    s = svc.settings
    logging.basicConfig(
        level=getattr(logging, s.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(title="deployfix", version=__version__)
    app.state.settings = s
    app.state.services = svc
    app.state.ingestor = WebhookIngestor(
        settings=s,
        db=svc.db,
        deployments=svc.deployments,
        subscriptions=svc.subscriptions,
        queue=svc.queue,
        secrets=svc.secrets,
        audit=svc.audit,
    )
    app.state.fixes = FixService(svc)
    app.state.worker = build_worker(svc)

    @app.on_event("startup")
    def _startup() -> None:
        if s.worker_enabled:
            app.state.worker.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        if s.worker_enabled:
            app.state.worker.stop()

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "version": __version__}

    @app.post("/webhooks/vercel")
    async def vercel_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        signature = request.headers.get("x-vercel-signature") or request.headers.get("x-vercel-webhook-signature")
        return _respond(app.state.ingestor.handle_vercel(body, signature))

    @app.post("/webhooks/github")
    async def github_webhook(request: Request) -> JSONResponse:
        body = await request.body()
        return _respond(
            app.state.ingestor.handle_github(
                body,
                request.headers.get("x-hub-signature-256"),
                event_name=request.headers.get("x-github-event"),
                delivery_id=request.headers.get("x-github-delivery"),
            )
        )

    @app.post("/deployments/{fix_id}/retry")
    def retry_deployment(fix_id: str, x_user_id: Optional[str] = Header(default=None)) -> Dict[str, Any]:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        try:
            result = app.state.fixes.retry_fix(fix_id, x_user_id)
        except NotFound as e:
            raise HTTPException(status_code=404, detail="Deployment not found") from e
        except Forbidden as e:
            raise HTTPException(status_code=401, detail="Unauthorized") from e
        except (RetryNotAllowed, InvalidTransition) as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        return {
            "success": True,
            "fix_id": result.fix_id,
            "attempt_number": result.attempt_number,
            "event_id": result.event_id,
        }

    @app.post("/tasks/{task_id}/complete")
    async def complete_task(task_id: str, request: Request) -> Dict[str, Any]:
        secret = s.agent_callback_secret
        if not secret:
            raise HTTPException(status_code=500, detail="Agent callback secret not configured")
        body = await request.body()
        if not verify_agent_callback_signature(body, request.headers.get(AGENT_SIGNATURE_HEADER), secret):
            raise HTTPException(status_code=401, detail="Invalid signature")
        try:
            req = TaskCompletion.model_validate_json(body)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail="Invalid completion payload") from e
        try:
            task = app.state.fixes.complete_task(
                task_id, **req.model_dump(exclude={"findings"}), findings=req.findings
            )
        except NotFound as e:
            raise HTTPException(status_code=404, detail="Task not found") from e
        return {"ok": True, "task_id": task.id, "status": task.status}

    return app
