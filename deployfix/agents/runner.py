from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from deployfix.store.tasks import TaskStore

logger = logging.getLogger(__name__)


class AgentTaskRunner(Protocol):
    """
    Boundary to the coding agent. Creating a task must be idempotent on `idempotency_key`:
    the orchestrator may call it again after a crash or a retried step.
    """

    def create_task(
        self,
        *,
        prompt: str,
        repo_url: str,
        provider: str,
        metadata: Dict[str, Any],
        user_id: str,
        title: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        ...


@dataclass(frozen=True)
class TaskTableRunner:
    """
    Hands work to the agent processor by inserting a `pending` row into the tasks table.
    The processor reports back through `POST /tasks/{task_id}/complete`.
    """

    tasks: TaskStore

    def create_task(
        self,
        *,
        prompt: str,
        repo_url: str,
        provider: str,
        metadata: Dict[str, Any],
        user_id: str,
        title: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        task = self.tasks.create(
            user_id=user_id,
            prompt=prompt,
            title=title,
            repo_url=repo_url,
            selected_provider=provider,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        logger.info("agent task %s queued for %s (%s)", task.id, repo_url, provider)
        return task.id
