from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class FixStatus(str, Enum):
    pending = "pending"
    analyzing = "analyzing"
    fixing = "fixing"
    reviewing = "reviewing"
    pr_created = "pr_created"
    merged = "merged"
    failed = "failed"
    skipped = "skipped"


TERMINAL_STATUSES = frozenset({FixStatus.pr_created, FixStatus.merged, FixStatus.failed, FixStatus.skipped})
RETRYABLE_STATUSES = frozenset({FixStatus.failed, FixStatus.skipped})


class ErrorType(str, Enum):
    # Declaration order doubles as the tie-break order for the build log analyzer.
    type_error = "type-error"
    dependency_missing = "dependency-missing"
    test_failure = "test-failure"
    lint_failure = "lint-failure"
    timeout = "timeout"
    config = "config"
    runtime = "runtime"
    build = "build"
    other = "other"


class Integration(BaseModel):
    id: str
    user_id: str
    provider: str = "vercel"
    access_token: str = Field(..., description="Fernet ciphertext; decrypt per use.")
    team_id: Optional[str] = None
    created_at: Optional[datetime] = None


class Subscription(BaseModel):
    """
    A monitored deployment-provider project bound to a GitHub repository.
    """

    id: str
    integration_id: str
    user_id: str
    platform_project_id: str
    project_name: Optional[str] = None
    github_repo_full_name: str
    team_id: Optional[str] = None
    auto_fix_enabled: bool = True
    max_fix_attempts: int = 3
    webhook_secret: Optional[str] = Field(default=None, description="Fernet ciphertext.")
    notify_on_fix: bool = True
    fix_branch_prefix: str = "fix/deployment-"
    enabled: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class FixRule(BaseModel):
    id: str
    subscription_id: str
    name: str = ""
    error_pattern: str = ""
    error_type: Optional[ErrorType] = None
    skip_fix: bool = False
    custom_prompt: Optional[str] = None
    priority: int = 0
    enabled: bool = True
    created_at: Optional[datetime] = None


class Deployment(BaseModel):
    """
    Fix record: the persisted state machine instance for one failure-to-fix workflow.
    """

    id: str
    subscription_id: str
    platform_deployment_id: str
    webhook_delivery_id: Optional[str] = None
    deployment_url: Optional[str] = None
    branch: Optional[str] = None
    fix_status: FixStatus = FixStatus.pending
    fix_attempt_number: int = 0

    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    error_context: Optional[str] = None
    logs: Optional[str] = None
    matched_rule_id: Optional[str] = None
    task_id: Optional[str] = None

    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    fix_branch_name: Optional[str] = None
    fix_summary: Optional[str] = None
    fix_details: Optional[str] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AgentTask(BaseModel):
    id: str
    user_id: str
    prompt: str
    title: Optional[str] = None
    repo_url: Optional[str] = None
    selected_provider: str = "opencode"
    status: Literal["pending", "processing", "completed", "error"] = "pending"
    idempotency_key: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    branch_name: Optional[str] = None
    pr_url: Optional[str] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class GitHubInstallation(BaseModel):
    id: str
    user_id: str
    installation_id: Optional[int] = None
    repo_url: str
    auto_review_enabled: bool = True
    review_on_draft: bool = False


class ReviewStatus(str, Enum):
    pending = "pending"
    in_progress = "in_progress"
    completed = "completed"
    error = "error"


Severity = Literal["error", "warning", "info"]


class ReviewFinding(BaseModel):
    file: Optional[str] = None
    line: Optional[int] = Field(default=None, ge=1)
    severity: Severity = "info"
    message: str
    suggestion: Optional[str] = None


class ReviewRule(BaseModel):
    """
    User-defined instruction applied to every review of the user's repositories
    (or of one repository when `repo_url` is set).
    """

    id: str
    user_id: str
    name: str
    description: Optional[str] = None
    prompt: str
    severity: Severity = "warning"
    repo_url: Optional[str] = None
    file_patterns: List[str] = Field(default_factory=list)
    enabled: bool = True
    created_at: Optional[datetime] = None


class Review(BaseModel):
    id: str
    user_id: str
    installation_id: Optional[str] = None
    task_id: Optional[str] = None
    repo_url: str
    pr_number: int
    pr_title: str = ""
    pr_author: Optional[str] = None
    head_sha: str = ""
    base_branch: Optional[str] = None
    head_branch: Optional[str] = None
    status: ReviewStatus = ReviewStatus.pending
    summary: Optional[str] = None
    findings: List[ReviewFinding] = Field(default_factory=list)
    score: Optional[int] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None



class BuildLogAnalysis(BaseModel):
    error_type: ErrorType = ErrorType.other
    error_message: str = "Unknown build error"
    error_context: str = ""
    affected_files: List[str] = Field(default_factory=list)
    confidence: float = 0.3


class PullRequestResult(BaseModel):
    mode: Literal["mock", "real"]
    pr_number: int
    pr_title: str
    pr_url: str
    branch_name: str


class PRCreateResult(BaseModel):
    success: bool
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    error: Optional[str] = None


# ---------- Events carried by the durable queue ----------


class DeploymentFailureReceived(BaseModel):
    fix_id: str
    subscription_id: str
    deployment_id: str
    project_id: Optional[str] = None
    webhook_delivery_id: Optional[str] = None


class CreateFixPrRequested(BaseModel):
    deployment_id: str
    repo_full_name: str
    branch_name: str
    fix_summary: str
    fix_details: str = ""
    base_branch: Optional[str] = None
    # Analyzer message, restored on the record once the PR is open.
    error_message: Optional[str] = None


class FixCompleted(BaseModel):
    deployment_id: str
    task_id: str
    success: bool
    branch_name: Optional[str] = None
    summary: Optional[str] = None
    details: Optional[str] = None
    pr_url: Optional[str] = None
    pr_number: Optional[int] = None
    error: Optional[str] = None


class ReviewRequested(BaseModel):
    installation_id: str
    user_id: str
    repo_url: str
    pr_number: int
    pr_title: str = ""
    pr_author: Optional[str] = None
    head_sha: Optional[str] = None
    base_branch: Optional[str] = None
    head_branch: Optional[str] = None


class ReviewCompleted(BaseModel):
    review_id: str
    task_id: str
    success: bool
    summary: Optional[str] = None
    findings: List[ReviewFinding] = Field(default_factory=list)
    score: Optional[int] = None
    error: Optional[str] = None


class ReviewCommentsRequested(BaseModel):
    review_id: str
    user_id: str
    repo_url: str
    pr_number: int
    head_sha: Optional[str] = None
    findings: List[ReviewFinding] = Field(default_factory=list)



class WebhookAck(BaseModel):
    model_config = ConfigDict(extra="allow")

    received: bool = True
    action: str
    fix_id: Optional[str] = None
