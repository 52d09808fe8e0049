from __future__ import annotations

# Event names routed through the durable queue.
DEPLOYMENT_FAILURE_RECEIVED = "deployment-failure/received"
DEPLOYMENT_FIX_CREATE_PR = "deployment-fix/create-pr"
DEPLOYMENT_FIX_COMPLETED = "deployment-fix/completed"
PR_REVIEW_REQUESTED = "pr/review.requested"
REVIEW_COMPLETED = "review/completed"
REVIEW_POST_COMMENTS = "review/post-comments"


def vercel_delivery_key(webhook_delivery_id: str) -> str:
    return f"vercel-webhook:{webhook_delivery_id}"


def github_delivery_key(delivery_id: str) -> str:
    return f"github-webhook:{delivery_id}"


def manual_retry_key(fix_id: str, attempt_number: int) -> str:
    return f"manual-retry:{fix_id}:{attempt_number}"


def create_pr_key(deployment_id: str, task_id: str) -> str:
    return f"create-pr:{deployment_id}:{task_id}"


def fix_completed_key(deployment_id: str, task_id: str) -> str:
    return f"fix-completed:{deployment_id}:{task_id}"


def fix_task_key(fix_id: str, attempt_number: int) -> str:
    return f"deployment:{fix_id}:{attempt_number}"


def review_completed_key(review_id: str, task_id: str) -> str:
    return f"review-completed:{review_id}:{task_id}"


def review_comments_key(review_id: str) -> str:
    return f"review-comments:{review_id}"
