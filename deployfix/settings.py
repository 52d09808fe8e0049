from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="DEPLOYFIX_", extra="ignore")

    # Persistence (SQLite). Mount `var/` to persist across restarts.
    db_path: str = "var/deployfix.sqlite3"
    audit_log_path: str = "var/audit/deployfix_audit.jsonl"
    log_level: str = "INFO"

    # Fernet key used to encrypt webhook secrets + provider access tokens at rest.
    # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"
    encryption_key: str | None = None

    # GitHub (PR creation + pull_request webhooks)
    github_mode: str = "mock"  # mock|real
    github_token: str | None = None
    github_api_base: str = "https://api.github.com"
    github_webhook_secret: str | None = None
    mock_github_dir: str = ".mock_github"
    public_base_url: str = "http://localhost:8088"
    default_base_branch: str = "main"

    # Vercel REST API (build log fetch)
    vercel_api_base: str = "https://api.vercel.com"
    http_timeout_s: float = 20.0

    # Coding agent provider recorded on every task row.
    agent_provider: str = "opencode"
    # Shared secret the agent processor signs completion callbacks with
    # (`x-deployfix-signature: sha256=<hex HMAC-SHA256 of the raw body>`).
    agent_callback_secret: str | None = None

    # Orchestration idempotency window (webhook delivery id -> at most one run).
    idempotency_ttl_s: float = 24 * 3600.0

    # Step retry policy: attempts per step, exponential backoff between attempts.
    step_max_attempts: int = 3
    step_backoff_base_s: float = 1.0
    step_backoff_max_s: float = 30.0

    # Per-function concurrency limits (bounds load on external APIs).
    fix_concurrency: int = 10
    create_pr_concurrency: int = 10
    review_concurrency: int = 5

    # Worker loop
    worker_enabled: bool = True
    worker_poll_interval_s: float = 0.5
    # A claimed event whose lease expires is considered abandoned (crashed worker) and is re-claimed;
    # completed steps are replayed from the steps table instead of re-running.
    event_lease_s: float = 900.0

    # Records stuck in `analyzing` longer than this with no live run are marked failed.
    stale_analyzing_after_s: float = 1800.0
    reconcile_interval_s: float = 60.0

    # Rule errorPattern semantics: regex|substring
    rule_match_mode: str = "regex"

    # Cap on raw build logs persisted onto the fix record (keeps the tail).
    max_persisted_log_chars: int = 200_000
