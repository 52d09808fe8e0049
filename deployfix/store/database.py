from __future__ import annotations

import json
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def to_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, default=str)


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS integrations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        provider TEXT NOT NULL DEFAULT 'vercel',
        access_token TEXT NOT NULL,
        team_id TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subscriptions (
        id TEXT PRIMARY KEY,
        integration_id TEXT NOT NULL REFERENCES integrations(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL,
        platform_project_id TEXT NOT NULL,
        project_name TEXT,
        github_repo_full_name TEXT NOT NULL,
        team_id TEXT,
        auto_fix_enabled INTEGER NOT NULL DEFAULT 1,
        max_fix_attempts INTEGER NOT NULL DEFAULT 3,
        webhook_secret TEXT,
        notify_on_fix INTEGER NOT NULL DEFAULT 1,
        fix_branch_prefix TEXT NOT NULL DEFAULT 'fix/deployment-',
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_subscriptions_project ON subscriptions(platform_project_id)",
    """
    CREATE TABLE IF NOT EXISTS fix_rules (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL REFERENCES subscriptions(id) ON DELETE CASCADE,
        name TEXT NOT NULL DEFAULT '',
        error_pattern TEXT NOT NULL DEFAULT '',
        error_type TEXT,
        skip_fix INTEGER NOT NULL DEFAULT 0,
        custom_prompt TEXT,
        priority INTEGER NOT NULL DEFAULT 0,
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_fix_rules_subscription ON fix_rules(subscription_id)",
    """
    CREATE TABLE IF NOT EXISTS deployments (
        id TEXT PRIMARY KEY,
        subscription_id TEXT NOT NULL REFERENCES subscriptions(id) ON DELETE CASCADE,
        platform_deployment_id TEXT NOT NULL UNIQUE,
        webhook_delivery_id TEXT,
        deployment_url TEXT,
        branch TEXT,
        fix_status TEXT NOT NULL DEFAULT 'pending',
        fix_attempt_number INTEGER NOT NULL DEFAULT 0,
        error_type TEXT,
        error_message TEXT,
        error_context TEXT,
        logs TEXT,
        matched_rule_id TEXT,
        task_id TEXT,
        pr_url TEXT,
        pr_number INTEGER,
        fix_branch_name TEXT,
        fix_summary TEXT,
        fix_details TEXT,
        started_at TEXT,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_deployments_subscription ON deployments(subscription_id)",
    "CREATE INDEX IF NOT EXISTS idx_deployments_status ON deployments(fix_status)",
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        prompt TEXT NOT NULL,
        title TEXT,
        repo_url TEXT,
        selected_provider TEXT NOT NULL DEFAULT 'opencode',
        status TEXT NOT NULL DEFAULT 'pending',
        idempotency_key TEXT UNIQUE,
        metadata_json TEXT NOT NULL DEFAULT '{}',
        branch_name TEXT,
        pr_url TEXT,
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS github_installations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        installation_id INTEGER,
        repo_url TEXT NOT NULL,
        auto_review_enabled INTEGER NOT NULL DEFAULT 1,
        review_on_draft INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_github_installations_repo ON github_installations(repo_url)",
    # One review per (repo, PR, head commit); head_sha is '' when GitHub did not send one.
    """
    CREATE TABLE IF NOT EXISTS reviews (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        installation_id TEXT,
        task_id TEXT,
        repo_url TEXT NOT NULL,
        pr_number INTEGER NOT NULL,
        pr_title TEXT NOT NULL DEFAULT '',
        pr_author TEXT,
        head_sha TEXT NOT NULL DEFAULT '',
        base_branch TEXT,
        head_branch TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        summary TEXT,
        findings_json TEXT NOT NULL DEFAULT '[]',
        score INTEGER,
        error TEXT,
        started_at TEXT,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (repo_url, pr_number, head_sha)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS review_rules (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        prompt TEXT NOT NULL,
        severity TEXT NOT NULL DEFAULT 'warning',
        repo_url TEXT,
        file_patterns_json TEXT NOT NULL DEFAULT '[]',
        enabled INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        UNIQUE (user_id, name)
    )
    """,
    # Durable execution: transactional outbox + idempotency keys + persisted step outputs.
    """
    CREATE TABLE IF NOT EXISTS events (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        data_json TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        attempts INTEGER NOT NULL DEFAULT 0,
        locked_until REAL,
        result_json TEXT,
        error TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_status ON events(status, name)",
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        key TEXT PRIMARY KEY,
        event_id TEXT NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS steps (
        event_id TEXT NOT NULL,
        step_name TEXT NOT NULL,
        output_json TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 1,
        completed_at TEXT NOT NULL,
        PRIMARY KEY (event_id, step_name)
    )
    """,
]


class Database:
    """
    SQLite-backed store shared by the webhook routes and the worker pool.

    Every operation opens its own connection (sqlite connections are not shared across threads).
    Read-modify-write paths go through `transaction()`, which takes the write lock up front
    (BEGIN IMMEDIATE) so concurrent workers serialize instead of failing on upgrade.
    """

    def __init__(self, *, db_path: str) -> None:
        self.db_path = db_path
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._init_db()

    def connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.db_path, timeout=10.0, isolation_level=None)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys = ON")
        return con

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        con = self.connect()
        try:
            con.execute("BEGIN IMMEDIATE")
            try:
                yield con
            except BaseException:
                con.execute("ROLLBACK")
                raise
            con.execute("COMMIT")
        finally:
            con.close()

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        con = self.connect()
        try:
            yield con
        finally:
            con.close()

    def _init_db(self) -> None:
        # WAL lets webhook reads proceed while a worker holds the write lock.
        with self.reader() as con:
            con.execute("PRAGMA journal_mode = WAL")
        with self.transaction() as con:
            for ddl in _SCHEMA:
                con.execute(ddl)
