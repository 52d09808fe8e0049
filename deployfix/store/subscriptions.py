from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from deployfix.models import GitHubInstallation, Integration, Subscription
from deployfix.store.database import Database, new_id, utcnow_iso


@dataclass(frozen=True)
class SubscriptionWithIntegration:
    subscription: Subscription
    integration: Integration


class SubscriptionStore:
    """
    Subscriptions, their owning integrations, and GitHub review installations.

    The create_* helpers back seeding and tests; user-facing CRUD lives outside this service.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    # ---------- integrations ----------

    def create_integration(
        self,
        *,
        user_id: str,
        access_token_encrypted: str,
        team_id: str | None = None,
        provider: str = "vercel",
        integration_id: str | None = None,
    ) -> Integration:
        iid = integration_id or new_id()
        with self.db.transaction() as con:
            con.execute(
                "INSERT INTO integrations (id, user_id, provider, access_token, team_id, created_at) VALUES (?,?,?,?,?,?)",
                (iid, user_id, provider, access_token_encrypted, team_id, utcnow_iso()),
            )
        out = self.get_integration(iid)
        assert out is not None
        return out

    def get_integration(self, integration_id: str) -> Optional[Integration]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM integrations WHERE id=?", (integration_id,)).fetchone()
        return Integration.model_validate(dict(row)) if row else None

    # ---------- subscriptions ----------

    def create_subscription(
        self,
        *,
        integration_id: str,
        user_id: str,
        platform_project_id: str,
        github_repo_full_name: str,
        webhook_secret_encrypted: str | None,
        project_name: str | None = None,
        team_id: str | None = None,
        auto_fix_enabled: bool = True,
        max_fix_attempts: int = 3,
        notify_on_fix: bool = True,
        fix_branch_prefix: str = "fix/deployment-",
        enabled: bool = True,
        subscription_id: str | None = None,
    ) -> Subscription:
        sid = subscription_id or new_id()
        now = utcnow_iso()
        with self.db.transaction() as con:
            con.execute(
                """
                INSERT INTO subscriptions (
                    id, integration_id, user_id, platform_project_id, project_name, github_repo_full_name,
                    team_id, auto_fix_enabled, max_fix_attempts, webhook_secret, notify_on_fix,
                    fix_branch_prefix, enabled, created_at, updated_at
                ) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    sid,
                    integration_id,
                    user_id,
                    platform_project_id,
                    project_name,
                    github_repo_full_name,
                    team_id,
                    1 if auto_fix_enabled else 0,
                    int(max_fix_attempts),
                    webhook_secret_encrypted,
                    1 if notify_on_fix else 0,
                    fix_branch_prefix,
                    1 if enabled else 0,
                    now,
                    now,
                ),
            )
        out = self.get(sid)
        assert out is not None
        return out

    def get(self, subscription_id: str) -> Optional[Subscription]:
        with self.db.reader() as con:
            row = con.execute("SELECT * FROM subscriptions WHERE id=?", (subscription_id,)).fetchone()
        return Subscription.model_validate(dict(row)) if row else None

    def find_active_for_project(self, platform_project_id: str) -> Optional[Subscription]:
        with self.db.reader() as con:
            row = con.execute(
                "SELECT * FROM subscriptions WHERE platform_project_id=? AND enabled=1 ORDER BY created_at ASC LIMIT 1",
                (platform_project_id,),
            ).fetchone()
        return Subscription.model_validate(dict(row)) if row else None

    def get_with_integration(self, subscription_id: str) -> Optional[SubscriptionWithIntegration]:
        sub = self.get(subscription_id)
        if sub is None:
            return None
        integ = self.get_integration(sub.integration_id)
        if integ is None:
            return None
        return SubscriptionWithIntegration(subscription=sub, integration=integ)

    def owner_user_id(self, subscription_id: str) -> Optional[str]:
        """
        Walk subscription -> integration -> user. The integration's owner is authoritative.
        """
        with self.db.reader() as con:
            row = con.execute(
                """
                SELECT i.user_id AS user_id FROM subscriptions s
                JOIN integrations i ON i.id = s.integration_id
                WHERE s.id=?
                """,
                (subscription_id,),
            ).fetchone()
        return str(row["user_id"]) if row else None

    # ---------- GitHub review installations ----------

    def create_github_installation(
        self,
        *,
        user_id: str,
        repo_url: str,
        installation_id: int | None = None,
        auto_review_enabled: bool = True,
        review_on_draft: bool = False,
    ) -> GitHubInstallation:
        gid = new_id()
        with self.db.transaction() as con:
            con.execute(
                """
                INSERT INTO github_installations (
                    id, user_id, installation_id, repo_url, auto_review_enabled, review_on_draft, created_at
                ) VALUES (?,?,?,?,?,?,?)
                """,
                (gid, user_id, installation_id, repo_url, 1 if auto_review_enabled else 0, 1 if review_on_draft else 0, utcnow_iso()),
            )
        return GitHubInstallation(
            id=gid,
            user_id=user_id,
            installation_id=installation_id,
            repo_url=repo_url,
            auto_review_enabled=auto_review_enabled,
            review_on_draft=review_on_draft,
        )

    def find_review_installation(self, repo_url: str) -> Optional[GitHubInstallation]:
        with self.db.reader() as con:
            row = con.execute(
                "SELECT * FROM github_installations WHERE repo_url=? AND auto_review_enabled=1 LIMIT 1",
                (repo_url,),
            ).fetchone()
        if not row:
            return None
        d = dict(row)
        d.pop("created_at", None)
        return GitHubInstallation.model_validate(d)

