"""
deployfix: webhook-driven auto-fix orchestration for failing deployments.

Pieces:
- webhook verification + ingestion (Vercel deployment events, GitHub pull requests)
- deployment fix records (dedup + lifecycle state machine)
- build log analysis + user rule matching
- durable step pipelines that dispatch coding-agent tasks and open fix PRs
"""

__version__ = "0.1.0"
