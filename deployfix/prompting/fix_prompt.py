from __future__ import annotations

from typing import Optional, Sequence

from deployfix.models import BuildLogAnalysis, ReviewRule


DEFAULT_INSTRUCTIONS = [
    "Analyze the error and identify the root cause",
    "Make the minimal necessary changes to fix the error",
    "Ensure the fix doesn't break any existing functionality",
    "Create a pull request with a descriptive title and body explaining the fix",
]


def _files_block(analysis: BuildLogAnalysis) -> str:
    if not analysis.affected_files:
        return "- (none detected)"
    return "\n".join(f"- {f}" for f in analysis.affected_files)


def build_fix_prompt(analysis: BuildLogAnalysis, repo_full_name: str, custom_prompt: Optional[str] = None) -> str:
    """
    Agent prompt for a classified build failure. A rule's custom prompt replaces the default
    instructions but the error context block is always attached.
    """
    if custom_prompt:
        return f"""{custom_prompt.strip()}

## Error Context
Repository: {repo_full_name}
Error Type: {analysis.error_type.value}
Error Message: {analysis.error_message}

## Build Logs (excerpt)
```
{analysis.error_context}
```

## Affected Files
{_files_block(analysis)}"""

    steps = "\n".join(f"{i}. {s}" for i, s in enumerate(DEFAULT_INSTRUCTIONS, start=1))
    return f"""Fix the following build error in the repository {repo_full_name}.

## Error Type
{analysis.error_type.value}

## Error Message
{analysis.error_message}

## Build Logs (excerpt)
```
{analysis.error_context}
```

## Affected Files
{_files_block(analysis)}

## Instructions
{steps}"""


REVIEW_RESULT_FORMAT = """{
  "summary": "brief summary",
  "findings": [
    {
      "file": "path/to/file.ts",
      "line": 123,
      "severity": "error|warning|info",
      "message": "description of issue",
      "suggestion": "how to fix (optional)"
    }
  ],
  "score": 85
}"""


def _rules_block(rules: Sequence[ReviewRule]) -> str:
    if not rules:
        return ""
    lines = "\n".join(f"- {r.name}: {r.prompt} (severity: {r.severity})" for r in rules)
    return f"\n\n## Review Rules to apply\n{lines}"


def build_review_prompt(
    *,
    repo_url: str,
    pr_number: int,
    pr_title: str,
    head_branch: str | None,
    base_branch: str | None,
    rules: Sequence[ReviewRule] = (),
) -> str:
    return f"""Review pull request #{pr_number} in {repo_url}.

Title: {pr_title}
Branch: {head_branch or "?"} -> {base_branch or "?"}{_rules_block(rules)}

## Instructions
1. Read the diff and summarize what the change does
2. Flag bugs, security issues and missing tests, citing file and line
3. Keep feedback actionable; skip pure style nits
4. Give an overall code quality score from 0 to 100
5. Report the result as JSON in the completion callback; do not comment on the pull request yourself:
{REVIEW_RESULT_FORMAT}"""
