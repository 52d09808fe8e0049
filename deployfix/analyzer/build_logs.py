from __future__ import annotations

import re
from typing import Dict, List, Sequence, Tuple, Union

from deployfix.models import BuildLogAnalysis, ErrorType


# Known failure signatures per error type. More matched signatures => stronger classification.
ERROR_PATTERNS: Dict[ErrorType, List[re.Pattern[str]]] = {
    ErrorType.type_error: [
        re.compile(r"error TS\d+:"),
        re.compile(r"Type error:"),
        re.compile(r"Cannot find name '"),
        re.compile(r"Property '.*' does not exist"),
        re.compile(r"Type '.*' is not assignable"),
        re.compile(r"Argument of type '.*' is not assignable"),
    ],
    ErrorType.dependency_missing: [
        re.compile(r"npm ERR! "),
        re.compile(r"ERESOLVE"),
        re.compile(r"peer dep", re.IGNORECASE),
        re.compile(r"Cannot find module '"),
        re.compile(r"Module not found:"),
        re.compile(r"Package '.*' not found"),
        re.compile(r"No matching version found"),
        re.compile(r"ERR_PNPM_\w+"),
        re.compile(r"ModuleNotFoundError:"),
    ],
    ErrorType.test_failure: [
        re.compile(r"Tests?:\s+\d+ failed"),
        re.compile(r"^\s*FAIL\s+\S+\.(?:test|spec)\.\w+", re.MULTILINE),
        re.compile(r"AssertionError"),
        re.compile(r"\d+ failing\b"),
        re.compile(r"=+ \d+ failed"),
    ],
    ErrorType.lint_failure: [
        re.compile(r"\d+ problems? \(\d+ errors?"),
        re.compile(r"ESLint", re.IGNORECASE),
        re.compile(r"Lint errors? found", re.IGNORECASE),
        re.compile(r"Parsing error:"),
        re.compile(r"prettier.*(?:check|formatting)", re.IGNORECASE),
    ],
    ErrorType.timeout: [
        re.compile(r"timed out", re.IGNORECASE),
        re.compile(r"Build exceeded maximum duration"),
        re.compile(r"ETIMEDOUT"),
        re.compile(r"deadline exceeded", re.IGNORECASE),
    ],
    ErrorType.config: [
        re.compile(r"next\.config\.(?:js|mjs|ts)"),
        re.compile(r"Invalid configuration"),
        re.compile(r"Config error", re.IGNORECASE),
        re.compile(r"Environment variable .* (?:is )?(?:missing|not set|not defined)", re.IGNORECASE),
    ],
    ErrorType.runtime: [
        re.compile(r"ReferenceError:"),
        re.compile(r"TypeError: Cannot read"),
        re.compile(r"Uncaught Error:"),
        re.compile(r"ENOENT:"),
    ],
    ErrorType.build: [
        re.compile(r"Build error", re.IGNORECASE),
        re.compile(r"Failed to compile"),
        re.compile(r"Webpack error", re.IGNORECASE),
        re.compile(r"Transform failed"),
        re.compile(r"Command \".*\" exited with \d+"),
    ],
    ErrorType.other: [],
}

_ERROR_LINE_RE = re.compile(r"error|failed|fatal", re.IGNORECASE)
_FILE_RE = re.compile(r"(?:at\s+)?['\"(]?((?:\.{0,2}/)?[\w@.\-]+(?:/[\w@.\-\[\]]+)*\.(?:tsx?|jsx?|mjs|cjs|json|py|css|scss))\b")

CONTEXT_BEFORE = 10
CONTEXT_AFTER = 20
FALLBACK_TAIL_LINES = 50
MAX_CONTEXT_CHARS = 4000
MAX_AFFECTED_FILES = 10

LogsInput = Union[str, bytes, Sequence[str], None]


def _to_lines(logs: LogsInput) -> List[str]:
    if logs is None:
        return []
    if isinstance(logs, bytes):
        logs = logs.decode("utf-8", errors="replace")
    if isinstance(logs, str):
        text = logs
    else:
        text = "\n".join("" if ln is None else str(ln) for ln in logs)
    # NULs and other control bytes from binary output would otherwise leak into prompts.
    text = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", text)
    return text.splitlines()


# Wrapper lines (next build, webpack, npm scripts) that surround most specific failures.
_GENERIC_TYPES = (ErrorType.build,)


def _classify(text: str) -> Tuple[ErrorType, int]:
    best = ErrorType.other
    best_matches = 0
    for et, patterns in ERROR_PATTERNS.items():
        if et is ErrorType.other or et in _GENERIC_TYPES:
            continue
        matches = sum(1 for p in patterns if p.search(text))
        # Strictly greater: ties keep the earlier type in taxonomy order.
        if matches > best_matches:
            best, best_matches = et, matches
    if best_matches:
        return best, best_matches
    for et in _GENERIC_TYPES:
        matches = sum(1 for p in ERROR_PATTERNS[et] if p.search(text))
        if matches > best_matches:
            best, best_matches = et, matches
    return best, best_matches


def _signature_line(lines: List[str], error_type: ErrorType) -> int | None:
    for i, ln in enumerate(lines):
        if any(p.search(ln) for p in ERROR_PATTERNS[error_type]):
            return i
    return None


def _first_error_line(lines: List[str]) -> int | None:
    for i, ln in enumerate(lines):
        if _ERROR_LINE_RE.search(ln):
            return i
    return None


def _bounded(text: str) -> str:
    if len(text) <= MAX_CONTEXT_CHARS:
        return text
    # Keep the tail: the failing command's final output is usually at the end.
    return text[-MAX_CONTEXT_CHARS:]


def extract_affected_files(text: str, *, limit: int = MAX_AFFECTED_FILES) -> List[str]:
    seen: Dict[str, None] = {}
    for m in _FILE_RE.finditer(text):
        path = m.group(1)
        if path.startswith("node_modules/") or "/node_modules/" in path:
            continue
        if path not in seen:
            seen[path] = None
        if len(seen) >= limit:
            break
    return list(seen)


def analyze_build_logs(logs: LogsInput) -> BuildLogAnalysis:
    """
    Classify raw build logs into an error type + bounded excerpt + affected files.

    Deterministic and total: anything unrecognizable (empty, binary, no error marker)
    classifies as `other` with the log tail as context.
    """
    lines = _to_lines(logs)
    if not any(ln.strip() for ln in lines):
        return BuildLogAnalysis(error_context="", confidence=0.3)

    text = "\n".join(lines)
    error_type, matches = _classify(text)

    anchor = _signature_line(lines, error_type) if matches else None
    if anchor is None:
        anchor = _first_error_line(lines)

    if anchor is None:
        context = "\n".join(lines[-FALLBACK_TAIL_LINES:])
        message = "Unknown build error"
    else:
        start = max(0, anchor - CONTEXT_BEFORE)
        end = min(len(lines), anchor + CONTEXT_AFTER)
        context = "\n".join(lines[start:end])
        message = lines[anchor].strip() or "Unknown build error"

    context = _bounded(context)
    return BuildLogAnalysis(
        error_type=error_type,
        error_message=message,
        error_context=context,
        affected_files=extract_affected_files(context),
        confidence=min(matches / 2, 1.0) if matches > 0 else 0.3,
    )
