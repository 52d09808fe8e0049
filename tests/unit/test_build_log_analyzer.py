from __future__ import annotations

from deployfix.analyzer.build_logs import analyze_build_logs, extract_affected_files
from deployfix.models import ErrorType


def test_typescript_error_is_classified_with_message_and_file(ts_build_log: str) -> None:
    a = analyze_build_logs(ts_build_log)
    assert a.error_type == ErrorType.type_error
    assert "error TS2322" in a.error_message
    assert "Type 'string' is not assignable" in a.error_message
    assert "src/lib/math.ts" in a.affected_files
    assert "error TS2322" in a.error_context
    assert a.confidence == 1.0


def test_dependency_error() -> None:
    logs = "\n".join(
        [
            "Installing dependencies...",
            "npm ERR! code ERESOLVE",
            "npm ERR! ERESOLVE unable to resolve dependency tree",
            "npm ERR! Could not resolve peer dependency react@^17",
        ]
    )
    a = analyze_build_logs(logs)
    assert a.error_type == ErrorType.dependency_missing
    assert a.error_message.startswith("npm ERR!")


def test_module_not_found_counts_for_dependency() -> None:
    a = analyze_build_logs("Module not found: Error: Can't resolve 'lodash' in '/vercel/path0/src'")
    assert a.error_type == ErrorType.dependency_missing
    assert a.confidence == 0.5


def test_unrecognized_logs_fall_back_to_tail() -> None:
    lines = [f"step {i} ok" for i in range(80)]
    a = analyze_build_logs("\n".join(lines))
    assert a.error_type == ErrorType.other
    assert a.error_message == "Unknown build error"
    assert a.error_context.splitlines() == lines[-50:]
    assert a.confidence == 0.3


def test_generic_error_line_without_signature() -> None:
    logs = "\n".join(["building", "something FAILED unexpectedly", "done"])
    a = analyze_build_logs(logs)
    assert a.error_type == ErrorType.other
    assert a.error_message == "something FAILED unexpectedly"


def test_context_window_is_bounded_around_signature_line() -> None:
    before = [f"pre {i}" for i in range(30)]
    after = [f"post {i}" for i in range(30)]
    logs = before + ["src/a.ts(1,1): error TS1005: ';' expected."] + after
    a = analyze_build_logs(logs)
    ctx = a.error_context.splitlines()
    assert ctx[0] == "pre 20"
    assert ctx[10].startswith("src/a.ts")
    assert len(ctx) == 30


def test_context_is_capped_in_characters() -> None:
    long_line = "x" * 1000
    logs = ["error TS1005: boom"] + [long_line] * 25
    a = analyze_build_logs(logs)
    assert len(a.error_context) <= 4000


def test_analyzer_is_total_on_garbage() -> None:
    for logs in (None, "", b"", b"\x00\xff\xfe\x01binary", ["", None], "   \n\n  "):
        a = analyze_build_logs(logs)  # type: ignore[arg-type]
        assert a.error_type in set(ErrorType)
        assert a.error_message


def test_ties_resolve_in_taxonomy_order() -> None:
    # one type-error signature and one timeout signature
    a = analyze_build_logs("Type error: bad\nETIMEDOUT")
    assert a.error_type == ErrorType.type_error


def test_affected_files_unique_ordered_limited_and_skip_node_modules() -> None:
    text = "\n".join(
        [f"src/f{i}.ts(1,1): error" for i in range(15)]
        + ["src/f0.ts again", "node_modules/react/index.js", "./app/page.tsx"]
    )
    files = extract_affected_files(text)
    assert files[0] == "src/f0.ts"
    assert len(files) == 10
    assert len(set(files)) == len(files)
    assert not any("node_modules" in f for f in files)


def test_next_build_wrapper_lines_do_not_mask_type_error() -> None:
    logs = [
        "Failed to compile.",
        "./app/page.tsx:5:7",
        "Type error: Type 'number' is not assignable to type 'string'.",
        "> Build error occurred",
        'Error: Command "npm run build" exited with 1',
    ]
    a = analyze_build_logs(logs)
    assert a.error_type == ErrorType.type_error
    assert a.error_message.startswith("Type error:")
    assert any(f.endswith("app/page.tsx") for f in a.affected_files)


def test_wrapper_lines_alone_classify_as_build() -> None:
    a = analyze_build_logs(["> Build error occurred", 'Error: Command "npm run build" exited with 1'])
    assert a.error_type == ErrorType.build
    assert a.error_message == "> Build error occurred"
