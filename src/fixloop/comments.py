"""Text rendered onto defects by the orchestrator."""

from __future__ import annotations

from typing import Sequence

from .memory.schema import Attempt, AttemptOutcome
from .tools.test_runner import Classification, TestResult

_OUTCOME_LABELS = {
    AttemptOutcome.AGENT_FAILED: "producer made no change",
    AttemptOutcome.TEST_FAILED: "tests failed",
    AttemptOutcome.TEST_TIMEOUT: "tests timed out",
    AttemptOutcome.SUCCEEDED: "tests passed",
}


def tail(text: str, limit: int) -> str:
    """Return the last ``limit`` characters of ``text`` with a truncation marker."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    dropped = len(text) - limit
    return f"[... {dropped} earlier characters truncated ...]\n{text[-limit:]}"


def _output_block(result: TestResult, limit: int) -> str:
    captured = tail(result.raw_output.strip(), limit)
    if not captured:
        return ""
    return f"\n\n```\n{captured}\n```"


def _short(ref: str | None) -> str:
    return (ref or "(none)")[:12]


def render_defect_body(result: TestResult, limit: int) -> str:
    """Body of a newly filed defect: which scope failed, how, and its output."""
    status = "timed out" if result.classification == Classification.TIMEOUT else "failed"
    exit_label = "none" if result.exit_code is None else str(result.exit_code)
    return (
        f"The {result.scope.value} test suite {status}.\n"
        f"Command: `{' '.join(result.command)}`\n"
        f"Exit status: {exit_label}; duration {result.duration:.1f}s."
        f"{_output_block(result, limit)}"
    )


def render_failure_comment(ordinal: int, ref: str, result: TestResult, limit: int) -> str:
    exit_label = "none" if result.exit_code is None else str(result.exit_code)
    return (
        f"Attempt {ordinal}: the full test suite failed at {_short(ref)} (exit {exit_label}). "
        f"The defect stays open."
        f"{_output_block(result, limit)}"
    )


def render_timeout_comment(ordinal: int, ref: str, result: TestResult) -> str:
    return (
        f"Attempt {ordinal}: the full test suite timed out at {_short(ref)} after {result.duration:.1f}s. "
        "A timeout only shows that the run did not finish (hang or exhausted environment); it is not "
        "evidence that the change is wrong. The defect stays open."
    )


def render_agent_failure_comment(ordinal: int, detail: str) -> str:
    text = f"Attempt {ordinal}: producer made no change, so there is no revision to test. The defect stays open."
    if detail.strip():
        text = f"{text}\n\nProducer detail: {detail.strip()}"
    return text


def render_resolved_comment(ordinal: int, ref: str, result: TestResult) -> str:
    return (
        f"Resolved by revision {ref}: the full test suite passed at this revision "
        f"(attempt {ordinal}, {result.duration:.1f}s)."
    )


def render_exhausted_summary(attempts: Sequence[Attempt], max_iterations: int) -> str:
    """Final comment listing every attempt in chronological order."""
    lines = [
        f"Iteration budget of {max_iterations} exhausted without a passing revision. "
        "The defect stays open. Attempt history:"
    ]
    ordered = sorted(attempts, key=lambda attempt: (attempt.created_at, attempt.ordinal))
    for attempt in ordered:
        label = _OUTCOME_LABELS.get(attempt.outcome, attempt.outcome.value)
        ref = f" at {_short(attempt.change_ref)}" if attempt.change_ref else ""
        archived = f" (archived as {_short(attempt.archive_ref)})" if attempt.archive_ref else ""
        lines.append(
            f"{attempt.ordinal}. {attempt.created_at.isoformat(timespec='seconds')} "
            f"{attempt.outcome.value}: {label}{ref}{archived}"
        )
    if not ordered:
        lines.append("(no attempts recorded)")
    return "\n".join(lines)


__all__ = [
    "render_agent_failure_comment",
    "render_defect_body",
    "render_exhausted_summary",
    "render_failure_comment",
    "render_resolved_comment",
    "render_timeout_comment",
    "tail",
]
