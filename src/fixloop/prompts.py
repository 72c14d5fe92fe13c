"""Prompt templates handed to the change producer."""

from __future__ import annotations

from pathlib import Path
from typing import Sequence

from .memory.schema import Attempt, Defect

FIX_INSTRUCTION = (
    "Make the smallest change that makes the failing tests pass, then stop. "
    "Do not disable, skip, or weaken tests. Do not run the test suite to decide whether you are done; "
    "the change is verified independently after you finish."
)


def render_defect_brief(defect: Defect) -> str:
    """Return the defect section of the prompt."""
    return f"## Defect #{defect.id}: {defect.title}\n{defect.body.strip()}"


def render_attempt_history(defect: Defect, attempts: Sequence[Attempt]) -> str:
    """Summarise earlier attempts so the producer avoids repeating them."""
    if not attempts:
        return ""
    lines = ["## Earlier Attempts"]
    for attempt in attempts:
        line = f"- Attempt {attempt.ordinal}: {attempt.outcome.value}"
        if attempt.archive_ref:
            line += f"; inspect with `git show {attempt.archive_ref}`"
        if attempt.detail.strip():
            line += f" ({attempt.detail.strip().splitlines()[0]})"
        lines.append(line)
    if defect.archive_branch:
        lines.append(
            f"Every earlier attempt is preserved on branch `{defect.archive_branch}` "
            f"(`git log -p {defect.archive_branch}`). Try a different approach."
        )
    return "\n".join(lines)


def render_fix_prompt(defect: Defect, attempts: Sequence[Attempt], repo_root: Path) -> str:
    sections = [
        FIX_INSTRUCTION,
        f"Operate on the working tree at {repo_root.as_posix()}.",
        render_defect_brief(defect),
        render_attempt_history(defect, attempts),
    ]
    return "\n\n".join(section for section in sections if section) + "\n"


__all__ = [
    "FIX_INSTRUCTION",
    "render_attempt_history",
    "render_defect_brief",
    "render_fix_prompt",
]
