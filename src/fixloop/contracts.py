"""Interfaces the orchestrator depends on.

``ChangeProducer`` and ``VerdictAuthority`` are disjoint: the component that
writes a change never receives the means to judge it.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Protocol, Sequence, runtime_checkable

from .memory.schema import Attempt, Defect, DefectComment, TestRunRecord
from .tools.test_runner import Scope, TestResult


@dataclass(frozen=True, slots=True)
class ProducerOutcome:
    """What the change producer did: committed ``ref`` or nothing.

    Carries no claim about whether the defect is fixed.
    """

    ref: Optional[str] = None
    detail: str = ""

    @property
    def committed(self) -> bool:
        return bool(self.ref)


def Committed(ref: str, detail: str = "") -> ProducerOutcome:  # noqa: N802 - reads as a variant
    if not ref:
        raise ValueError("A committed outcome needs a revision.")
    return ProducerOutcome(ref=ref, detail=detail)


def NoChange(detail: str = "") -> ProducerOutcome:  # noqa: N802 - reads as a variant
    return ProducerOutcome(ref=None, detail=detail)


@runtime_checkable
class ChangeProducer(Protocol):
    """Produces a committed change for a defect."""

    def attempt_fix(self, defect: Defect, prior_attempts: Sequence[Attempt]) -> ProducerOutcome:
        ...


@runtime_checkable
class VerdictAuthority(Protocol):
    """Decides, by running tests, whether a revision passes."""

    def run(self, scope: Scope) -> TestResult:
        """Test the current working tree (the Testing path)."""
        ...

    def gate(self, ref: str) -> TestResult:
        """Run the full suite against the committed revision ``ref``."""
        ...


@runtime_checkable
class IssueStore(Protocol):
    """Tracker and attempt-history operations used by the orchestrator."""

    def find_open_by_dedup_key(self, key: str) -> Optional[Defect]:
        ...

    def list_open(self, label: Optional[str] = None) -> list[Defect]:
        ...

    def create_if_absent(self, title: str, body: str, labels: Sequence[str]) -> Defect:
        ...

    def comment(self, defect: Defect | int, text: str) -> DefectComment:
        ...

    def close(self, defect: Defect | int, text: str) -> bool:
        ...

    def acquire_lease(self, defect: Defect | int, holder: str, ttl: float | timedelta) -> bool:
        ...

    def release_lease(self, defect: Defect | int, holder: str) -> bool:
        ...

    def get_defect(self, defect_id: int) -> Optional[Defect]:
        ...

    def next_attempt_ordinal(self, defect: Defect | int) -> int:
        ...

    def record_attempt(self, attempt: Attempt) -> None:
        ...

    def mark_attempt_archived(self, defect: Defect | int, ordinal: int, archive_ref: str) -> None:
        ...

    def list_attempts(self, defect: Defect | int) -> list[Attempt]:
        ...

    def record_test_run(self, record: TestRunRecord) -> None:
        ...


@runtime_checkable
class Archiver(Protocol):
    """Preserves a failed attempt before the next one starts."""

    def archive(self, defect: Defect, previous: Attempt) -> str:
        ...


__all__ = [
    "Archiver",
    "ChangeProducer",
    "Committed",
    "IssueStore",
    "NoChange",
    "ProducerOutcome",
    "VerdictAuthority",
]
