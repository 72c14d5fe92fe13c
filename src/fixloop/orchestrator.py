"""State machine driving the test -> file -> fix -> gate loop."""

from __future__ import annotations

import json
import logging
import shlex
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional
from uuid import uuid4

from .archive import AttemptArchiver
from .comments import (
    render_agent_failure_comment,
    render_defect_body,
    render_exhausted_summary,
    render_failure_comment,
    render_resolved_comment,
    render_timeout_comment,
)
from .contracts import Archiver, ChangeProducer, IssueStore, ProducerOutcome, VerdictAuthority
from .errors import InfrastructureError
from .gate import TestGate
from .memory.schema import Attempt, AttemptOutcome, Defect, TestRunRecord
from .memory.store import DefectStore
from .producer import CommandProducer
from .settings import Settings
from .tools.test_runner import Classification, Scope, TestResult, TestRunner
from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)


class State(str, Enum):
    """States visited by one orchestrator run."""

    IDLE = "IDLE"
    CHECK_DEFECTS = "CHECK_DEFECTS"
    TESTING = "TESTING"
    FILE_DEFECT = "FILE_DEFECT"
    FIXING = "FIXING"
    GATE = "GATE"
    CLOSING = "CLOSING"
    COMMENT_TIMEOUT = "COMMENT_TIMEOUT"
    COMMENT_FAILURE = "COMMENT_FAILURE"
    COMMENT_AGENT_FAILURE = "COMMENT_AGENT_FAILURE"
    TERMINATE = "TERMINATE"


class RunStatus(str, Enum):
    """Terminal status of a run."""

    UNRESOLVED = "UNRESOLVED"
    EXHAUSTED = "EXHAUSTED"
    RESOLVED = "RESOLVED"


@dataclass(slots=True)
class OrchestratorRun:
    """Record of one invocation of the loop."""

    max_iterations: int
    run_id: str = field(default_factory=lambda: uuid4().hex)
    defect_id: int | None = None
    iteration: int = 0
    status: RunStatus = RunStatus.UNRESOLVED
    states: list[State] = field(default_factory=list)
    attempts: list[Attempt] = field(default_factory=list)
    reason: str = ""
    resolved_ref: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    artifact_path: Path | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "defect_id": self.defect_id,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "status": self.status.value,
            "states": [state.value for state in self.states],
            "attempts": [attempt.model_dump(mode="json") for attempt in self.attempts],
            "reason": self.reason,
            "resolved_ref": self.resolved_ref,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(slots=True)
class _Cycle:
    """Scratch state carried between the states of one fix/gate cycle."""

    defect: Defect
    ordinal: int
    base_ref: str | None = None
    outcome: ProducerOutcome | None = None
    result: TestResult | None = None


class Orchestrator:
    """Coordinator that owns every terminal decision about a defect.

    Collaborators are injected: the store (tracker), a verdict authority
    (tests), a change producer and an optional archiver.  The producer never
    sees the store or the verdict authority.
    """

    def __init__(
        self,
        *,
        store: IssueStore,
        verdict: VerdictAuthority,
        producer: ChangeProducer,
        settings: Settings,
        archiver: Archiver | None = None,
        repo: GitRepository | None = None,
        stop_event: threading.Event | None = None,
        write_artifacts: bool = True,
    ) -> None:
        self.store = store
        self.verdict = verdict
        self.producer = producer
        self.settings = settings
        self.archiver = archiver
        self.repo = repo
        self.stop_event = stop_event or threading.Event()
        self._write_artifacts = write_artifacts

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: IssueStore | None = None,
        stop_event: threading.Event | None = None,
    ) -> "Orchestrator":
        """Wire the git-, subprocess- and SQLite-backed collaborators."""
        repo = GitRepository(settings.repo_root, protected=settings.protected_paths)
        runner = TestRunner(settings.repo_root, settings.test_commands, fixtures=settings.fixtures)
        return cls(
            store=store or DefectStore(settings.db_path, branch_prefix=settings.branch_prefix),
            verdict=TestGate(runner, repo),
            producer=CommandProducer(repo, settings.active_tier),
            settings=settings,
            archiver=AttemptArchiver(
                repo,
                reset_after_archive=settings.reset_after_archive,
                push=settings.archive_push,
                remote=settings.archive_remote,
            ),
            repo=repo,
            stop_event=stop_event,
        )

    # ------------------------------------------------------------------ loops
    def run_once(self) -> OrchestratorRun:
        """Run the loop until it terminates; one externally triggered invocation."""

        run = OrchestratorRun(max_iterations=self.settings.max_iterations)
        leased: set[int] = set()
        self._enter(run, State.IDLE)
        try:
            self._drive(run, leased)
        except InfrastructureError as error:
            run.status = RunStatus.UNRESOLVED
            run.reason = f"infrastructure error: {error}"
            error.run = run
            LOGGER.error("Run %s aborted: %s", run.run_id, error)
            raise
        finally:
            for defect_id in leased:
                self.store.release_lease(defect_id, self.settings.holder_id)
            run.finished_at = datetime.now(timezone.utc)
            self._persist_artifact(run)
        LOGGER.info(
            "Run %s finished %s after %d iteration(s)",
            run.run_id,
            run.status.value,
            run.iteration,
        )
        return run

    def watch(
        self,
        *,
        interval: float | None = None,
        max_runs: int | None = None,
        on_run: Callable[[OrchestratorRun], None] | None = None,
    ) -> OrchestratorRun | None:
        """Poll: run, sleep ``interval`` seconds, repeat until stopped.

        An infrastructure error ends the loop; it is never retried here.
        """

        delay = self.settings.poll_interval if interval is None else interval
        last: OrchestratorRun | None = None
        count = 0
        while not self.stop_event.is_set():
            last = self.run_once()
            count += 1
            if on_run is not None:
                on_run(last)
            if max_runs is not None and count >= max_runs:
                break
            if self.stop_event.wait(delay):
                break
        return last

    # ------------------------------------------------------------ transitions
    def _drive(self, run: OrchestratorRun, leased: set[int]) -> None:
        state = State.CHECK_DEFECTS
        cycle: _Cycle | None = None
        failing: TestResult | None = None

        while state is not State.TERMINATE:
            self._enter(run, state)

            if state is State.CHECK_DEFECTS:
                # Iteration boundary: the only place a stop request is honored.
                if self.stop_event.is_set():
                    run.reason = "stop requested"
                    state = State.TERMINATE
                    continue
                defect = self._next_open_defect(run)
                if defect is None:
                    state = State.TESTING
                    continue
                run.defect_id = defect.id
                if run.iteration >= run.max_iterations:
                    self._exhaust(run, defect)
                    state = State.TERMINATE
                    continue
                if not self.store.acquire_lease(defect, self.settings.holder_id, self.settings.lease_ttl):
                    run.reason = f"defect #{defect.id} is leased by another worker"
                    state = State.TERMINATE
                    continue
                leased.add(defect.id)
                # Fresh scratch state per cycle; the ordinal comes from the stored history.
                cycle = _Cycle(defect=defect, ordinal=self.store.next_attempt_ordinal(defect))
                state = State.FIXING

            elif state is State.TESTING:
                failing = self._run_testing(run)
                if failing is None:
                    run.status = RunStatus.RESOLVED
                    run.reason = "test suite passed with no open defect"
                    state = State.TERMINATE
                else:
                    state = State.FILE_DEFECT

            elif state is State.FILE_DEFECT:
                assert failing is not None
                defect = self.store.create_if_absent(
                    self.settings.defect_title(failing.scope),
                    render_defect_body(failing, self.settings.comment_output_limit),
                    [self.settings.label_for(failing.scope)],
                )
                run.defect_id = defect.id
                failing = None
                state = State.CHECK_DEFECTS

            elif state is State.FIXING:
                assert cycle is not None
                state = self._fix(run, cycle)

            elif state is State.GATE:
                assert cycle is not None and cycle.outcome is not None and cycle.outcome.ref
                result = self.verdict.gate(cycle.outcome.ref)
                self._record_test_run(run, result, defect_id=cycle.defect.id, ref=cycle.outcome.ref)
                if result.classification == Classification.INFRASTRUCTURE_ERROR:
                    raise InfrastructureError(
                        f"gate for defect #{cycle.defect.id} could not run: {result.stderr.strip()}",
                        result=result,
                    )
                cycle.result = result
                if result.classification == Classification.SUCCESS:
                    state = State.CLOSING
                elif result.classification == Classification.TIMEOUT:
                    state = State.COMMENT_TIMEOUT
                else:
                    state = State.COMMENT_FAILURE

            elif state is State.CLOSING:
                assert cycle is not None and cycle.outcome is not None and cycle.result is not None
                ref = cycle.outcome.ref or ""
                self._record_attempt(run, cycle, AttemptOutcome.SUCCEEDED)
                self.store.close(cycle.defect, render_resolved_comment(cycle.ordinal, ref, cycle.result))
                leased.discard(cycle.defect.id)
                run.status = RunStatus.RESOLVED
                run.resolved_ref = ref
                run.reason = f"defect #{cycle.defect.id} resolved by {ref}"
                state = State.TERMINATE

            elif state is State.COMMENT_TIMEOUT:
                assert cycle is not None and cycle.outcome is not None and cycle.result is not None
                self._record_attempt(run, cycle, AttemptOutcome.TEST_TIMEOUT)
                self.store.comment(
                    cycle.defect,
                    render_timeout_comment(cycle.ordinal, cycle.outcome.ref or "", cycle.result),
                )
                state = State.CHECK_DEFECTS

            elif state is State.COMMENT_FAILURE:
                assert cycle is not None and cycle.outcome is not None and cycle.result is not None
                self._record_attempt(run, cycle, AttemptOutcome.TEST_FAILED)
                self.store.comment(
                    cycle.defect,
                    render_failure_comment(
                        cycle.ordinal,
                        cycle.outcome.ref or "",
                        cycle.result,
                        self.settings.comment_output_limit,
                    ),
                )
                state = State.CHECK_DEFECTS

            elif state is State.COMMENT_AGENT_FAILURE:
                assert cycle is not None and cycle.outcome is not None
                self._record_attempt(run, cycle, AttemptOutcome.AGENT_FAILED)
                self.store.comment(cycle.defect, render_agent_failure_comment(cycle.ordinal, cycle.outcome.detail))
                state = State.CHECK_DEFECTS

            else:  # pragma: no cover - every state is handled above
                raise RuntimeError(f"Unhandled state {state}")

        self._enter(run, State.TERMINATE)

    def _fix(self, run: OrchestratorRun, cycle: _Cycle) -> State:
        """Archive the previous attempt if needed, then ask the producer for a change."""

        prior = self.store.list_attempts(cycle.defect)
        if prior and self.archiver is not None and prior[-1].archive_ref is None:
            previous = prior[-1]
            archive_ref = self.archiver.archive(cycle.defect, previous)
            self.store.mark_attempt_archived(cycle.defect, previous.ordinal, archive_ref)
            prior = self.store.list_attempts(cycle.defect)

        cycle.base_ref = self._current_head()
        LOGGER.info(
            "Defect #%d attempt %d (iteration %d/%d)",
            cycle.defect.id,
            cycle.ordinal,
            run.iteration + 1,
            run.max_iterations,
        )
        cycle.outcome = self.producer.attempt_fix(cycle.defect, prior)
        if not cycle.outcome.committed:
            LOGGER.warning("Producer made no change for defect #%d: %s", cycle.defect.id, cycle.outcome.detail)
            return State.COMMENT_AGENT_FAILURE
        return State.GATE

    def _run_testing(self, run: OrchestratorRun) -> TestResult | None:
        """Run the Testing path; return the failing result or ``None`` on a full pass.

        With ``smoke_first`` a failing smoke run files a defect directly; a
        passing smoke run never resolves on its own, the full suite decides.
        """

        scopes = [Scope.SMOKE, Scope.FULL] if self.settings.smoke_first else [Scope.FULL]
        for scope in scopes:
            result = self.verdict.run(scope)
            self._record_test_run(run, result, defect_id=None, ref=self._current_head())
            if result.classification == Classification.INFRASTRUCTURE_ERROR:
                raise InfrastructureError(
                    f"{scope.value} test run could not execute: {result.stderr.strip()}",
                    result=result,
                )
            if result.classification != Classification.SUCCESS:
                return result
        return None

    def _next_open_defect(self, run: OrchestratorRun) -> Optional[Defect]:
        if run.defect_id is not None:
            current = self.store.get_defect(run.defect_id)
            if current is not None and current.is_open:
                return current
        labels = {self.settings.label_for(scope) for scope in Scope}
        for defect in self.store.list_open():
            if labels.intersection(defect.labels):
                return defect
        return None

    def _exhaust(self, run: OrchestratorRun, defect: Defect) -> None:
        attempts = self.store.list_attempts(defect)
        self.store.comment(defect, render_exhausted_summary(attempts, run.max_iterations))
        run.status = RunStatus.EXHAUSTED
        run.reason = f"iteration budget of {run.max_iterations} exhausted for defect #{defect.id}"
        LOGGER.warning("Defect #%d still open after %d iteration(s)", defect.id, run.iteration)

    # --------------------------------------------------------------- helpers
    def _enter(self, run: OrchestratorRun, state: State) -> None:
        run.states.append(state)
        LOGGER.debug("Run %s -> %s", run.run_id, state.value)

    def _record_attempt(self, run: OrchestratorRun, cycle: _Cycle, outcome: AttemptOutcome) -> None:
        assert cycle.outcome is not None
        attempt = Attempt(
            defect_id=cycle.defect.id,
            ordinal=cycle.ordinal,
            outcome=outcome,
            change_ref=cycle.outcome.ref,
            base_ref=cycle.base_ref,
            detail=cycle.outcome.detail,
        )
        self.store.record_attempt(attempt)
        run.attempts.append(attempt)
        run.iteration += 1

    def _record_test_run(
        self,
        run: OrchestratorRun,
        result: TestResult,
        *,
        defect_id: int | None,
        ref: str | None,
    ) -> None:
        record = TestRunRecord(
            id=f"test-{uuid4().hex}",
            scope=result.scope.value,
            classification=result.classification.value,
            exit_code=result.exit_code,
            command=shlex.join(result.command),
            output=result.raw_output,
            duration=result.duration,
            defect_id=defect_id,
            metadata={"run_id": run.run_id, "ref": ref},
        )
        self.store.record_test_run(record)

    def _current_head(self) -> str | None:
        if self.repo is None:
            return None
        try:
            return self.repo.head()
        except GitError as error:
            LOGGER.warning("Could not read HEAD: %s", error)
            return None

    def _persist_artifact(self, run: OrchestratorRun) -> None:
        if not self._write_artifacts:
            return
        runs_dir = self.settings.logs_root / "runs"
        stamp = run.started_at.strftime("%Y%m%dT%H%M%S")
        path = runs_dir / f"{stamp}-{run.run_id}.json"
        try:
            runs_dir.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(run.to_dict(), indent=2), encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Failed to write run artifact %s: %s", path, error)
            return
        run.artifact_path = path


__all__ = ["Orchestrator", "OrchestratorRun", "RunStatus", "State"]
