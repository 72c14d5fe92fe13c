from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Callable, Iterable, Sequence

import pytest

from fixloop.contracts import ChangeProducer, Committed, NoChange, ProducerOutcome, VerdictAuthority
from fixloop.errors import InfrastructureError
from fixloop.memory.schema import Attempt, AttemptOutcome, Defect, DefectState
from fixloop.memory.store import DefectStore
from fixloop.orchestrator import Orchestrator, RunStatus, State
from fixloop.settings import Settings
from fixloop.tools.test_runner import Classification, Scope, TestResult

FULL_LABEL = "fixloop:full-suite-failure"
SMOKE_LABEL = "fixloop:smoke-suite-failure"

_EXIT_CODES = {
    Classification.SUCCESS: 0,
    Classification.FAILURE: 1,
    Classification.TIMEOUT: 124,
    Classification.INFRASTRUCTURE_ERROR: None,
}


def _result(scope: Scope, classification: Classification) -> TestResult:
    return TestResult(
        scope=scope,
        classification=classification,
        command=("pytest", "-q"),
        exit_code=_EXIT_CODES[classification],
        stdout=f"{scope.value} run: {classification.value}",
        stderr="runner could not start" if classification is Classification.INFRASTRUCTURE_ERROR else "",
        duration=0.5,
    )


class ScriptedVerdict:
    """Verdict authority replaying a fixed sequence of classifications."""

    def __init__(
        self,
        runs: Iterable[Classification] = (),
        gates: Iterable[Classification] = (),
    ) -> None:
        self.runs = list(runs)
        self.gates = list(gates)
        self.calls: list[tuple[str, object]] = []

    def run(self, scope: Scope) -> TestResult:
        self.calls.append(("run", scope))
        return _result(scope, self.runs.pop(0))

    def gate(self, ref: str) -> TestResult:
        self.calls.append(("gate", ref))
        return _result(Scope.FULL, self.gates.pop(0))


class ScriptedProducer:
    def __init__(self, outcomes: Iterable[ProducerOutcome], on_call: Callable[[], None] | None = None) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[int, list[tuple[int, str | None]]]] = []
        self._on_call = on_call

    def attempt_fix(self, defect: Defect, prior_attempts: Sequence[Attempt]) -> ProducerOutcome:
        self.calls.append((defect.id, [(attempt.ordinal, attempt.archive_ref) for attempt in prior_attempts]))
        if self._on_call is not None:
            self._on_call()
        return self.outcomes.pop(0)


class RecordingArchiver:
    def __init__(self) -> None:
        self.calls: list[tuple[int, int]] = []

    def archive(self, defect: Defect, previous: Attempt) -> str:
        self.calls.append((defect.id, previous.ordinal))
        return f"archive-{previous.ordinal}"


@pytest.fixture()
def store(tmp_path: Path) -> DefectStore:
    with DefectStore(tmp_path / "fixloop.sqlite") as defect_store:
        yield defect_store


def _settings(tmp_path: Path, **overrides: object) -> Settings:
    settings = Settings(repo_root=tmp_path, holder_id="tests", logs_root=tmp_path / "logs", max_iterations=3)
    for name, value in overrides.items():
        setattr(settings, name, value)
    return settings


def _orchestrator(
    tmp_path: Path,
    store: DefectStore,
    verdict: ScriptedVerdict,
    producer: ScriptedProducer,
    archiver: RecordingArchiver | None = None,
    **overrides: object,
) -> Orchestrator:
    stop_event = overrides.pop("stop_event", None)
    return Orchestrator(
        store=store,
        verdict=verdict,
        producer=producer,
        settings=_settings(tmp_path, **overrides),
        archiver=archiver if archiver is not None else RecordingArchiver(),
        stop_event=stop_event,
    )


def test_fakes_satisfy_the_disjoint_protocols() -> None:
    verdict = ScriptedVerdict()
    producer = ScriptedProducer([])
    assert isinstance(verdict, VerdictAuthority)
    assert isinstance(producer, ChangeProducer)
    assert not isinstance(producer, VerdictAuthority)
    assert not isinstance(verdict, ChangeProducer)


def test_clean_suite_resolves_without_remediation(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.SUCCESS])
    producer = ScriptedProducer([])
    archiver = RecordingArchiver()

    run = _orchestrator(tmp_path, store, verdict, producer, archiver).run_once()

    assert run.status is RunStatus.RESOLVED
    assert run.defect_id is None
    assert run.iteration == 0
    assert run.states == [State.IDLE, State.CHECK_DEFECTS, State.TESTING, State.TERMINATE]
    assert store.list_defects() == []
    assert producer.calls == []
    assert archiver.calls == []


def test_failing_suite_files_defect_and_closes_after_passing_gate(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.SUCCESS])
    producer = ScriptedProducer([Committed("rev-1")])

    run = _orchestrator(tmp_path, store, verdict, producer).run_once()

    assert run.status is RunStatus.RESOLVED
    assert run.iteration == 1
    assert run.resolved_ref == "rev-1"
    assert run.states == [
        State.IDLE,
        State.CHECK_DEFECTS,
        State.TESTING,
        State.FILE_DEFECT,
        State.CHECK_DEFECTS,
        State.FIXING,
        State.GATE,
        State.CLOSING,
        State.TERMINATE,
    ]
    assert verdict.calls == [("run", Scope.FULL), ("gate", "rev-1")]

    defect = store.require_defect(run.defect_id)
    assert defect.state is DefectState.CLOSED
    assert defect.title == "Test failure: full suite"
    assert defect.labels == [FULL_LABEL]
    assert "full test suite failed" in defect.body
    comments = store.list_comments(defect)
    assert len(comments) == 1
    assert comments[0].body.startswith("Resolved by revision rev-1")
    assert [attempt.outcome for attempt in store.list_attempts(defect)] == [AttemptOutcome.SUCCEEDED]


def test_agent_failure_comment_differs_from_test_failure(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.FAILURE])
    producer = ScriptedProducer([Committed("rev-1"), NoChange("the command produced no edits")])
    archiver = RecordingArchiver()

    run = _orchestrator(tmp_path, store, verdict, producer, archiver, max_iterations=2).run_once()

    assert run.status is RunStatus.EXHAUSTED
    assert run.iteration == 2
    defect = store.require_defect(run.defect_id)
    assert defect.is_open
    comments = [comment.body for comment in store.list_comments(defect)]
    assert len(comments) == 3
    failure, agent_failure, summary = comments
    assert failure.startswith("Attempt 1: the full test suite failed at rev-1")
    assert agent_failure.startswith("Attempt 2: producer made no change")
    assert "the command produced no edits" in agent_failure
    assert failure != agent_failure
    assert summary.startswith("Iteration budget of 2 exhausted")
    assert archiver.calls == [(defect.id, 1)]
    assert producer.calls[1] == (defect.id, [(1, "archive-1")])
    assert [attempt.outcome for attempt in store.list_attempts(defect)] == [
        AttemptOutcome.TEST_FAILED,
        AttemptOutcome.AGENT_FAILED,
    ]


def test_comments_cite_the_stored_attempt_ordinal(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(
        runs=[Classification.FAILURE],
        gates=[Classification.TIMEOUT, Classification.SUCCESS],
    )
    producer = ScriptedProducer([Committed("rev-1"), NoChange("nothing to do"), Committed("rev-3")])

    run = _orchestrator(tmp_path, store, verdict, producer).run_once()

    assert run.status is RunStatus.RESOLVED
    defect = store.require_defect(run.defect_id)
    attempts = store.list_attempts(defect)
    assert [attempt.ordinal for attempt in attempts] == [1, 2, 3]
    timeout, agent_failure, resolved = [comment.body for comment in store.list_comments(defect)]
    assert timeout.startswith(f"Attempt {attempts[0].ordinal}: the full test suite timed out at rev-1")
    assert agent_failure.startswith(f"Attempt {attempts[1].ordinal}: producer made no change")
    assert resolved.startswith("Resolved by revision rev-3")
    assert f"(attempt {attempts[2].ordinal}," in resolved


def test_each_run_gets_a_fresh_budget_for_a_still_open_defect(tmp_path: Path, store: DefectStore) -> None:
    archiver = RecordingArchiver()
    first = _orchestrator(
        tmp_path,
        store,
        ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.FAILURE] * 2),
        ScriptedProducer([Committed("rev-1"), Committed("rev-2")]),
        archiver,
        max_iterations=2,
    ).run_once()
    assert first.status is RunStatus.EXHAUSTED

    second = _orchestrator(
        tmp_path,
        store,
        ScriptedVerdict(gates=[Classification.SUCCESS]),
        ScriptedProducer([Committed("rev-3")]),
        archiver,
        max_iterations=2,
    ).run_once()

    assert second.status is RunStatus.RESOLVED
    assert second.defect_id == first.defect_id
    assert second.iteration == 1
    assert [call[1] for call in archiver.calls] == [1, 2]
    defect = store.require_defect(second.defect_id)
    assert [attempt.ordinal for attempt in store.list_attempts(defect)] == [1, 2, 3]
    assert "(attempt 3," in store.list_comments(defect)[-1].body


def test_budget_exhaustion_leaves_defect_open_with_summary(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.FAILURE] * 3)
    producer = ScriptedProducer([Committed("rev-1"), Committed("rev-2"), Committed("rev-3")])
    archiver = RecordingArchiver()

    run = _orchestrator(tmp_path, store, verdict, producer, archiver).run_once()

    assert run.status is RunStatus.EXHAUSTED
    assert run.iteration == 3
    defect = store.require_defect(run.defect_id)
    assert defect.is_open
    attempts = store.list_attempts(defect)
    assert [attempt.ordinal for attempt in attempts] == [1, 2, 3]
    assert all(attempt.outcome is AttemptOutcome.TEST_FAILED for attempt in attempts)
    assert [call[1] for call in archiver.calls] == [1, 2]
    assert [len(prior) for _, prior in producer.calls] == [0, 1, 2]

    summary = store.list_comments(defect)[-1].body
    lines = summary.splitlines()
    assert lines[0].startswith("Iteration budget of 3 exhausted")
    assert [line.split(".")[0] for line in lines[1:]] == ["1", "2", "3"]
    assert "rev-1" in lines[1] and "rev-3" in lines[3]


def test_timeout_never_closes_and_is_commented_distinctly(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(
        runs=[Classification.TIMEOUT],
        gates=[Classification.TIMEOUT, Classification.FAILURE],
    )
    producer = ScriptedProducer([Committed("rev-1"), Committed("rev-2")])

    run = _orchestrator(tmp_path, store, verdict, producer, max_iterations=2).run_once()

    assert run.status is RunStatus.EXHAUSTED
    defect = store.require_defect(run.defect_id)
    assert defect.is_open
    assert "timed out" in defect.body
    timeout_comment, failure_comment, _ = [comment.body for comment in store.list_comments(defect)]
    assert "timed out" in timeout_comment
    assert "not evidence" in timeout_comment
    assert "timed out" not in failure_comment
    assert [attempt.outcome for attempt in store.list_attempts(defect)] == [
        AttemptOutcome.TEST_TIMEOUT,
        AttemptOutcome.TEST_FAILED,
    ]


def test_infrastructure_error_at_gate_aborts_without_mutation(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.INFRASTRUCTURE_ERROR])
    producer = ScriptedProducer([Committed("rev-1")])

    with pytest.raises(InfrastructureError) as excinfo:
        _orchestrator(tmp_path, store, verdict, producer).run_once()

    run = excinfo.value.run
    assert run is not None
    assert run.status is RunStatus.UNRESOLVED
    assert run.iteration == 0
    assert run.states[-1] is State.GATE
    defect = store.require_defect(run.defect_id)
    assert defect.is_open
    assert defect.lease_holder is None
    assert store.list_comments(defect) == []
    assert store.list_attempts(defect) == []


def test_infrastructure_error_while_testing_files_nothing(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.INFRASTRUCTURE_ERROR])

    with pytest.raises(InfrastructureError):
        _orchestrator(tmp_path, store, verdict, ScriptedProducer([])).run_once()

    assert store.list_defects() == []
    assert [record.classification for record in store.list_test_runs()] == ["INFRASTRUCTURE_ERROR"]


def test_open_defect_is_fixed_before_any_testing(tmp_path: Path, store: DefectStore) -> None:
    existing = store.create_if_absent("Test failure: full suite", "from an earlier run", [FULL_LABEL])
    verdict = ScriptedVerdict(gates=[Classification.SUCCESS])
    producer = ScriptedProducer([Committed("rev-9")])

    run = _orchestrator(tmp_path, store, verdict, producer).run_once()

    assert run.status is RunStatus.RESOLVED
    assert run.defect_id == existing.id
    assert State.TESTING not in run.states
    assert verdict.calls == [("gate", "rev-9")]


def test_defects_without_loop_labels_are_ignored(tmp_path: Path, store: DefectStore) -> None:
    store.create_if_absent("Flaky dashboard", "filed by a human", ["ui"])
    verdict = ScriptedVerdict(runs=[Classification.SUCCESS])

    run = _orchestrator(tmp_path, store, verdict, ScriptedProducer([])).run_once()

    assert run.status is RunStatus.RESOLVED
    assert run.defect_id is None


def test_foreign_lease_skips_the_run(tmp_path: Path, store: DefectStore) -> None:
    defect = store.create_if_absent("Test failure: full suite", "body", [FULL_LABEL])
    assert store.acquire_lease(defect, "other-worker", 600)
    verdict = ScriptedVerdict()
    producer = ScriptedProducer([])

    run = _orchestrator(tmp_path, store, verdict, producer).run_once()

    assert run.status is RunStatus.UNRESOLVED
    assert "leased by another worker" in run.reason
    assert producer.calls == []
    assert verdict.calls == []
    assert store.require_defect(defect).lease_holder == "other-worker"


def test_lease_released_after_unresolved_run(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.FAILURE])
    producer = ScriptedProducer([Committed("rev-1")])

    run = _orchestrator(tmp_path, store, verdict, producer, max_iterations=1).run_once()

    assert run.status is RunStatus.EXHAUSTED
    assert store.require_defect(run.defect_id).lease_holder is None


def test_stop_request_before_run_terminates_immediately(tmp_path: Path, store: DefectStore) -> None:
    stop_event = threading.Event()
    stop_event.set()
    verdict = ScriptedVerdict()

    run = _orchestrator(tmp_path, store, verdict, ScriptedProducer([]), stop_event=stop_event).run_once()

    assert run.states == [State.IDLE, State.CHECK_DEFECTS, State.TERMINATE]
    assert run.status is RunStatus.UNRESOLVED
    assert run.reason == "stop requested"
    assert verdict.calls == []


def test_stop_request_waits_for_iteration_boundary(tmp_path: Path, store: DefectStore) -> None:
    stop_event = threading.Event()
    verdict = ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.FAILURE])
    producer = ScriptedProducer([Committed("rev-1")], on_call=stop_event.set)

    run = _orchestrator(tmp_path, store, verdict, producer, stop_event=stop_event).run_once()

    assert run.status is RunStatus.UNRESOLVED
    assert run.iteration == 1
    assert run.states[-4:] == [State.GATE, State.COMMENT_FAILURE, State.CHECK_DEFECTS, State.TERMINATE]
    defect = store.require_defect(run.defect_id)
    assert len(store.list_attempts(defect)) == 1
    assert len(store.list_comments(defect)) == 1


def test_replaying_classifications_is_deterministic(tmp_path: Path) -> None:
    def replay(root: Path):
        root.mkdir()
        with DefectStore(root / "fixloop.sqlite") as replay_store:
            verdict = ScriptedVerdict(
                runs=[Classification.FAILURE],
                gates=[Classification.TIMEOUT, Classification.FAILURE, Classification.SUCCESS],
            )
            producer = ScriptedProducer([Committed("rev-1"), NoChange(), Committed("rev-2"), Committed("rev-3")])
            return _orchestrator(root, replay_store, verdict, producer, max_iterations=5).run_once()

    first = replay(tmp_path / "first")
    second = replay(tmp_path / "second")

    assert first.states == second.states
    assert first.status is second.status is RunStatus.RESOLVED
    assert first.iteration == second.iteration == 4
    assert [a.outcome for a in first.attempts] == [a.outcome for a in second.attempts]


def test_smoke_failure_files_smoke_defect(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.FAILURE], gates=[Classification.SUCCESS])
    producer = ScriptedProducer([Committed("rev-1")])

    run = _orchestrator(tmp_path, store, verdict, producer, smoke_first=True).run_once()

    assert verdict.calls[0] == ("run", Scope.SMOKE)
    assert verdict.calls[1] == ("gate", "rev-1")
    defect = store.require_defect(run.defect_id)
    assert defect.title == "Test failure: smoke suite"
    assert defect.labels == [SMOKE_LABEL]


def test_smoke_pass_still_requires_full_suite(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.SUCCESS, Classification.FAILURE], gates=[Classification.SUCCESS])
    producer = ScriptedProducer([Committed("rev-1")])

    run = _orchestrator(tmp_path, store, verdict, producer, smoke_first=True).run_once()

    assert verdict.calls[:2] == [("run", Scope.SMOKE), ("run", Scope.FULL)]
    assert store.require_defect(run.defect_id).labels == [FULL_LABEL]
    assert run.status is RunStatus.RESOLVED


def test_run_artifact_written(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.SUCCESS])

    run = _orchestrator(tmp_path, store, verdict, ScriptedProducer([])).run_once()

    assert run.artifact_path is not None
    assert run.artifact_path.parent == tmp_path / "logs" / "runs"
    payload = json.loads(run.artifact_path.read_text(encoding="utf-8"))
    assert payload["run_id"] == run.run_id
    assert payload["status"] == "RESOLVED"
    assert payload["states"][-1] == "TERMINATE"


def test_watch_repeats_until_max_runs(tmp_path: Path, store: DefectStore) -> None:
    verdict = ScriptedVerdict(runs=[Classification.SUCCESS, Classification.SUCCESS])
    seen = []

    last = _orchestrator(tmp_path, store, verdict, ScriptedProducer([])).watch(
        interval=0,
        max_runs=2,
        on_run=seen.append,
    )

    assert len(seen) == 2
    assert last is seen[-1]
    assert all(run.status is RunStatus.RESOLVED for run in seen)


def test_watch_stops_when_signalled(tmp_path: Path, store: DefectStore) -> None:
    stop_event = threading.Event()
    verdict = ScriptedVerdict(runs=[Classification.SUCCESS])
    seen = []

    def record(run) -> None:
        seen.append(run)
        stop_event.set()

    _orchestrator(tmp_path, store, verdict, ScriptedProducer([]), stop_event=stop_event).watch(
        interval=30,
        on_run=record,
    )

    assert len(seen) == 1
