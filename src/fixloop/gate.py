"""Verdict authority: the only component that decides whether a change passes."""

from __future__ import annotations

import logging

from .tools.test_runner import Classification, Scope, TestResult, TestRunner
from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)


class TestGate:
    """Run the test suite against the revision the producer just committed."""

    __test__ = False

    def __init__(self, runner: TestRunner, repo: GitRepository | None = None) -> None:
        self.runner = runner
        self.repo = repo

    def run(self, scope: Scope) -> TestResult:
        return self.runner.run(scope)

    def gate(self, ref: str) -> TestResult:
        """Run the full suite, refusing to test anything but ``ref``."""

        mismatch = self._head_mismatch(ref)
        if mismatch:
            LOGGER.error("Gate aborted: %s", mismatch)
            scope_command = self.runner.commands.get(Scope.FULL)
            return TestResult(
                scope=Scope.FULL,
                classification=Classification.INFRASTRUCTURE_ERROR,
                command=scope_command.command if scope_command else (),
                exit_code=None,
                stdout="",
                stderr=mismatch,
                duration=0.0,
            )
        return self.runner.run(Scope.FULL)

    def _head_mismatch(self, ref: str) -> str | None:
        if self.repo is None:
            return None
        try:
            head = self.repo.head()
            expected = self.repo.resolve(ref)
        except GitError as error:
            return f"could not read repository state: {error}"
        if expected is None:
            return f"committed revision {ref} does not exist"
        if head != expected:
            return f"HEAD is {head or '(unborn)'} but the producer committed {expected}"
        return None


__all__ = ["TestGate"]
