"""Tool integrations used by the fixloop runtime."""

from .test_runner import (
    Classification,
    FixtureManager,
    Scope,
    ScopeCommand,
    TestResult,
    TestRunner,
    classify_exit_status,
)
from .vcs import GitError, GitRepository

__all__ = [
    "Classification",
    "FixtureManager",
    "GitError",
    "GitRepository",
    "Scope",
    "ScopeCommand",
    "TestResult",
    "TestRunner",
    "classify_exit_status",
]
