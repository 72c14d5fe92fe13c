"""Minimal git helpers

Enough structure to commit producer changes, inspect ``HEAD``, and write
archive commits without touching the working tree.  Paths owned by the loop
itself (its config file and data directory) are never staged, snapshotted or
cleaned.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from pathlib import Path
from typing import Iterable, List, Mapping, Sequence, Set


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str, *, protected: Iterable[Path | str] = ()) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")
        self.protected = _relative_paths(self.root, protected)

    def _pathspec(self) -> List[str]:
        """Pathspec covering the whole tree except protected paths."""

        return ["--", ".", *(f":(exclude){path}" for path in self.protected)]

    # ------------------------------------------------------------------ git IO
    def git(
        self,
        *args: str,
        check: bool = True,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return _run(self.root, list(args), check=check, env=env)

    # -------------------------------------------------------------- revisions
    def head(self) -> str | None:
        """Return the commit id of ``HEAD`` or ``None`` on an unborn branch."""

        result = self.git("rev-parse", "--verify", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    def resolve(self, ref: str) -> str | None:
        """Return the commit id ``ref`` points at, or ``None`` if it does not exist."""

        result = self.git("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip() or None

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self.git("status", "--porcelain", *self._pathspec())
        entries: List[tuple[str, Path]] = []
        for line in result.stdout.splitlines():
            if not line:
                continue
            status = line[:2]
            raw_path = line[3:]
            if status[0] in {"R", "C"} and " -> " in raw_path:
                raw_path = raw_path.split(" -> ", 1)[1]
            entries.append((status.strip() or status, Path(raw_path.strip())))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def has_changes(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when there are working tree changes."""

        return bool(self.working_tree_changes(include_untracked=include_untracked))

    def reset_hard(self, ref: str, *, clean_untracked: bool = True) -> None:
        """Move the current branch to ``ref`` and discard working tree changes."""

        self.git("reset", "--hard", ref)
        if clean_untracked:
            keep = [f"--exclude=/{path}" for path in self.protected]
            self.git("clean", "-fd", *keep)

    # -------------------------------------------------------------- plumbing
    def snapshot_tree(self) -> str:
        """Write the full working tree (tracked and untracked) as a tree object.

        A throwaway index is used so the real index and working tree are left
        exactly as they were.
        """

        handle, index_path = tempfile.mkstemp(prefix="fixloop-index-")
        os.close(handle)
        os.unlink(index_path)
        env = {"GIT_INDEX_FILE": index_path}
        try:
            if self.head() is not None:
                self.git("read-tree", "HEAD", env=env)
            self.git("add", "--all", *self._pathspec(), env=env)
            return self.git("write-tree", env=env).stdout.strip()
        finally:
            if os.path.exists(index_path):
                os.unlink(index_path)

    def commit_tree(self, tree: str, message: str, parents: Sequence[str] = ()) -> str:
        args: List[str] = ["commit-tree", tree]
        for parent in parents:
            args.extend(["-p", parent])
        args.extend(["-m", message])
        return self.git(*args).stdout.strip()

    def update_ref(self, ref: str, new_value: str, expected_old: str | None) -> None:
        """Point ``ref`` at ``new_value`` only if it currently equals ``expected_old``.

        ``expected_old=None`` requires that ``ref`` does not exist yet.
        """

        old = expected_old if expected_old is not None else "0" * 40
        self.git("update-ref", ref, new_value, old)

    # -------------------------------------------------------------- remotes
    def push(self, remote: str, branch: str) -> None:
        """Push ``branch`` to ``remote``."""

        self.git("push", remote, branch)

    def commit_all(self, message: str, *, allow_empty: bool = False) -> str | None:
        """Add all unprotected changes to the index and create a commit.

        Returns the new commit SHA when a commit was created.  Returns ``None`` when
        there were no changes to commit (and ``allow_empty`` is ``False``).
        """

        self.git("add", "--all", *self._pathspec())

        commit_args: List[str] = ["commit", "-m", message]
        if allow_empty:
            commit_args.append("--allow-empty")

        commit = self.git(*commit_args, check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower() or "nothing added to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")

        return self.head()


def _relative_paths(root: Path, paths: Iterable[Path | str]) -> tuple[str, ...]:
    """POSIX paths of ``paths`` relative to ``root``; paths outside it are dropped."""

    relative: Set[str] = set()
    for raw in paths:
        path = Path(raw)
        if not path.is_absolute():
            path = root / path
        try:
            candidate = path.resolve().relative_to(root)
        except ValueError:
            continue
        if candidate.parts:
            relative.add(candidate.as_posix())
    return tuple(sorted(relative))


def _run(
    cwd: Path,
    args: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    command = ["git", *args]
    merged_env = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update(env)
    try:
        process = subprocess.run(
            command,
            cwd=cwd,
            env=merged_env,
            capture_output=True,
            text=False,
            check=False,
        )
    except OSError as error:
        raise GitError(f"git {' '.join(args)} could not start: {error}") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


__all__ = ["GitError", "GitRepository"]
