"""Append-only archive of failed remediation attempts."""

from __future__ import annotations

import logging

from .errors import ArchiveError
from .memory.schema import Attempt, Defect
from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)


def archive_commit_message(defect: Defect, attempt: Attempt) -> str:
    """Commit message for the archive entry of ``attempt``."""
    subject = f"fixloop: archive attempt {attempt.ordinal} for defect #{defect.id} ({attempt.outcome.value})"
    body = [f"Defect: {defect.title}"]
    if attempt.change_ref:
        body.append(f"Producer commit: {attempt.change_ref}")
    if attempt.base_ref:
        body.append(f"Base revision: {attempt.base_ref}")
    if attempt.detail.strip():
        body.append(f"Detail: {attempt.detail.strip().splitlines()[0]}")
    return subject + "\n\n" + "\n".join(body)


class AttemptArchiver:
    """Record the working tree left by an attempt on the defect's WIP branch.

    Entries are written with ``commit-tree`` and a compare-and-swap
    ``update-ref``, so the branch only ever gains commits and the checked-out
    branch is never switched.
    """

    def __init__(
        self,
        repo: GitRepository,
        *,
        reset_after_archive: bool = True,
        push: bool = False,
        remote: str = "origin",
    ) -> None:
        self.repo = repo
        self.reset_after_archive = reset_after_archive
        self.push = push
        self.remote = remote

    def archive(self, defect: Defect, previous: Attempt) -> str:
        """Archive the tree left by ``previous`` and return the archive commit id."""

        branch = defect.archive_branch
        if not branch:
            raise ArchiveError(f"Defect #{defect.id} has no archive branch recorded")
        ref = f"refs/heads/{branch}"
        try:
            tip = self.repo.resolve(ref)
            parent = tip or previous.base_ref or self.repo.head()
            tree = self.repo.snapshot_tree()
            commit = self.repo.commit_tree(
                tree,
                archive_commit_message(defect, previous),
                parents=[parent] if parent else [],
            )
            self.repo.update_ref(ref, commit, tip)
            LOGGER.info("Archived attempt %d of defect #%d on %s as %s", previous.ordinal, defect.id, branch, commit[:12])
            if self.push:
                self.repo.push(self.remote, branch)
            if self.reset_after_archive and previous.base_ref:
                self.repo.reset_hard(previous.base_ref)
        except GitError as error:
            raise ArchiveError(f"Could not archive attempt {previous.ordinal} of defect #{defect.id}: {error}") from error
        return commit


__all__ = ["AttemptArchiver", "archive_commit_message"]
