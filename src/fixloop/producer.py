"""Change producer that delegates remediation to an external command."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Mapping, Sequence

from .contracts import Committed, NoChange, ProducerOutcome
from .memory.schema import Attempt, Defect
from .prompts import render_fix_prompt
from .settings import TierSettings
from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

PROMPT_FILE_PLACEHOLDER = "{prompt_file}"

PromptRenderer = Callable[[Defect, Sequence[Attempt], Path], str]


class CommandProducer:
    """Run the selected remediation tier's command and commit what it changed.

    The command receives the prompt on stdin, or through a temporary file when
    an argument contains ``{prompt_file}``.  The producer only reports whether
    a commit exists; it has no access to the tracker or the test runner.
    """

    def __init__(
        self,
        repo: GitRepository,
        tier: TierSettings,
        *,
        env: Mapping[str, str] | None = None,
        render_prompt: PromptRenderer = render_fix_prompt,
    ) -> None:
        self.repo = repo
        self.tier = tier
        self._env = dict(env or {})
        self._render_prompt = render_prompt

    def attempt_fix(self, defect: Defect, prior_attempts: Sequence[Attempt]) -> ProducerOutcome:
        prompt = self._render_prompt(defect, prior_attempts, self.repo.root)
        base = self.repo.head()
        ordinal = len(prior_attempts) + 1

        prompt_path: str | None = None
        command = list(self.tier.command)
        if any(PROMPT_FILE_PLACEHOLDER in part for part in command):
            handle, prompt_path = tempfile.mkstemp(prefix="fixloop-prompt-", suffix=".md")
            with os.fdopen(handle, "w", encoding="utf-8") as stream:
                stream.write(prompt)
            command = [part.replace(PROMPT_FILE_PLACEHOLDER, prompt_path) for part in command]

        env = os.environ.copy()
        env.update(self._env)
        env["FIXLOOP_DEFECT_ID"] = str(defect.id)
        LOGGER.info("Running %s producer for defect #%d: %s", self.tier.name, defect.id, shlex.join(command))
        try:
            process = subprocess.run(
                command,
                cwd=self.repo.root,
                env=env,
                input=None if prompt_path else prompt,
                capture_output=True,
                text=True,
                timeout=self.tier.timeout,
                check=False,
            )
        except OSError as error:
            return NoChange(f"producer command could not start: {error}")
        except subprocess.TimeoutExpired:
            return NoChange(f"producer command exceeded {self.tier.timeout:g}s")
        finally:
            if prompt_path and os.path.exists(prompt_path):
                os.unlink(prompt_path)

        if process.returncode != 0:
            detail = (process.stderr or "").strip() or (process.stdout or "").strip()
            first_line = detail.splitlines()[0] if detail else ""
            return NoChange(f"producer command exited {process.returncode}: {first_line}".rstrip(": "))

        message = f"fixloop: attempt {ordinal} for defect #{defect.id}\n\n{defect.title}"
        try:
            sha = self.repo.commit_all(message) if self.repo.has_changes() else None
            head = self.repo.head()
        except GitError as error:
            return NoChange(f"could not commit producer changes: {error}")
        if sha:
            return Committed(sha)
        if head and head != base:
            # The command committed on its own.
            return Committed(head)
        return NoChange("producer made no change")


__all__ = ["CommandProducer", "PROMPT_FILE_PLACEHOLDER"]
