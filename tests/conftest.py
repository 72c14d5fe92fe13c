from __future__ import annotations

import subprocess
import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

import pytest
import yaml

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from fixloop.settings import Settings, default_config, resolve_settings  # noqa: E402

BUGGY_CALCULATOR = textwrap.dedent(
    """
    from __future__ import annotations


    def add(left: int, right: int) -> int:
        return left - right
    """
).lstrip()

FIXED_CALCULATOR = BUGGY_CALCULATOR.replace("left - right", "left + right")

CHECK_SCRIPT = textwrap.dedent(
    """
    import sys

    sys.dont_write_bytecode = True
    sys.path.insert(0, "src")
    from tiny_app.calculator import add

    result = add(2, 3)
    print(f"add(2, 3) == {result}")
    sys.exit(0 if result == 5 else 1)
    """
).lstrip()


def run_git(root: Path, *args: str) -> str:
    completed = subprocess.run(
        ["git", *args],
        cwd=root,
        check=True,
        capture_output=True,
        text=True,
    )
    return completed.stdout.strip()


@dataclass(slots=True)
class TinyRepo:
    """Fixture payload representing the synthetic repository under test."""

    root: Path
    config_path: Path
    scripts: Path

    def write_script(self, name: str, body: str) -> Path:
        """Write a helper script outside the repository so commits never include it."""

        path = self.scripts / name
        path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
        return path

    def configure(
        self,
        *,
        producer: Sequence[str] | None = None,
        max_iterations: int = 3,
        test_command: Sequence[str] | None = None,
        test_timeout: float = 60,
        **sections: Any,
    ) -> Settings:
        config = default_config()
        config["project"]["name"] = "tiny-app"
        config["iteration"]["max_iterations"] = max_iterations
        command = list(test_command or [sys.executable, "check.py"])
        config["testing"]["timeout_seconds"] = test_timeout
        config["testing"]["full"] = {"command": command}
        config["testing"]["smoke"] = {"command": command}
        config["tracker"]["holder_id"] = "tests"
        config["producer"]["tiers"]["standard"]["command"] = list(
            producer or [sys.executable, "-c", "pass"]
        )
        config["producer"]["tiers"]["standard"]["timeout_seconds"] = 60
        for name, values in sections.items():
            config.setdefault(name, {}).update(values)
        with self.config_path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config, handle, sort_keys=False)
        return resolve_settings(config, config_path=self.config_path, environ={})

    def head(self) -> str:
        return run_git(self.root, "rev-parse", "HEAD")

    def calculator(self) -> str:
        return (self.root / "src" / "tiny_app" / "calculator.py").read_text(encoding="utf-8")


@pytest.fixture()
def tiny_repo(tmp_path: Path) -> TinyRepo:
    """Create a tiny git repository whose check script fails until ``add`` is fixed."""

    repo_root = tmp_path / "tiny-repo"
    scripts = tmp_path / "scripts"
    repo_root.mkdir()
    scripts.mkdir()

    run_git(repo_root, "init")
    run_git(repo_root, "config", "user.email", "fixloop@example.com")
    run_git(repo_root, "config", "user.name", "fixloop tests")

    src_dir = repo_root / "src" / "tiny_app"
    src_dir.mkdir(parents=True)
    (src_dir / "__init__.py").write_text("", encoding="utf-8")
    (src_dir / "calculator.py").write_text(BUGGY_CALCULATOR, encoding="utf-8")
    (repo_root / "check.py").write_text(CHECK_SCRIPT, encoding="utf-8")
    (repo_root / ".gitignore").write_text("/data\n/fixloop.yaml\n__pycache__/\n", encoding="utf-8")

    run_git(repo_root, "add", ".")
    run_git(repo_root, "commit", "-m", "Initial tiny repo state")

    return TinyRepo(root=repo_root, config_path=repo_root / "fixloop.yaml", scripts=scripts)


@pytest.fixture()
def fixing_script(tiny_repo: TinyRepo) -> Path:
    """Producer script that repairs ``add``."""

    return tiny_repo.write_script(
        "fix.py",
        f"""
        from pathlib import Path

        Path("src/tiny_app/calculator.py").write_text({FIXED_CALCULATOR!r}, encoding="utf-8")
        """,
    )
