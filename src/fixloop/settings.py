"""Configuration template and typed runtime settings."""

from __future__ import annotations

import copy
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping

import yaml

from .errors import ConfigError
from .tools.test_runner import FixtureManager, Scope, ScopeCommand

DEFAULT_CONFIG_NAME = "fixloop.yaml"

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "repo_root": ".",
    },
    "iteration": {
        "max_iterations": 5,
        "poll_interval_seconds": 300,
    },
    "testing": {
        "timeout_seconds": 1800,
        "smoke_first": False,
        "full": {"command": "pytest -q"},
        "smoke": {"command": "pytest -q -x -m smoke", "timeout_seconds": 300},
    },
    "fixtures": {
        "start": [],
        "stop": [],
        "timeout_seconds": 300,
    },
    "tracker": {
        "holder_id": "",
        "lease_ttl_seconds": 3600,
        "title_template": "Test failure: {scope} suite",
        "comment_output_limit": 20000,
        "labels": {
            "full": "fixloop:full-suite-failure",
            "smoke": "fixloop:smoke-suite-failure",
        },
    },
    "producer": {
        "tier": "standard",
        "tiers": {
            "standard": {
                "command": ["codex", "exec", "--full-auto", "-"],
                "timeout_seconds": 1800,
            },
            "deep": {
                "command": ["codex", "exec", "--full-auto", "-c", "model_reasoning_effort=high", "-"],
                "timeout_seconds": 3600,
            },
        },
    },
    "archive": {
        "branch_prefix": "fixloop/wip/defect-",
        "reset_after_archive": True,
        "push": False,
        "remote": "origin",
    },
    "paths": {
        "data": "data",
        "db_path": "data/fixloop.sqlite",
        "logs": "data/logs",
    },
}


@dataclass(slots=True)
class TierSettings:
    """Command used by the change producer for one remediation tier."""

    name: str
    command: tuple[str, ...]
    timeout: float = 1800.0


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the orchestrator and its collaborators."""

    repo_root: Path
    max_iterations: int = 5
    poll_interval: float = 300.0
    smoke_first: bool = False
    test_commands: Dict[Scope, ScopeCommand] = field(default_factory=dict)
    fixtures: FixtureManager = field(default_factory=FixtureManager)
    holder_id: str = ""
    lease_ttl: float = 3600.0
    title_template: str = "Test failure: {scope} suite"
    comment_output_limit: int = 20000
    labels: Dict[Scope, str] = field(default_factory=dict)
    tier: str = "standard"
    tiers: Dict[str, TierSettings] = field(default_factory=dict)
    branch_prefix: str = "fixloop/wip/defect-"
    reset_after_archive: bool = True
    archive_push: bool = False
    archive_remote: str = "origin"
    data_root: Path = Path("data")
    db_path: Path = Path("data/fixloop.sqlite")
    logs_root: Path = Path("data/logs")
    config_path: Path | None = None

    @property
    def active_tier(self) -> TierSettings:
        try:
            return self.tiers[self.tier]
        except KeyError:
            known = ", ".join(sorted(self.tiers)) or "none"
            raise ConfigError(f"Unknown remediation tier {self.tier!r} (configured: {known})") from None

    @property
    def protected_paths(self) -> list[Path]:
        """Paths the loop owns; git operations on the repository leave them alone."""
        paths = [self.data_root, self.db_path, self.logs_root]
        if self.config_path is not None:
            paths.append(self.config_path)
        return paths

    def defect_title(self, scope: Scope) -> str:
        return self.title_template.format(scope=scope.value)

    def label_for(self, scope: Scope) -> str:
        return self.labels.get(scope) or f"fixloop:{scope.value}-suite-failure"


def default_config() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def _as_int(value: Any, *, minimum: int | None = None) -> int | None:
    try:
        candidate = int(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _as_float(value: Any, *, minimum: float | None = None) -> float | None:
    try:
        candidate = float(value)
    except (TypeError, ValueError):
        return None
    if minimum is not None and candidate < minimum:
        return minimum
    return candidate


def _as_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    if isinstance(value, (int, float)):
        return bool(value)
    return None


def _section(config: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = config.get(name)
    return value if isinstance(value, Mapping) else {}


def _command_list(raw: Any, *, where: str) -> list[tuple[str, ...]]:
    """Accept a single command or a list of commands (string or argv form)."""
    if not raw:
        return []
    if isinstance(raw, str):
        raw = [raw]
    commands: list[tuple[str, ...]] = []
    for entry in raw:
        try:
            commands.append(ScopeCommand.parse(entry, timeout=0).command)
        except ValueError as error:
            raise ConfigError(f"{where}: {error}") from error
    return commands


def _resolve_path(value: Any, default: str, repo_root: Path) -> Path:
    candidate = Path(value.strip()) if isinstance(value, str) and value.strip() else Path(default)
    if not candidate.is_absolute():
        candidate = (repo_root / candidate).resolve()
    return candidate


def default_holder_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def resolve_repo_root(config: Mapping[str, Any], config_path: Path | None) -> Path:
    """Resolve ``project.repo_root`` relative to the config file's directory."""
    base = config_path.parent if config_path is not None else Path.cwd()
    raw = _section(config, "project").get("repo_root") or "."
    root = Path(str(raw))
    if not root.is_absolute():
        root = base / root
    return root.resolve()


def resolve_settings(
    config: Mapping[str, Any],
    *,
    repo_root: Path | str | None = None,
    config_path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Convert a raw configuration mapping into :class:`Settings`.

    Environment variables take precedence over the file:
    ``FIXLOOP_MAX_ITERATIONS``, ``FIXLOOP_TIER``, ``FIXLOOP_HOLDER_ID`` and
    ``FIXLOOP_TEST_TIMEOUT``.
    """

    env = os.environ if environ is None else environ
    root = Path(repo_root).resolve() if repo_root is not None else resolve_repo_root(config, config_path)
    settings = Settings(repo_root=root, config_path=config_path.resolve() if config_path is not None else None)

    iteration = _section(config, "iteration")
    max_iterations = _as_int(iteration.get("max_iterations"), minimum=1)
    if max_iterations is not None:
        settings.max_iterations = max_iterations
    poll_interval = _as_float(iteration.get("poll_interval_seconds"), minimum=0.0)
    if poll_interval is not None:
        settings.poll_interval = poll_interval

    testing = _section(config, "testing")
    default_timeout = _as_float(testing.get("timeout_seconds"), minimum=1.0) or 1800.0
    env_timeout = _as_float(env.get("FIXLOOP_TEST_TIMEOUT"), minimum=1.0)
    if env_timeout is not None:
        default_timeout = env_timeout
    smoke_first = _as_bool(testing.get("smoke_first"))
    if smoke_first is not None:
        settings.smoke_first = smoke_first
    fallback_commands = {Scope.FULL: "pytest -q", Scope.SMOKE: "pytest -q -x -m smoke"}
    for scope in Scope:
        scope_section = testing.get(scope.value)
        if not isinstance(scope_section, Mapping):
            scope_section = {"command": scope_section} if scope_section else {}
        timeout = _as_float(scope_section.get("timeout_seconds"), minimum=1.0)
        if env_timeout is not None or timeout is None:
            timeout = default_timeout
        try:
            settings.test_commands[scope] = ScopeCommand.parse(
                scope_section.get("command") or fallback_commands[scope],
                timeout=timeout,
            )
        except ValueError as error:
            raise ConfigError(f"testing.{scope.value}.command: {error}") from error

    fixtures = _section(config, "fixtures")
    settings.fixtures = FixtureManager(
        start=_command_list(fixtures.get("start"), where="fixtures.start"),
        stop=_command_list(fixtures.get("stop"), where="fixtures.stop"),
        timeout=_as_float(fixtures.get("timeout_seconds"), minimum=1.0) or 300.0,
    )

    tracker = _section(config, "tracker")
    settings.holder_id = (
        str(env.get("FIXLOOP_HOLDER_ID") or tracker.get("holder_id") or "").strip() or default_holder_id()
    )
    lease_ttl = _as_float(tracker.get("lease_ttl_seconds"), minimum=1.0)
    if lease_ttl is not None:
        settings.lease_ttl = lease_ttl
    title_template = tracker.get("title_template")
    if isinstance(title_template, str) and title_template.strip():
        settings.title_template = title_template.strip()
    output_limit = _as_int(tracker.get("comment_output_limit"), minimum=0)
    if output_limit is not None:
        settings.comment_output_limit = output_limit
    labels = tracker.get("labels")
    if isinstance(labels, Mapping):
        for scope in Scope:
            label = labels.get(scope.value)
            if isinstance(label, str) and label.strip():
                settings.labels[scope] = label.strip()

    producer = _section(config, "producer")
    tiers = producer.get("tiers")
    if not isinstance(tiers, Mapping):
        tiers = DEFAULT_CONFIG_TEMPLATE["producer"]["tiers"]
    for name, entry in tiers.items():
        if not isinstance(entry, Mapping) or not entry.get("command"):
            raise ConfigError(f"producer.tiers.{name} must define a command")
        try:
            command = ScopeCommand.parse(entry["command"], timeout=0).command
        except ValueError as error:
            raise ConfigError(f"producer.tiers.{name}.command: {error}") from error
        settings.tiers[str(name)] = TierSettings(
            name=str(name),
            command=command,
            timeout=_as_float(entry.get("timeout_seconds"), minimum=1.0) or 1800.0,
        )
    tier = env.get("FIXLOOP_TIER") or producer.get("tier")
    if isinstance(tier, str) and tier.strip():
        settings.tier = tier.strip()

    archive = _section(config, "archive")
    prefix = archive.get("branch_prefix")
    if isinstance(prefix, str) and prefix.strip():
        settings.branch_prefix = prefix.strip()
    reset_after_archive = _as_bool(archive.get("reset_after_archive"))
    if reset_after_archive is not None:
        settings.reset_after_archive = reset_after_archive
    push = _as_bool(archive.get("push"))
    if push is not None:
        settings.archive_push = push
    remote = archive.get("remote")
    if isinstance(remote, str) and remote.strip():
        settings.archive_remote = remote.strip()

    env_max_iterations = _as_int(env.get("FIXLOOP_MAX_ITERATIONS"), minimum=1)
    if env_max_iterations is not None:
        settings.max_iterations = env_max_iterations

    paths = _section(config, "paths")
    settings.data_root = _resolve_path(paths.get("data"), "data", root)
    settings.db_path = _resolve_path(paths.get("db_path"), str(settings.data_root / "fixloop.sqlite"), root)
    settings.logs_root = _resolve_path(paths.get("logs"), str(settings.data_root / "logs"), root)
    return settings


__all__ = [
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "Settings",
    "TierSettings",
    "default_config",
    "default_holder_id",
    "load_config",
    "resolve_repo_root",
    "resolve_settings",
    "write_config",
]
