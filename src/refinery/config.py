from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import tomllib
from typing import cast


_DEFAULT_MAIL_COMMAND: tuple[str, ...] = ("bd", "mail", "send")
_DEFAULT_AGENT_COMMAND = "claude --dangerously-skip-permissions"
# An empty merge_queue.test_command turns verification off.
DEFAULT_TEST_COMMAND = "go test ./..."


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    rig_name: str
    poll_interval_seconds: int = 10
    command_timeout_seconds: int | None = None

    @property
    def rig_dir(self) -> Path:
        return self.base_dir / self.rig_name

    @property
    def state_path(self) -> Path:
        return self.rig_dir / "refinery.json"

    @property
    def events_path(self) -> Path:
        return self.base_dir / "events.jsonl"


@dataclass(frozen=True)
class RepoConfig:
    path: Path
    remote: str = "origin"
    default_branch: str = "main"
    integration_branch: str | None = None
    branch_prefix: str = "polecat"

    @property
    def target_branch(self) -> str:
        if self.integration_branch:
            return self.integration_branch
        return self.default_branch


@dataclass(frozen=True)
class MergeConfig:
    run_tests: bool = True
    test_command: str = DEFAULT_TEST_COMMAND
    delete_merged_branches: bool = True
    push_retry_count: int = 3
    push_retry_delay_ms: int = 1000


@dataclass(frozen=True)
class NotifyConfig:
    enabled: bool = True
    mail_command: tuple[str, ...] = _DEFAULT_MAIL_COMMAND


@dataclass(frozen=True)
class SessionConfig:
    agent_command: str = _DEFAULT_AGENT_COMMAND


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    repo: RepoConfig
    merge: MergeConfig = field(default_factory=MergeConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    session: SessionConfig = field(default_factory=SessionConfig)


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        document = tomllib.load(fh)

    runtime_section = _Section.required(document, "runtime")
    repo_section = _Section.required(document, "repo")
    merge_section = _Section.optional(document, "merge_queue")
    notify_section = _Section.optional(document, "notify")
    session_section = _Section.optional(document, "session")

    runtime = RuntimeConfig(
        base_dir=runtime_section.path("base_dir"),
        rig_name=runtime_section.text("rig_name"),
        poll_interval_seconds=runtime_section.integer("poll_interval_seconds", 10, minimum=1),
        command_timeout_seconds=runtime_section.optional_integer(
            "command_timeout_seconds", minimum=1
        ),
    )
    if "/" in runtime.rig_name:
        raise ConfigError("runtime.rig_name must not contain '/'")

    repo = RepoConfig(
        path=repo_section.path("path"),
        remote=repo_section.text("remote", "origin"),
        default_branch=repo_section.text("default_branch", "main"),
        integration_branch=repo_section.optional_text("integration_branch"),
        branch_prefix=repo_section.text("branch_prefix", "polecat").strip("/"),
    )
    if not repo.branch_prefix:
        raise ConfigError("repo.branch_prefix must not be empty")

    merge = MergeConfig(
        run_tests=merge_section.flag("run_tests", True),
        test_command=merge_section.stripped("test_command", DEFAULT_TEST_COMMAND),
        delete_merged_branches=merge_section.flag("delete_merged_branches", True),
        push_retry_count=merge_section.integer("push_retry_count", 3, minimum=0),
        push_retry_delay_ms=merge_section.integer("push_retry_delay_ms", 1000, minimum=0),
    )

    notify = NotifyConfig(
        enabled=notify_section.flag("enabled", True),
        mail_command=notify_section.strings("mail_command", _DEFAULT_MAIL_COMMAND),
    )
    if notify.enabled and not notify.mail_command:
        raise ConfigError("notify.mail_command must not be empty when notify.enabled is true")

    session = SessionConfig(
        agent_command=session_section.text("agent_command", _DEFAULT_AGENT_COMMAND),
    )

    return AppConfig(runtime=runtime, repo=repo, merge=merge, notify=notify, session=session)


class _Section:
    """Typed reads from one TOML table; error messages name ``<table>.<key>``."""

    def __init__(self, name: str, data: dict[str, object]) -> None:
        self.name = name
        self._data = data

    @classmethod
    def required(cls, document: dict[str, object], name: str) -> _Section:
        value = document.get(name)
        if not isinstance(value, dict):
            raise ConfigError(f"[{name}] is required and must be a TOML table")
        return cls(name, cast(dict[str, object], value))

    @classmethod
    def optional(cls, document: dict[str, object], name: str) -> _Section:
        value = document.get(name, {})
        if not isinstance(value, dict):
            raise ConfigError(f"[{name}] must be a TOML table when provided")
        return cls(name, cast(dict[str, object], value))

    def _key(self, key: str) -> str:
        return f"{self.name}.{key}"

    def text(self, key: str, default: str | None = None) -> str:
        if key not in self._data:
            if default is None:
                raise ConfigError(f"{self._key(key)} is required and must be a non-empty string")
            return default
        value = self._data[key]
        if not isinstance(value, str) or not value:
            raise ConfigError(f"{self._key(key)} must be a non-empty string")
        return value

    def optional_text(self, key: str) -> str | None:
        if key not in self._data:
            return None
        return self.text(key)

    def stripped(self, key: str, default: str = "") -> str:
        value = self._data.get(key, default)
        if not isinstance(value, str):
            raise ConfigError(f"{self._key(key)} must be a string")
        return value.strip()

    def path(self, key: str) -> Path:
        return Path(self.text(key)).expanduser()

    def integer(self, key: str, default: int, *, minimum: int | None = None) -> int:
        value = self._data.get(key, default)
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigError(f"{self._key(key)} must be an integer")
        if minimum is not None and value < minimum:
            raise ConfigError(f"{self._key(key)} must be >= {minimum}")
        return value

    def optional_integer(self, key: str, *, minimum: int) -> int | None:
        value = self._data.get(key)
        if value is None:
            return None
        if not isinstance(value, int) or isinstance(value, bool) or value < minimum:
            raise ConfigError(f"{self._key(key)} must be an integer >= {minimum} if provided")
        return value

    def flag(self, key: str, default: bool) -> bool:
        value = self._data.get(key, default)
        if not isinstance(value, bool):
            raise ConfigError(f"{self._key(key)} must be a boolean")
        return value

    def strings(self, key: str, default: tuple[str, ...]) -> tuple[str, ...]:
        if key not in self._data:
            return default
        value = self._data[key]
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ConfigError(f"{self._key(key)} must be a list of strings")
        return tuple(value)
