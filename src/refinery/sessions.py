from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from refinery.observability import log_event
from refinery.shell import CommandError, run


LOGGER = logging.getLogger("refinery.sessions")


def session_name(rig_name: str) -> str:
    return f"gt-{rig_name}-refinery"


class SessionOracle(Protocol):
    def has_session(self, name: str) -> bool: ...

    def new_session(self, name: str, *, cwd: Path) -> None: ...

    def set_environment(self, name: str, key: str, value: str) -> None: ...

    def send_keys(self, name: str, keys: str) -> None: ...

    def kill_session(self, name: str) -> None: ...


class TmuxSessions:
    """Detached tmux sessions hosting background refinery agents."""

    def __init__(self, *, tmux_binary: str = "tmux", timeout_seconds: int | None = None) -> None:
        self._tmux = tmux_binary
        self._timeout = float(timeout_seconds) if timeout_seconds is not None else None

    def has_session(self, name: str) -> bool:
        # list-sessions exits non-zero when no tmux server is running.
        try:
            out = run(
                [self._tmux, "list-sessions", "-F", "#{session_name}"],
                check=False,
                timeout=self._timeout,
            )
        except CommandError:
            return False
        return name in {line.strip() for line in out.splitlines()}

    def new_session(self, name: str, *, cwd: Path) -> None:
        log_event(LOGGER, "session_created", session=name, cwd=str(cwd))
        self._run("new-session", "-d", "-s", name, "-c", str(cwd))

    def set_environment(self, name: str, key: str, value: str) -> None:
        self._run("set-environment", "-t", name, key, value)

    def send_keys(self, name: str, keys: str) -> None:
        log_event(LOGGER, "session_keys_sent", session=name)
        self._run("send-keys", "-t", name, keys, "Enter")

    def kill_session(self, name: str) -> None:
        log_event(LOGGER, "session_killed", session=name)
        self._run("kill-session", "-t", name)

    def _run(self, *args: str) -> str:
        return run([self._tmux, *args], timeout=self._timeout)
