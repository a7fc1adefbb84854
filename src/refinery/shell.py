from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
import logging
import os
import subprocess


class CommandError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        argv: tuple[str, ...] = (),
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.argv = argv
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def detail(self) -> str:
        """Most useful single line of diagnostics, stderr first."""
        for text in (self.stderr, self.stdout):
            stripped = text.strip()
            if stripped:
                return stripped
        if self.returncode is None:
            return str(self)
        return f"exit status {self.returncode}"


LOGGER = logging.getLogger("refinery.shell")


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout: float | None = None,
    extra_env: Mapping[str, str] | None = None,
) -> str:
    env = {**os.environ, **extra_env} if extra_env else None
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            env=env,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            " ".join(argv),
            timeout,
        )
        raise CommandError(
            f"Command timed out after {timeout}s\ncmd: {' '.join(argv)}",
            argv=tuple(argv),
        ) from exc
    except FileNotFoundError as exc:
        LOGGER.error("event=command_not_found command=%s", " ".join(argv))
        raise CommandError(
            f"Command not found: {argv[0]}",
            argv=tuple(argv),
        ) from exc
    if check and proc.returncode != 0:
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            " ".join(argv),
            proc.returncode,
            _preview(proc.stderr),
            _preview(proc.stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {' '.join(argv)}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{proc.stdout}\n"
            f"stderr:\n{proc.stderr}",
            argv=tuple(argv),
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
    return proc.stdout


def describe_error(exc: BaseException) -> str:
    if isinstance(exc, CommandError):
        return exc.detail
    return str(exc)
