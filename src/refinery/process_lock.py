from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import errno
import json
import logging
import os
from pathlib import Path
import secrets

from refinery.observability import log_event


LOGGER = logging.getLogger("refinery.process_lock")


class ProcessLockError(RuntimeError):
    """Raised when another live process already drives this rig's queue."""


@dataclass(frozen=True)
class LockOwner:
    pid: int | None = None
    command: str | None = None
    started_at: str | None = None
    token: str | None = None


def lock_path_for(base_dir: Path, rig_name: str) -> Path:
    return base_dir / f"refinery-{rig_name}.lock"


class RigProcessLock:
    """Exclusive-create lock file recording the owning pid and a random token.

    A lock whose owner pid is dead is reclaimed once. Release only removes the
    file while it is still the same inode carrying our token.
    """

    def __init__(self, lock_path: Path, *, command: str) -> None:
        self._lock_path = lock_path
        self._command = command
        self._inode: int | None = None
        self._token: str | None = None

    @property
    def held(self) -> bool:
        return self._token is not None

    def acquire(self) -> None:
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(2):
            try:
                fd = os.open(self._lock_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if attempt == 0 and self._reclaim_if_owner_dead():
                    continue
                raise ProcessLockError(self._busy_message()) from None
            self._write_owner(fd)
            log_event(LOGGER, "process_lock_acquired", path=str(self._lock_path))
            return
        raise ProcessLockError(self._busy_message())

    def release(self) -> None:
        inode, token = self._inode, self._token
        self._inode = None
        self._token = None
        if inode is None or token is None:
            return
        try:
            if self._lock_path.stat().st_ino != inode:
                return
        except FileNotFoundError:
            return
        if read_lock_owner(self._lock_path).token != token:
            return
        self._lock_path.unlink(missing_ok=True)
        log_event(LOGGER, "process_lock_released", path=str(self._lock_path))

    def _write_owner(self, fd: int) -> None:
        token = secrets.token_hex(16)
        payload = {
            "pid": os.getpid(),
            "command": self._command,
            "started_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "token": token,
        }
        try:
            self._inode = os.fstat(fd).st_ino
            os.write(fd, (json.dumps(payload, sort_keys=True) + "\n").encode("utf-8"))
            os.fsync(fd)
        except Exception:
            os.close(fd)
            self._lock_path.unlink(missing_ok=True)
            self._inode = None
            raise
        os.close(fd)
        self._token = token

    def _reclaim_if_owner_dead(self) -> bool:
        owner = read_lock_owner(self._lock_path)
        if owner.pid is None or owner.pid == os.getpid() or pid_is_running(owner.pid):
            return False
        try:
            self._lock_path.unlink()
        except FileNotFoundError:
            return True
        except OSError:
            return False
        log_event(LOGGER, "process_lock_reclaimed", path=str(self._lock_path), stale_pid=owner.pid)
        return True

    def _busy_message(self) -> str:
        owner = read_lock_owner(self._lock_path)
        parts = []
        if owner.pid is not None:
            parts.append(f"pid={owner.pid}")
        if owner.command:
            parts.append(f"command={owner.command}")
        detail = f" ({', '.join(parts)})" if parts else ""
        return (
            f"Another refinery process appears active{detail}. Lock file: {self._lock_path}. "
            "If the lock is stale, stop the refinery and remove the lock file, then retry."
        )


def read_lock_owner(lock_path: Path) -> LockOwner:
    try:
        text = lock_path.read_text(encoding="utf-8").strip()
    except OSError:
        return LockOwner()
    if not text:
        return LockOwner()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return LockOwner()
    if not isinstance(payload, dict):
        return LockOwner()

    pid = payload.get("pid")
    command = payload.get("command")
    started_at = payload.get("started_at")
    token = payload.get("token")
    return LockOwner(
        pid=pid if isinstance(pid, int) and not isinstance(pid, bool) else None,
        command=command if isinstance(command, str) else None,
        started_at=started_at if isinstance(started_at, str) else None,
        token=token if isinstance(token, str) else None,
    )


def pid_is_running(pid: int) -> bool:
    """Signal ``pid`` with 0; a permission error still means it exists."""
    if pid < 1:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError as exc:
        return exc.errno != errno.ESRCH
    return True
