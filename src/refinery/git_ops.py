from __future__ import annotations

from dataclasses import dataclass
import logging
import shlex
from typing import Literal

from refinery.config import RepoConfig
from refinery.observability import log_event
from refinery.shell import CommandError, run


LOGGER = logging.getLogger("refinery.git_ops")

MergeOutcomeKind = Literal["ok", "conflict", "error"]


@dataclass(frozen=True)
class MergeOutcome:
    kind: MergeOutcomeKind
    detail: str = ""
    conflicted_paths: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return self.kind == "ok"


class GitWorkingCopy:
    """Working copy owned by the refinery while it integrates a merge request.

    Every method shells out to ``git -C <path>``. Failures surface as
    ``CommandError`` except ``merge``, which classifies its own failure.
    """

    def __init__(self, repo: RepoConfig, *, timeout_seconds: int | None = None) -> None:
        self.repo = repo
        self.path = repo.path
        self._timeout = float(timeout_seconds) if timeout_seconds is not None else None

    def list_remote_branches(self, prefix: str) -> tuple[str, ...]:
        pattern = f"{self.repo.remote}/{prefix}/*"
        try:
            out = self._git("branch", "-r", "--list", pattern)
        except CommandError:
            return ()
        branches: list[str] = []
        remote_prefix = f"{self.repo.remote}/"
        for line in out.splitlines():
            name = line.strip()
            if not name or "->" in name:
                continue
            if name.startswith(remote_prefix):
                name = name[len(remote_prefix) :]
            branches.append(name)
        return tuple(branches)

    def fetch(self, branch: str) -> None:
        log_event(LOGGER, "git_fetch", branch=branch, remote=self.repo.remote)
        self._git("fetch", self.repo.remote, branch)

    def checkout(self, branch: str) -> None:
        log_event(LOGGER, "git_checkout", branch=branch)
        self._git("checkout", branch)

    def pull(self, branch: str) -> None:
        log_event(LOGGER, "git_pull", branch=branch, remote=self.repo.remote)
        self._git("pull", self.repo.remote, branch)

    def merge(self, branch: str, *, message: str) -> MergeOutcome:
        ref = f"{self.repo.remote}/{branch}"
        log_event(LOGGER, "git_merge", ref=ref)
        try:
            self._git("merge", "--no-ff", "-m", message, ref)
        except CommandError as exc:
            conflicted = self.conflicted_paths()
            if conflicted:
                log_event(
                    LOGGER,
                    "git_merge_conflict",
                    ref=ref,
                    conflicted_path_count=len(conflicted),
                )
                return MergeOutcome(
                    kind="conflict", detail=exc.detail, conflicted_paths=conflicted
                )
            return MergeOutcome(kind="error", detail=exc.detail)
        return MergeOutcome(kind="ok")

    def conflicted_paths(self) -> tuple[str, ...]:
        try:
            out = self._git("diff", "--name-only", "--diff-filter=U")
        except CommandError:
            return ()
        return tuple(line.strip() for line in out.splitlines() if line.strip())

    def abort_merge(self) -> None:
        log_event(LOGGER, "git_merge_abort")
        self._git("merge", "--abort")

    def reset_hard(self, ref: str) -> None:
        log_event(LOGGER, "git_reset_hard", ref=ref)
        self._git("reset", "--hard", ref)

    def push(self, branch: str) -> None:
        log_event(LOGGER, "git_push", branch=branch, remote=self.repo.remote)
        self._git("push", self.repo.remote, branch)

    def delete_branch(self, branch: str) -> None:
        log_event(LOGGER, "git_branch_delete", branch=branch, remote=self.repo.remote)
        self._git("push", self.repo.remote, "--delete", branch)

    def head_sha(self) -> str:
        return self._git("rev-parse", "HEAD").strip()

    def run_verification(self, command: str) -> None:
        argv = shlex.split(command)
        if not argv:
            return
        log_event(LOGGER, "verification_started", command=command)
        run(argv, cwd=self.path, timeout=self._timeout)

    def _git(self, *args: str) -> str:
        return run(["git", "-C", str(self.path), *args], timeout=self._timeout)
