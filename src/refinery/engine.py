"""Integration engine: land one claimed merge request on its target branch.

The sequence for a merge request is:

1. Claim it (``open -> in_progress``) and persist it as ``current_mr``.
2. Fetch the source branch from the remote.
3. Check out the target branch and pull it (pull failures are ignored).
4. ``git merge --no-ff`` the remote source branch.
5. Run the verification command when configured.
6. Push the target branch with bounded exponential backoff.
7. Close the merge request as ``merged`` and tell the worker.

A failing step reopens the merge request (``in_progress -> open``) with the
failure recorded in ``error``; failed verification or push first resets
the target branch to the tip it had before the merge. Conflicts also send
the worker rebase instructions. Every disposition goes through
``complete_mr`` so the state machine and persisted record stay consistent
whichever step failed.

Notifications, event feed writes, branch cleanup and state saves are side
channels: their failures are logged and collected as warnings on the
``MergeResult`` and never change the disposition.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
import logging
import time

from refinery.config import MergeConfig
from refinery.events import EventSink, EventType, MergeEvent
from refinery.git_ops import GitWorkingCopy
from refinery.models import (
    CloseReason,
    FailureType,
    MergeRequest,
    MergeResult,
    TransitionError,
    failure_label,
    should_assign_to_worker,
    utc_now,
)
from refinery.notifier import MailMessage, Notifier, conflict_message, merged_message
from refinery.observability import log_event
from refinery.retry import PushRetryError, push_with_retry
from refinery.shell import CommandError, describe_error
from refinery.state import StateFormatError, StateStore


LOGGER = logging.getLogger("refinery.engine")

CONFLICT_ERROR = "merge conflict - polecat must rebase"


class MergeEngine:
    def __init__(
        self,
        *,
        rig_name: str,
        store: StateStore,
        git: GitWorkingCopy,
        merge_config: MergeConfig,
        notifier: Notifier,
        events: EventSink,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._rig_name = rig_name
        self._store = store
        self._git = git
        self._config = merge_config
        self._notifier = notifier
        self._events = events
        self._sleep = sleep
        self._clock = clock

    @property
    def actor(self) -> str:
        return f"{self._rig_name}/refinery"

    def process_mr(self, mr: MergeRequest) -> MergeResult:
        try:
            mr.claim()
        except TransitionError as exc:
            return MergeResult(error=f"cannot claim MR: {exc}")

        warnings: list[str] = []
        self._save_current(mr, warnings)
        self._emit("merge_started", mr, warnings=warnings)
        try:
            return self._integrate(mr, warnings)
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("event=merge_crashed mr_id=%s", mr.id)
            if mr.is_closed:
                return MergeResult(
                    success=mr.close_reason == "merged",
                    error=f"unexpected error: {exc}",
                    warnings=tuple(warnings),
                )
            return self._fail(mr, warnings, error=f"unexpected error: {exc}")

    def complete_mr(
        self, mr: MergeRequest, close_reason: CloseReason | None, error: str
    ) -> list[str]:
        """Close ``mr`` with ``close_reason``, or reopen it when no reason is given.

        Always clears ``current_mr``. Returns warnings for side-channel
        failures (state load/save, disallowed transitions).
        """
        warnings: list[str] = []
        now = self._clock()
        if not mr.is_closed:
            mr.error = error
        try:
            if close_reason is not None:
                mr.close(close_reason)
            else:
                mr.reopen()
        except TransitionError as exc:
            log_event(
                LOGGER, "merge_transition_failed", level=logging.WARNING, mr_id=mr.id, error=str(exc)
            )
            warnings.append(f"failed to {'close' if close_reason else 'reopen'} MR: {exc}")

        try:
            state = self._store.load()
        except (OSError, StateFormatError) as exc:
            log_event(LOGGER, "state_load_failed", level=logging.WARNING, error=str(exc))
            warnings.append(f"state load failed: {exc}")
            return warnings

        # Closed records stay registered; discovery skips their branches.
        state.current_mr = None
        state.pending_mrs[mr.id] = mr
        if close_reason == "merged":
            state.last_merge_at = now
            state.stats.record_merge(now)
        elif close_reason == "superseded":
            self._emit("merge_skipped", mr, reason="superseded", warnings=warnings)
        elif close_reason is None:
            state.stats.record_failure(now)

        try:
            self._store.save(state)
        except OSError as exc:
            log_event(LOGGER, "state_save_failed", level=logging.WARNING, error=str(exc))
            warnings.append(f"state save failed: {exc}")
        return warnings

    def _integrate(self, mr: MergeRequest, warnings: list[str]) -> MergeResult:
        try:
            self._git.fetch(mr.branch)
        except CommandError as exc:
            return self._fail(
                mr, warnings, error=f"fetch failed: {describe_error(exc)}", failure="fetch_fail"
            )

        try:
            self._git.checkout(mr.target_branch)
        except CommandError as exc:
            return self._fail(
                mr,
                warnings,
                error=f"checkout target failed: {describe_error(exc)}",
                failure="checkout_fail",
            )

        try:
            self._git.pull(mr.target_branch)
        except CommandError as exc:
            self._warn(warnings, "git_pull_failed", f"pull failed: {describe_error(exc)}")

        pre_merge_tip = self._resolve_head(warnings)
        outcome = self._git.merge(mr.branch, message=f"Merge {mr.branch} from {mr.worker}")
        if outcome.kind == "conflict":
            return self._handle_conflict(mr, warnings)
        if outcome.kind == "error":
            return self._fail(
                mr, warnings, error=f"merge failed: {outcome.detail}", failure="merge_fail"
            )

        if self._config.run_tests and self._config.test_command:
            try:
                self._git.run_verification(self._config.test_command)
            except CommandError as exc:
                self._rollback(pre_merge_tip, warnings)
                return self._fail(
                    mr,
                    warnings,
                    error=f"tests failed: {describe_error(exc)}",
                    failure="tests_fail",
                    tests_failed=True,
                )

        try:
            push_with_retry(
                lambda: self._git.push(mr.target_branch),
                retry_count=self._config.push_retry_count,
                retry_delay_ms=self._config.push_retry_delay_ms,
                sleep=self._sleep,
            )
        except PushRetryError as exc:
            self._rollback(pre_merge_tip, warnings)
            return self._fail(mr, warnings, error=f"push failed: {exc}", failure="push_fail")

        merge_commit = self._resolve_head(warnings) or ""
        warnings.extend(self.complete_mr(mr, "merged", ""))
        self._emit("merged", mr, warnings=warnings)
        self._notify(merged_message(self._rig_name, mr), warnings)

        if self._config.delete_merged_branches:
            try:
                self._git.delete_branch(mr.branch)
            except CommandError as exc:
                self._warn(
                    warnings, "git_branch_delete_failed", f"branch delete failed: {describe_error(exc)}"
                )

        return MergeResult(success=True, merge_commit=merge_commit, warnings=tuple(warnings))

    def _handle_conflict(self, mr: MergeRequest, warnings: list[str]) -> MergeResult:
        try:
            self._git.abort_merge()
        except CommandError as exc:
            self._warn(warnings, "git_merge_abort_failed", f"merge abort failed: {describe_error(exc)}")
        self._log_failure(mr, "conflict", "merge conflict")
        self._emit("merge_failed", mr, reason="merge conflict", warnings=warnings)
        warnings.extend(self.complete_mr(mr, None, CONFLICT_ERROR))
        self._notify(
            conflict_message(self._rig_name, mr, remote=self._git.repo.remote), warnings
        )
        return MergeResult(
            error="merge conflict",
            conflict=True,
            failure="conflict",
            warnings=tuple(warnings),
        )

    def _fail(
        self,
        mr: MergeRequest,
        warnings: list[str],
        *,
        error: str,
        failure: FailureType | None = None,
        tests_failed: bool = False,
    ) -> MergeResult:
        self._log_failure(mr, failure, error)
        self._emit("merge_failed", mr, reason=error, warnings=warnings)
        warnings.extend(self.complete_mr(mr, None, error))
        return MergeResult(
            error=error,
            tests_failed=tests_failed,
            failure=failure,
            warnings=tuple(warnings),
        )

    def _log_failure(self, mr: MergeRequest, failure: FailureType | None, error: str) -> None:
        log_event(
            LOGGER,
            "merge_failed",
            level=logging.WARNING,
            mr_id=mr.id,
            branch=mr.branch,
            failure=failure,
            label=failure_label(failure),
            assign_to_worker=should_assign_to_worker(failure),
            error=error,
        )

    def _rollback(self, pre_merge_tip: str | None, warnings: list[str]) -> None:
        target = pre_merge_tip or "HEAD~1"
        try:
            self._git.reset_hard(target)
        except CommandError as exc:
            self._warn(warnings, "merge_rollback_failed", f"rollback failed: {describe_error(exc)}")

    def _resolve_head(self, warnings: list[str]) -> str | None:
        try:
            return self._git.head_sha() or None
        except CommandError as exc:
            self._warn(warnings, "git_rev_parse_failed", f"rev-parse failed: {describe_error(exc)}")
            return None

    def _save_current(self, mr: MergeRequest, warnings: list[str]) -> None:
        try:
            state = self._store.load()
            state.current_mr = mr
            self._store.save(state)
        except (OSError, StateFormatError) as exc:
            self._warn(warnings, "state_save_failed", f"state save failed: {exc}")

    def _emit(
        self,
        event_type: EventType,
        mr: MergeRequest,
        *,
        warnings: list[str],
        reason: str = "",
    ) -> None:
        event = MergeEvent(
            type=event_type,
            actor=self.actor,
            mr_id=mr.id,
            worker=mr.worker,
            branch=mr.branch,
            reason=reason,
        )
        try:
            self._events.emit(event)
        except OSError as exc:
            self._warn(warnings, "event_log_failed", f"event log failed: {exc}")

    def _notify(self, message: MailMessage, warnings: list[str]) -> None:
        try:
            self._notifier.send(message)
        except Exception as exc:  # noqa: BLE001
            self._warn(
                warnings,
                "worker_notification_failed",
                f"notify {message.recipient} failed: {describe_error(exc)}",
            )

    def _warn(self, warnings: list[str], event: str, message: str) -> None:
        log_event(LOGGER, event, level=logging.WARNING, detail=message)
        warnings.append(message)
