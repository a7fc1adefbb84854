from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
import logging
import os
import signal
import threading

from refinery.config import AppConfig
from refinery.discovery import branch_to_mr, build_queue
from refinery.engine import MergeEngine
from refinery.events import EventLog, EventSink, MergeEvent
from refinery.git_ops import GitWorkingCopy
from refinery.models import (
    ClosedImmutableError,
    MergeRequest,
    MergeResult,
    QueueItem,
    RefineryError,
    RefineryState,
    utc_now,
)
from refinery.notifier import CommandMailer, Notifier, NullNotifier, rejected_message
from refinery.observability import log_event
from refinery.process_lock import ProcessLockError, RigProcessLock, lock_path_for, pid_is_running
from refinery.sessions import SessionOracle, TmuxSessions, session_name
from refinery.shell import CommandError, describe_error
from refinery.state import StateFormatError, StateStore


LOGGER = logging.getLogger("refinery.manager")

INTERRUPTED_ERROR = "interrupted - refinery restarted mid-merge"


class NotRunningError(RefineryError):
    pass


class AlreadyRunningError(RefineryError):
    pass


class MRNotFoundError(RefineryError):
    pass


class MRNotFailedError(RefineryError):
    pass


class RetryFailedError(RefineryError):
    pass


class RefineryManager:
    """Lifecycle and queue operations for one rig's refinery.

    Every operation reloads the persisted record, mutates it and saves it
    back; nothing is cached between calls.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        store: StateStore,
        git: GitWorkingCopy,
        engine: MergeEngine,
        events: EventSink,
        notifier: Notifier,
        sessions: SessionOracle,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._config = config
        self._store = store
        self._git = git
        self._engine = engine
        self._events = events
        self._notifier = notifier
        self._sessions = sessions
        self._clock = clock
        self._announced_skips: set[str] = set()

    @property
    def rig_name(self) -> str:
        return self._config.runtime.rig_name

    @property
    def session_name(self) -> str:
        return session_name(self.rig_name)

    def status(self) -> RefineryState:
        return self._store.load()

    def start(self, *, foreground: bool = False, stop_event: threading.Event | None = None) -> None:
        if foreground:
            self._run_foreground(stop_event or threading.Event())
        else:
            self._start_background()

    def stop(self) -> RefineryState:
        state = self._store.load()
        session_alive = self._sessions.has_session(self.session_name)
        if state.state != "running" and not session_alive:
            raise NotRunningError(f"refinery for {self.rig_name} is not running")

        if session_alive:
            try:
                self._sessions.kill_session(self.session_name)
            except CommandError as exc:
                log_event(
                    LOGGER,
                    "session_kill_failed",
                    level=logging.WARNING,
                    session=self.session_name,
                    error=describe_error(exc),
                )
        if state.pid and state.pid != os.getpid() and pid_is_running(state.pid):
            try:
                os.kill(state.pid, signal.SIGINT)
            except OSError as exc:
                log_event(
                    LOGGER, "refinery_signal_failed", level=logging.WARNING, pid=state.pid, error=str(exc)
                )

        state.state = "stopped"
        state.pid = 0
        self._store.save(state)
        log_event(LOGGER, "refinery_stopped", rig=self.rig_name)
        return state

    def queue(self) -> list[QueueItem]:
        state = self._store.load()
        return build_queue(
            state,
            self._git.list_remote_branches(self._config.repo.branch_prefix),
            prefix=self._config.repo.branch_prefix,
            target_branch=self._config.repo.target_branch,
            now=self._clock(),
        )

    def process_queue(self) -> list[MergeResult]:
        """Run one pass over the queue; one merge request failing never stops the pass."""
        state = self._store.load()
        branches = self._git.list_remote_branches(self._config.repo.branch_prefix)
        results: list[MergeResult] = []
        for mr in self._work_list(state, branches):
            if not mr.is_open:
                continue
            try:
                result = self._engine.process_mr(mr)
            except Exception as exc:  # noqa: BLE001
                LOGGER.exception(
                    "event=merge_failed mr_id=%s branch=%s error=%s", mr.id, mr.branch, exc
                )
                continue
            results.append(result)
        log_event(
            LOGGER,
            "queue_processed",
            discovered=len(branches),
            processed=len(results),
            merged=sum(1 for result in results if result.success),
        )
        return results

    def get_mr(self, mr_id: str) -> MergeRequest:
        state = self._store.load()
        if state.current_mr is not None and state.current_mr.id == mr_id:
            return state.current_mr
        mr = state.pending_mrs.get(mr_id)
        if mr is None:
            raise MRNotFoundError(f"merge request not found: {mr_id}")
        return mr

    def find_mr(self, id_or_branch: str) -> MergeRequest:
        """Match by id, exact branch, ``<prefix>/<value>`` or id substring.

        The current merge request is checked first, then the registry, then
        unregistered branches discovered on the remote. Exact matches win
        over substrings, and a substring prefers records that are not closed.
        """
        state = self._store.load()
        candidates: list[MergeRequest] = []
        if state.current_mr is not None:
            candidates.append(state.current_mr)
        candidates.extend(state.pending_mrs.values())
        registered = {mr.branch for mr in candidates}
        candidates.extend(
            item.mr
            for item in build_queue(
                state,
                self._git.list_remote_branches(self._config.repo.branch_prefix),
                prefix=self._config.repo.branch_prefix,
                target_branch=self._config.repo.target_branch,
                now=self._clock(),
            )
            if item.position > 0 and item.mr.branch not in registered
        )
        prefixed = f"{self._config.repo.branch_prefix}/{id_or_branch}"
        for mr in candidates:
            if id_or_branch in (mr.id, mr.branch) or mr.branch == prefixed:
                return mr
        for mr in sorted(candidates, key=lambda mr: mr.is_closed):
            if id_or_branch in mr.id:
                return mr
        raise MRNotFoundError(f"merge request not found: {id_or_branch}")

    def retry(self, mr_id: str, *, process_now: bool = False) -> MergeResult | None:
        state = self._store.load()
        mr = state.pending_mrs.get(mr_id)
        if mr is None:
            raise MRNotFoundError(f"merge request not found: {mr_id}")
        if not mr.is_open or not mr.error:
            raise MRNotFailedError(f"merge request {mr_id} has not failed")

        mr.error = ""
        self._store.save(state)
        log_event(LOGGER, "retry_requested", mr_id=mr_id, process_now=process_now)
        if not process_now:
            return None
        result = self._engine.process_mr(mr)
        if not result.success:
            raise RetryFailedError(f"retry failed: {result.error}")
        return result

    def reject_mr(self, id_or_branch: str, reason: str, *, notify: bool = True) -> MergeRequest:
        mr = self.find_mr(id_or_branch)
        if mr.is_closed:
            raise ClosedImmutableError(
                f"closed merge requests are immutable: {mr.id} is already closed"
            )
        mr.error = reason
        mr.close("rejected")

        state = self._store.load()
        if state.current_mr is not None and state.current_mr.id == mr.id:
            state.current_mr = None
        state.pending_mrs[mr.id] = mr
        self._store.save(state)
        log_event(LOGGER, "merge_rejected", mr_id=mr.id, branch=mr.branch, reason=reason)

        self._emit_skipped(mr, reason)
        if notify:
            try:
                self._notifier.send(rejected_message(self.rig_name, mr, reason))
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "worker_notification_failed",
                    level=logging.WARNING,
                    mr_id=mr.id,
                    error=describe_error(exc),
                )
        return mr

    def register_mr(self, mr: MergeRequest) -> None:
        state = self._store.load()
        state.pending_mrs[mr.id] = mr
        self._store.save(state)
        log_event(LOGGER, "merge_registered", mr_id=mr.id, branch=mr.branch)

    def register_branch(self, branch: str, *, mr_id: str | None = None) -> MergeRequest:
        prefix = self._config.repo.branch_prefix
        mr = branch_to_mr(
            branch, prefix=prefix, target_branch=self._config.repo.target_branch, now=self._clock()
        )
        if mr is None:
            raise RefineryError(f"branch {branch} does not match {prefix}/<worker>[/<issue>]")
        if mr_id:
            mr.id = mr_id
        self.register_mr(mr)
        return mr

    def recover_interrupted(self) -> MergeRequest | None:
        """Put a merge request left in flight by a crash back in the queue."""
        state = self._store.load()
        mr = state.current_mr
        if mr is None:
            return None
        state.current_mr = None
        if mr.is_in_progress:
            mr.error = INTERRUPTED_ERROR
            mr.reopen()
        if not mr.is_closed:
            state.pending_mrs[mr.id] = mr
        self._store.save(state)
        log_event(LOGGER, "interrupted_merge_recovered", mr_id=mr.id, branch=mr.branch)
        return mr

    def _work_list(self, state: RefineryState, branches: tuple[str, ...]) -> list[MergeRequest]:
        """Discovered branches in listing order, then registry-only open MRs.

        A discovered branch with an open registry entry reuses that entry so
        ids stay stable across retries. One whose registry entries are all
        closed is skipped.
        """
        current_branch = state.current_mr.branch if state.current_mr is not None else None
        registered: dict[str, list[MergeRequest]] = {}
        for mr in state.pending_mrs.values():
            registered.setdefault(mr.branch, []).append(mr)

        work: list[MergeRequest] = []
        claimed_ids: set[str] = set()
        now = self._clock()
        for branch in branches:
            if branch == current_branch:
                continue
            entries = registered.get(branch, [])
            open_mr = next((mr for mr in entries if mr.is_open), None)
            if open_mr is not None:
                work.append(open_mr)
                claimed_ids.add(open_mr.id)
                continue
            closed = [mr for mr in entries if mr.is_closed]
            if closed:
                self._announce_skip(closed[-1])
                continue
            if entries:
                continue
            synthetic = branch_to_mr(
                branch,
                prefix=self._config.repo.branch_prefix,
                target_branch=self._config.repo.target_branch,
                now=now,
            )
            if synthetic is not None:
                work.append(synthetic)

        for mr in state.pending_mrs.values():
            if mr.is_open and mr.id not in claimed_ids and mr.branch != current_branch:
                work.append(mr)
        return work

    def _announce_skip(self, mr: MergeRequest) -> None:
        if mr.close_reason == "merged" or mr.id in self._announced_skips:
            return
        self._announced_skips.add(mr.id)
        self._emit_skipped(mr, mr.error or f"closed ({mr.close_reason})")

    def _emit_skipped(self, mr: MergeRequest, reason: str) -> None:
        try:
            self._events.emit(
                MergeEvent(
                    type="merge_skipped",
                    actor=self._engine.actor,
                    mr_id=mr.id,
                    worker=mr.worker,
                    branch=mr.branch,
                    reason=reason,
                )
            )
        except OSError as exc:
            log_event(LOGGER, "event_log_failed", level=logging.WARNING, error=str(exc))

    def _run_foreground(self, stop_event: threading.Event) -> None:
        state = self._store.load()
        if state.state == "running" and state.pid != os.getpid() and pid_is_running(state.pid):
            raise AlreadyRunningError(
                f"refinery for {self.rig_name} is already running (pid {state.pid})"
            )

        lock = RigProcessLock(
            lock_path_for(self._config.runtime.base_dir, self.rig_name),
            command="refinery start --foreground",
        )
        try:
            lock.acquire()
        except ProcessLockError as exc:
            raise AlreadyRunningError(str(exc)) from exc

        try:
            state = self._store.load()
            state.state = "running"
            state.pid = os.getpid()
            state.started_at = self._clock()
            self._store.save(state)
            log_event(LOGGER, "refinery_started", rig=self.rig_name, pid=state.pid, foreground=True)
            self.recover_interrupted()
            try:
                self._run_loop(stop_event)
            except KeyboardInterrupt:
                log_event(LOGGER, "refinery_interrupted", rig=self.rig_name)
            finally:
                self._mark_stopped()
        finally:
            lock.release()

    def _run_loop(self, stop_event: threading.Event) -> None:
        interval = self._config.runtime.poll_interval_seconds
        while not stop_event.is_set():
            try:
                self.process_queue()
            except (OSError, StateFormatError) as exc:
                log_event(LOGGER, "queue_tick_failed", level=logging.ERROR, error=str(exc))
            if stop_event.wait(interval):
                break

    def _mark_stopped(self) -> None:
        state = self._store.load()
        state.state = "stopped"
        state.pid = 0
        self._store.save(state)
        log_event(LOGGER, "refinery_stopped", rig=self.rig_name)

    def _start_background(self) -> None:
        name = self.session_name
        state = self._store.load()
        if self._sessions.has_session(name) or (
            state.state == "running" and pid_is_running(state.pid)
        ):
            raise AlreadyRunningError(f"refinery for {self.rig_name} is already running")

        self._sessions.new_session(name, cwd=self._config.repo.path)
        for key, value in (
            ("GT_RIG", self.rig_name),
            ("GT_REFINERY", "1"),
            ("GT_ROLE", "refinery"),
        ):
            try:
                self._sessions.set_environment(name, key, value)
            except CommandError as exc:
                log_event(
                    LOGGER,
                    "session_environment_failed",
                    level=logging.WARNING,
                    key=key,
                    error=describe_error(exc),
                )

        state.state = "running"
        state.pid = 0
        state.started_at = self._clock()
        try:
            self._store.save(state)
        except OSError:
            self._kill_quietly(name)
            raise

        try:
            self._sessions.send_keys(name, self._config.session.agent_command)
        except CommandError as exc:
            self._kill_quietly(name)
            raise RefineryError(
                f"failed to start refinery agent: {describe_error(exc)}"
            ) from exc
        log_event(LOGGER, "refinery_started", rig=self.rig_name, session=name, foreground=False)

    def _kill_quietly(self, name: str) -> None:
        try:
            self._sessions.kill_session(name)
        except CommandError as exc:
            log_event(
                LOGGER, "session_kill_failed", level=logging.WARNING, session=name, error=describe_error(exc)
            )


def build_manager(config: AppConfig) -> RefineryManager:
    timeout = config.runtime.command_timeout_seconds
    store = StateStore(config.runtime.state_path, rig_name=config.runtime.rig_name)
    git = GitWorkingCopy(config.repo, timeout_seconds=timeout)
    events = EventLog(config.runtime.events_path)
    notifier: Notifier
    if config.notify.enabled:
        notifier = CommandMailer(
            config.notify.mail_command, cwd=config.repo.path, timeout_seconds=timeout
        )
    else:
        notifier = NullNotifier()
    engine = MergeEngine(
        rig_name=config.runtime.rig_name,
        store=store,
        git=git,
        merge_config=config.merge,
        notifier=notifier,
        events=events,
    )
    return RefineryManager(
        config,
        store=store,
        git=git,
        engine=engine,
        events=events,
        notifier=notifier,
        sessions=TmuxSessions(timeout_seconds=timeout),
    )
