from __future__ import annotations

from datetime import datetime, timezone
import io
import logging
from pathlib import Path

import pytest

from refinery.config import MergeConfig, RepoConfig
from refinery.engine import CONFLICT_ERROR, MergeEngine
from refinery.events import MergeEvent
from refinery.git_ops import MergeOutcome
from refinery.models import MergeRequest
from refinery.notifier import MailMessage
from refinery.shell import CommandError
from refinery.state import StateStore


_NOW = datetime(2026, 5, 4, 10, 0, tzinfo=timezone.utc)


class FakeGit:
    def __init__(self, tmp_path: Path) -> None:
        self.repo = RepoConfig(path=tmp_path / "rig")
        self.tip = "base000"
        self.calls: list[tuple[str, ...]] = []
        self.fail: dict[str, CommandError] = {}
        self.merge_outcome = MergeOutcome(kind="ok")
        self.push_failures = 0

    def _step(self, *call: str) -> None:
        self.calls.append(call)
        error = self.fail.get(call[0])
        if error is not None:
            raise error

    def fetch(self, branch: str) -> None:
        self._step("fetch", branch)

    def checkout(self, branch: str) -> None:
        self._step("checkout", branch)

    def pull(self, branch: str) -> None:
        self._step("pull", branch)

    def merge(self, branch: str, *, message: str) -> MergeOutcome:
        self.calls.append(("merge", branch, message))
        if self.merge_outcome.ok:
            self.tip = "merge111"
        return self.merge_outcome

    def abort_merge(self) -> None:
        self._step("abort_merge")

    def run_verification(self, command: str) -> None:
        self._step("verify", command)

    def push(self, branch: str) -> None:
        self.calls.append(("push", branch))
        if self.push_failures:
            self.push_failures -= 1
            raise CommandError("Command failed", stderr="! [rejected] main (fetch first)")

    def reset_hard(self, ref: str) -> None:
        self._step("reset_hard", ref)
        self.tip = ref

    def delete_branch(self, branch: str) -> None:
        self._step("delete_branch", branch)

    def head_sha(self) -> str:
        self._step("head_sha")
        return self.tip


class RecordingEvents:
    def __init__(self) -> None:
        self.events: list[MergeEvent] = []

    def emit(self, event: MergeEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]


class RecordingNotifier:
    def __init__(self, *, fail: bool = False) -> None:
        self.messages: list[MailMessage] = []
        self._fail = fail

    def send(self, message: MailMessage) -> None:
        if self._fail:
            raise CommandError("Command not found: bd")
        self.messages.append(message)


def _mr(branch: str = "polecat/nux/gt-42") -> MergeRequest:
    return MergeRequest(
        id="mr-nux-1",
        branch=branch,
        worker="nux",
        issue_id="gt-42",
        target_branch="main",
        created_at=_NOW,
    )


def _engine(
    tmp_path: Path,
    *,
    merge_config: MergeConfig | None = None,
    notifier: RecordingNotifier | None = None,
) -> tuple[MergeEngine, FakeGit, StateStore, RecordingEvents, RecordingNotifier, list[float]]:
    git = FakeGit(tmp_path)
    store = StateStore(tmp_path / "gastown" / "refinery.json", rig_name="gastown")
    events = RecordingEvents()
    mailer = notifier or RecordingNotifier()
    sleeps: list[float] = []
    engine = MergeEngine(
        rig_name="gastown",
        store=store,
        git=git,  # type: ignore[arg-type]
        merge_config=merge_config or MergeConfig(test_command="make test"),
        notifier=mailer,
        events=events,
        sleep=sleeps.append,
        clock=lambda: _NOW,
    )
    return engine, git, store, events, mailer, sleeps


def test_happy_path_merges_and_notifies(tmp_path: Path) -> None:
    engine, git, store, events, mailer, sleeps = _engine(tmp_path)
    mr = _mr()

    result = engine.process_mr(mr)

    assert result.success is True
    assert result.merge_commit == "merge111"
    assert result.warnings == ()
    assert mr.is_closed and mr.close_reason == "merged"
    assert [call[0] for call in git.calls] == [
        "fetch",
        "checkout",
        "pull",
        "head_sha",
        "merge",
        "verify",
        "push",
        "head_sha",
        "delete_branch",
    ]
    assert ("merge", "polecat/nux/gt-42", "Merge polecat/nux/gt-42 from nux") in git.calls
    assert events.types == ["merge_started", "merged"]
    assert events.events[0].actor == "gastown/refinery"
    assert [message.subject for message in mailer.messages] == ["Work merged successfully"]
    assert sleeps == []

    state = store.load()
    assert state.current_mr is None
    assert state.pending_mrs[mr.id].close_reason == "merged"
    assert state.last_merge_at == _NOW
    assert (state.stats.today_merged, state.stats.total_merged) == (1, 1)


def test_current_mr_is_persisted_before_git_work(tmp_path: Path) -> None:
    engine, git, store, _, _, _ = _engine(tmp_path)
    seen: list[str | None] = []
    original_fetch = git.fetch

    def fetch_and_inspect(branch: str) -> None:
        current = store.load().current_mr
        seen.append(current.status if current is not None else None)
        original_fetch(branch)

    git.fetch = fetch_and_inspect  # type: ignore[method-assign]
    engine.process_mr(_mr())

    assert seen == ["in_progress"]


def test_conflict_reopens_and_sends_rebase_instructions(tmp_path: Path) -> None:
    engine, git, store, events, mailer, _ = _engine(tmp_path)
    git.merge_outcome = MergeOutcome(kind="conflict", conflicted_paths=("app.py",))
    mr = _mr()

    result = engine.process_mr(mr)

    assert result.success is False
    assert result.conflict is True
    assert result.failure == "conflict"
    assert mr.is_open
    assert mr.error == CONFLICT_ERROR
    assert ("abort_merge",) in git.calls
    assert not any(call[0] in {"verify", "push"} for call in git.calls)
    assert events.types == ["merge_started", "merge_failed"]
    assert events.events[1].reason == "merge conflict"
    assert len(mailer.messages) == 1
    assert mailer.messages[0].priority == "high"
    assert "git rebase origin/main" in mailer.messages[0].body

    state = store.load()
    assert state.current_mr is None
    assert state.pending_mrs[mr.id].error == CONFLICT_ERROR
    assert state.pending_mrs[mr.id].is_open
    assert state.stats.total_failed == 1


def test_verification_failure_rolls_back_to_pre_merge_tip(tmp_path: Path) -> None:
    engine, git, store, events, mailer, _ = _engine(tmp_path)
    git.fail["verify"] = CommandError("Command failed", returncode=2, stdout="2 failed, 40 passed")
    mr = _mr()

    result = engine.process_mr(mr)

    assert result.tests_failed is True
    assert result.failure == "tests_fail"
    assert result.error == "tests failed: 2 failed, 40 passed"
    assert ("reset_hard", "base000") in git.calls
    assert git.tip == "base000"
    assert not any(call[0] == "push" for call in git.calls)
    assert mr.is_open and mr.error == "tests failed: 2 failed, 40 passed"
    assert events.types == ["merge_started", "merge_failed"]
    assert mailer.messages == []
    assert store.load().pending_mrs[mr.id].error == mr.error


def test_failure_log_carries_label_and_owner(tmp_path: Path) -> None:
    logger = logging.getLogger("refinery.engine")
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    try:
        engine, git, _, _, _, _ = _engine(tmp_path)
        git.fail["verify"] = CommandError("Command failed", returncode=1, stdout="1 failed")
        engine.process_mr(_mr())

        engine, git, _, _, _, _ = _engine(tmp_path / "conflict")
        git.merge_outcome = MergeOutcome(kind="conflict")
        engine.process_mr(_mr())

        engine, git, _, _, _, _ = _engine(tmp_path / "push")
        git.push_failures = 10
        engine.process_mr(_mr())
    finally:
        logger.removeHandler(handler)
        logger.setLevel(logging.NOTSET)

    failures = [line for line in stream.getvalue().splitlines() if "event=merge_failed" in line]
    assert len(failures) == 3
    assert "failure=tests_fail" in failures[0] and "label=needs-fix" in failures[0]
    assert "assign_to_worker=true" in failures[0]
    assert "assign_to_worker=true" in failures[1] and "label=needs-rebase" in failures[1]
    assert "assign_to_worker=false" in failures[2] and "label=needs-retry" in failures[2]


def test_rollback_falls_back_to_parent_when_tip_unknown(tmp_path: Path) -> None:
    engine, git, _, _, _, _ = _engine(tmp_path)
    git.fail["head_sha"] = CommandError("Command failed", stderr="fatal: bad revision")
    git.fail["verify"] = CommandError("Command failed", returncode=1)

    result = engine.process_mr(_mr())

    assert ("reset_hard", "HEAD~1") in git.calls
    assert "rev-parse failed: fatal: bad revision" in result.warnings


def test_default_merge_config_runs_verification(tmp_path: Path) -> None:
    engine, git, _, _, _, _ = _engine(tmp_path, merge_config=MergeConfig())

    assert engine.process_mr(_mr()).success
    assert ("verify", "go test ./...") in git.calls


def test_verification_skipped_without_command(tmp_path: Path) -> None:
    engine, git, _, _, _, _ = _engine(tmp_path, merge_config=MergeConfig(test_command=""))
    assert engine.process_mr(_mr()).success
    assert not any(call[0] == "verify" for call in git.calls)

    engine, git, _, _, _, _ = _engine(
        tmp_path / "off", merge_config=MergeConfig(run_tests=False, test_command="make test")
    )
    assert engine.process_mr(_mr()).success
    assert not any(call[0] == "verify" for call in git.calls)


def test_push_retries_then_rolls_back(tmp_path: Path) -> None:
    engine, git, store, _, mailer, sleeps = _engine(tmp_path)
    git.push_failures = 10
    mr = _mr()

    result = engine.process_mr(mr)

    assert result.failure == "push_fail"
    assert result.error == (
        "push failed: push failed after 3 retries: ! [rejected] main (fetch first)"
    )
    assert sleeps == [1.0, 2.0, 4.0]
    assert len([call for call in git.calls if call[0] == "push"]) == 4
    assert git.tip == "base000"
    assert mr.is_open
    assert mailer.messages == []
    assert store.load().stats.total_failed == 1


def test_push_recovers_within_retry_budget(tmp_path: Path) -> None:
    engine, git, _, _, _, sleeps = _engine(tmp_path)
    git.push_failures = 2
    assert engine.process_mr(_mr()).success
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize(
    ("step", "failure", "prefix"),
    [
        ("fetch", "fetch_fail", "fetch failed: "),
        ("checkout", "checkout_fail", "checkout target failed: "),
    ],
)
def test_early_git_failures_reopen(tmp_path: Path, step: str, failure: str, prefix: str) -> None:
    engine, git, store, events, _, _ = _engine(tmp_path)
    git.fail[step] = CommandError("Command failed", stderr="fatal: couldn't find remote ref")
    mr = _mr()

    result = engine.process_mr(mr)

    assert result.failure == failure
    assert result.error == f"{prefix}fatal: couldn't find remote ref"
    assert mr.is_open
    assert events.types == ["merge_started", "merge_failed"]
    assert store.load().current_mr is None
    assert not any(call[0] == "merge" for call in git.calls)


def test_merge_error_is_not_a_conflict(tmp_path: Path) -> None:
    engine, git, _, _, mailer, _ = _engine(tmp_path)
    git.merge_outcome = MergeOutcome(kind="error", detail="refusing to merge unrelated histories")

    result = engine.process_mr(_mr())

    assert result.conflict is False
    assert result.failure == "merge_fail"
    assert result.error == "merge failed: refusing to merge unrelated histories"
    assert mailer.messages == []


def test_best_effort_failures_become_warnings(tmp_path: Path) -> None:
    engine, git, _, _, _, _ = _engine(tmp_path, notifier=RecordingNotifier(fail=True))
    git.fail["pull"] = CommandError("Command failed", stderr="no tracking information")
    git.fail["delete_branch"] = CommandError("Command failed", stderr="remote ref does not exist")

    result = engine.process_mr(_mr())

    assert result.success is True
    assert result.warnings == (
        "pull failed: no tracking information",
        "notify gastown/nux failed: Command not found: bd",
        "branch delete failed: remote ref does not exist",
    )


def test_claim_failure_leaves_state_untouched(tmp_path: Path) -> None:
    engine, git, store, events, _, _ = _engine(tmp_path)
    mr = _mr()
    mr.claim()

    result = engine.process_mr(mr)

    assert result.error.startswith("cannot claim MR: invalid state transition")
    assert git.calls == []
    assert events.events == []
    assert not store.path.exists()


def test_complete_mr_superseded_keeps_closed_record_and_emits_skip(tmp_path: Path) -> None:
    engine, _, store, events, _, _ = _engine(tmp_path)
    mr = _mr()
    mr.claim()

    warnings = engine.complete_mr(mr, "superseded", "replaced by mr-nux-2")

    assert warnings == []
    assert mr.is_closed and mr.error == "replaced by mr-nux-2"
    assert events.types == ["merge_skipped"]
    assert store.load().pending_mrs[mr.id].close_reason == "superseded"


def test_unexpected_exception_reopens_merge_request(tmp_path: Path) -> None:
    engine, git, store, _, _, _ = _engine(tmp_path)

    def explode(branch: str) -> None:
        raise RuntimeError("disk on fire")

    git.checkout = explode  # type: ignore[method-assign]
    mr = _mr()

    result = engine.process_mr(mr)

    assert result.error == "unexpected error: disk on fire"
    assert mr.is_open
    assert store.load().current_mr is None


def test_unexpected_exception_after_merge_keeps_merged_record(tmp_path: Path) -> None:
    engine, git, store, _, _, _ = _engine(tmp_path)

    def explode(branch: str) -> None:
        raise RuntimeError("lost remote")

    git.delete_branch = explode  # type: ignore[method-assign]
    mr = _mr()

    result = engine.process_mr(mr)

    assert result.success is True
    assert result.error == "unexpected error: lost remote"
    assert mr.close_reason == "merged"
    state = store.load()
    assert state.pending_mrs[mr.id].is_closed
    assert state.stats.total_merged == 1
    assert state.stats.total_failed == 0
