from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Literal


MRStatus = Literal["open", "in_progress", "closed"]
CloseReason = Literal["merged", "rejected", "conflict", "superseded"]
RunState = Literal["stopped", "running", "paused"]
FailureType = Literal[
    "conflict",
    "tests_fail",
    "build_fail",
    "flaky_test",
    "push_fail",
    "fetch_fail",
    "checkout_fail",
    "merge_fail",
]

MR_STATUSES: tuple[MRStatus, ...] = ("open", "in_progress", "closed")
CLOSE_REASONS: tuple[CloseReason, ...] = ("merged", "rejected", "conflict", "superseded")
RUN_STATES: tuple[RunState, ...] = ("stopped", "running", "paused")

_ALLOWED_TRANSITIONS: frozenset[tuple[MRStatus, MRStatus]] = frozenset(
    {
        ("open", "in_progress"),
        ("open", "closed"),
        ("in_progress", "closed"),
        ("in_progress", "open"),
    }
)


class RefineryError(RuntimeError):
    """Base class for refinery failures surfaced to callers."""


class TransitionError(RefineryError):
    """A merge request status change was refused."""


class InvalidTransitionError(TransitionError):
    pass


class ClosedImmutableError(TransitionError):
    pass


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_transition(from_status: MRStatus, to_status: MRStatus) -> None:
    """Raise unless ``from_status -> to_status`` is a legal merge request move.

    Staying in the same status is always allowed. Nothing leaves ``closed``.
    """
    if from_status == to_status:
        return
    if from_status == "closed":
        raise ClosedImmutableError(
            "closed merge requests are immutable: cannot change status from closed"
        )
    if (from_status, to_status) in _ALLOWED_TRANSITIONS:
        return
    raise InvalidTransitionError(
        f"invalid state transition: {from_status} → {to_status} is not allowed"
    )


@dataclass(eq=True)
class MergeRequest:
    """One source branch waiting to land on one target branch.

    Once ``status`` is ``closed`` every attribute is frozen; assignments raise
    ``ClosedImmutableError`` so the audit trail cannot be rewritten.
    """

    id: str
    branch: str
    worker: str
    target_branch: str
    issue_id: str = ""
    swarm_id: str = ""
    error: str = ""
    close_reason: CloseReason | None = None
    created_at: datetime = field(default_factory=utc_now)
    status: MRStatus = "open"

    def __setattr__(self, name: str, value: object) -> None:
        if self.__dict__.get("status") == "closed":
            raise ClosedImmutableError(
                f"closed merge requests are immutable: cannot set {name} on {self.id}"
            )
        super().__setattr__(name, value)

    @property
    def is_open(self) -> bool:
        return self.status == "open"

    @property
    def is_in_progress(self) -> bool:
        return self.status == "in_progress"

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"

    def set_status(self, new_status: MRStatus) -> None:
        validate_transition(self.status, new_status)
        if new_status != self.status:
            self.status = new_status

    def claim(self) -> None:
        if self.is_closed:
            raise ClosedImmutableError("closed merge requests are immutable: cannot claim")
        if self.status != "open":
            raise InvalidTransitionError(
                "invalid state transition: can only claim from open, "
                f"current status is {self.status}"
            )
        self.status = "in_progress"

    def close(self, reason: CloseReason) -> None:
        if self.is_closed:
            raise ClosedImmutableError(
                "closed merge requests are immutable: MR is already closed"
            )
        validate_transition(self.status, "closed")
        # close_reason first: the status write freezes the record.
        self.close_reason = reason
        self.status = "closed"

    def reopen(self) -> None:
        if self.is_closed:
            raise ClosedImmutableError("closed merge requests are immutable: cannot reopen")
        if self.status != "in_progress":
            raise InvalidTransitionError(
                "invalid state transition: can only reopen from in_progress, "
                f"current status is {self.status}"
            )
        self.status = "open"
        self.close_reason = None


def failure_label(failure: FailureType | None) -> str:
    """Issue-tracker label for a failure category, empty when none applies."""
    if failure == "conflict":
        return "needs-rebase"
    if failure in {"tests_fail", "build_fail", "flaky_test"}:
        return "needs-fix"
    if failure == "push_fail":
        return "needs-retry"
    return ""


def should_assign_to_worker(failure: FailureType | None) -> bool:
    return failure in {"conflict", "tests_fail", "build_fail", "flaky_test"}


@dataclass(frozen=True)
class MergeResult:
    success: bool = False
    merge_commit: str = ""
    error: str = ""
    conflict: bool = False
    tests_failed: bool = False
    failure: FailureType | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class QueueItem:
    position: int
    mr: MergeRequest
    age: str


@dataclass
class RefineryStats:
    today_merged: int = 0
    today_failed: int = 0
    total_merged: int = 0
    total_failed: int = 0
    stats_date: str = ""

    def record_merge(self, now: datetime) -> None:
        self._roll(now.date())
        self.today_merged += 1
        self.total_merged += 1

    def record_failure(self, now: datetime) -> None:
        self._roll(now.date())
        self.today_failed += 1
        self.total_failed += 1

    def _roll(self, today: date) -> None:
        key = today.isoformat()
        if self.stats_date != key:
            self.stats_date = key
            self.today_merged = 0
            self.today_failed = 0


@dataclass
class RefineryState:
    """Persisted record for one integration stream."""

    rig_name: str
    state: RunState = "stopped"
    pid: int = 0
    started_at: datetime | None = None
    current_mr: MergeRequest | None = None
    pending_mrs: dict[str, MergeRequest] = field(default_factory=dict)
    last_merge_at: datetime | None = None
    stats: RefineryStats = field(default_factory=RefineryStats)
