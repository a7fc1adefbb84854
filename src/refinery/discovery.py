from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
import re
import secrets

from refinery.models import MergeRequest, QueueItem, RefineryState, utc_now


@dataclass(frozen=True)
class WorkBranch:
    branch: str
    worker: str
    issue_id: str


def parse_work_branch(branch: str, *, prefix: str) -> WorkBranch | None:
    """Split ``<prefix>/<worker>[/<issue>]``; anything else is not work."""
    match = re.fullmatch(rf"{re.escape(prefix)}/([^/]+)(?:/(.+))?", branch)
    if match is None:
        return None
    return WorkBranch(branch=branch, worker=match.group(1), issue_id=match.group(2) or "")


def new_mr_id(worker: str, *, now: datetime | None = None) -> str:
    ts = int((now or utc_now()).timestamp())
    return f"mr-{worker}-{ts}-{secrets.token_hex(3)}"


def branch_to_mr(
    branch: str, *, prefix: str, target_branch: str, now: datetime | None = None
) -> MergeRequest | None:
    parsed = parse_work_branch(branch, prefix=prefix)
    if parsed is None:
        return None
    created_at = now or utc_now()
    return MergeRequest(
        id=new_mr_id(parsed.worker, now=created_at),
        branch=parsed.branch,
        worker=parsed.worker,
        issue_id=parsed.issue_id,
        target_branch=target_branch,
        created_at=created_at,
    )


def build_queue(
    state: RefineryState,
    branches: Iterable[str],
    *,
    prefix: str,
    target_branch: str,
    now: datetime | None = None,
) -> list[QueueItem]:
    """Current merge request at position 0, then discovered branches in listing order.

    Positions are FIFO by remote listing, not by priority or age.
    """
    reference = now or utc_now()
    items: list[QueueItem] = []
    current = state.current_mr
    if current is not None:
        items.append(
            QueueItem(position=0, mr=current, age=format_age(current.created_at, now=reference))
        )

    position = 1
    for branch in branches:
        if current is not None and branch == current.branch:
            continue
        mr = branch_to_mr(branch, prefix=prefix, target_branch=target_branch, now=reference)
        if mr is None:
            continue
        items.append(
            QueueItem(position=position, mr=mr, age=format_age(mr.created_at, now=reference))
        )
        position += 1
    return items


def format_age(created_at: datetime, *, now: datetime | None = None) -> str:
    seconds = max(0, int(((now or utc_now()) - created_at).total_seconds()))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"
