from __future__ import annotations

from datetime import datetime, timezone
import json
import os
from pathlib import Path
import tempfile
import threading
from typing import cast

from refinery.models import (
    CLOSE_REASONS,
    MR_STATUSES,
    RUN_STATES,
    CloseReason,
    MergeRequest,
    MRStatus,
    RefineryState,
    RefineryStats,
    RunState,
)


class StateFormatError(ValueError):
    """Raised when the persisted refinery record cannot be decoded."""


class StateStore:
    """Whole-file JSON snapshot of one rig's refinery record.

    ``load`` returns a fresh object on every call and ``save`` replaces the
    file atomically (temp file, fsync, rename), so callers always
    read-modify-write instead of sharing in-memory state.
    """

    def __init__(self, path: Path, *, rig_name: str) -> None:
        self._path = path
        self._rig_name = rig_name
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> RefineryState:
        with self._lock:
            try:
                text = self._path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return RefineryState(rig_name=self._rig_name)
        if not text.strip():
            return RefineryState(rig_name=self._rig_name)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise StateFormatError(f"Refinery state file {self._path} is not valid JSON") from exc
        return state_from_payload(payload)

    def save(self, state: RefineryState) -> None:
        data = json.dumps(state_to_payload(state), indent=2) + "\n"
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(data)
                    fh.flush()
                    os.fsync(fh.fileno())
                tmp_path.replace(self._path)
            except BaseException:
                tmp_path.unlink(missing_ok=True)
                raise


def state_to_payload(state: RefineryState) -> dict[str, object]:
    payload: dict[str, object] = {
        "rig_name": state.rig_name,
        "state": state.state,
        "pid": state.pid,
        "stats": _stats_to_payload(state.stats),
    }
    if state.started_at is not None:
        payload["started_at"] = _format_time(state.started_at)
    if state.current_mr is not None:
        payload["current_mr"] = merge_request_to_payload(state.current_mr)
    if state.pending_mrs:
        payload["pending_mrs"] = {
            mr_id: merge_request_to_payload(mr) for mr_id, mr in state.pending_mrs.items()
        }
    if state.last_merge_at is not None:
        payload["last_merge_at"] = _format_time(state.last_merge_at)
    return payload


def state_from_payload(payload: object) -> RefineryState:
    data = _require_mapping(payload, "refinery state")
    raw_pending = data.get("pending_mrs") or {}
    pending = _require_mapping(raw_pending, "pending_mrs")
    raw_current = data.get("current_mr")
    raw_stats = data.get("stats")
    raw_pid = data.get("pid", 0)
    if not isinstance(raw_pid, int):
        raise StateFormatError("pid must be an integer")
    return RefineryState(
        rig_name=_require_str(data, "rig_name"),
        state=_parse_run_state(data.get("state", "stopped")),
        pid=raw_pid,
        started_at=_optional_time(data, "started_at"),
        current_mr=parse_merge_request(raw_current) if raw_current is not None else None,
        pending_mrs={
            str(mr_id): parse_merge_request(raw_mr) for mr_id, raw_mr in pending.items()
        },
        last_merge_at=_optional_time(data, "last_merge_at"),
        stats=_parse_stats(raw_stats) if raw_stats is not None else RefineryStats(),
    )


def merge_request_to_payload(mr: MergeRequest) -> dict[str, object]:
    payload: dict[str, object] = {
        "id": mr.id,
        "branch": mr.branch,
        "worker": mr.worker,
        "issue_id": mr.issue_id,
        "target_branch": mr.target_branch,
        "created_at": _format_time(mr.created_at),
        "status": mr.status,
    }
    if mr.swarm_id:
        payload["swarm_id"] = mr.swarm_id
    if mr.status == "closed" and mr.close_reason is not None:
        payload["close_reason"] = mr.close_reason
    if mr.error:
        payload["error"] = mr.error
    return payload


def parse_merge_request(payload: object) -> MergeRequest:
    data = _require_mapping(payload, "merge request")
    status = _parse_mr_status(data.get("status", "open"))
    raw_reason = data.get("close_reason")
    close_reason = _parse_close_reason(raw_reason) if raw_reason else None
    if status != "closed":
        close_reason = None
    return MergeRequest(
        id=_require_str(data, "id"),
        branch=_require_str(data, "branch"),
        worker=_str_or_empty(data, "worker"),
        target_branch=_require_str(data, "target_branch"),
        issue_id=_str_or_empty(data, "issue_id"),
        swarm_id=_str_or_empty(data, "swarm_id"),
        error=_str_or_empty(data, "error"),
        close_reason=close_reason,
        created_at=_optional_time(data, "created_at") or datetime.now(timezone.utc),
        status=status,
    )


def _stats_to_payload(stats: RefineryStats) -> dict[str, object]:
    return {
        "today_merged": stats.today_merged,
        "today_failed": stats.today_failed,
        "total_merged": stats.total_merged,
        "total_failed": stats.total_failed,
        "stats_date": stats.stats_date,
    }


def _parse_stats(payload: object) -> RefineryStats:
    data = _require_mapping(payload, "stats")
    counters: dict[str, int] = {}
    for key in ("today_merged", "today_failed", "total_merged", "total_failed"):
        value = data.get(key, 0)
        if not isinstance(value, int) or value < 0:
            raise StateFormatError(f"stats.{key} must be a non-negative integer")
        counters[key] = value
    return RefineryStats(
        today_merged=counters["today_merged"],
        today_failed=counters["today_failed"],
        total_merged=counters["total_merged"],
        total_failed=counters["total_failed"],
        stats_date=_str_or_empty(data, "stats_date"),
    )


def _parse_mr_status(value: object) -> MRStatus:
    if value not in MR_STATUSES:
        raise StateFormatError(f"Unknown merge request status: {value!r}")
    return cast(MRStatus, value)


def _parse_close_reason(value: object) -> CloseReason:
    if value not in CLOSE_REASONS:
        raise StateFormatError(f"Unknown close reason: {value!r}")
    return cast(CloseReason, value)


def _parse_run_state(value: object) -> RunState:
    if value not in RUN_STATES:
        raise StateFormatError(f"Unknown refinery state: {value!r}")
    return cast(RunState, value)


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _optional_time(data: dict[str, object], key: str) -> datetime | None:
    value = data.get(key)
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise StateFormatError(f"{key} must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise StateFormatError(f"{key} must be an ISO-8601 string") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require_mapping(value: object, what: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise StateFormatError(f"{what} must be a JSON object")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise StateFormatError(f"{key} is required and must be a non-empty string")
    return value


def _str_or_empty(data: dict[str, object], key: str) -> str:
    value = data.get(key, "")
    if value is None:
        return ""
    if not isinstance(value, str):
        raise StateFormatError(f"{key} must be a string")
    return value
