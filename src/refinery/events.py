from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
from pathlib import Path
import threading
from typing import Literal, Protocol

from refinery.observability import log_event


LOGGER = logging.getLogger("refinery.events")

EventType = Literal["merge_started", "merged", "merge_failed", "merge_skipped"]


@dataclass(frozen=True)
class MergeEvent:
    type: EventType
    actor: str
    mr_id: str
    worker: str
    branch: str
    reason: str = ""

    def to_payload(self, *, ts: datetime) -> dict[str, object]:
        payload: dict[str, object] = {
            "mr_id": self.mr_id,
            "worker": self.worker,
            "branch": self.branch,
        }
        if self.reason:
            payload["reason"] = self.reason
        return {
            "ts": ts.astimezone(timezone.utc).isoformat(),
            "type": self.type,
            "actor": self.actor,
            "payload": payload,
        }


class EventSink(Protocol):
    def emit(self, event: MergeEvent) -> None: ...


class EventLog:
    """Append-only JSON lines feed shared by every rig under ``base_dir``."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def emit(self, event: MergeEvent) -> None:
        log_event(
            LOGGER,
            event.type,
            mr_id=event.mr_id,
            worker=event.worker,
            branch=event.branch,
            reason=event.reason or None,
        )
        line = json.dumps(event.to_payload(ts=datetime.now(timezone.utc)), sort_keys=True)
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(f"{line}\n")

    def read(self) -> tuple[dict[str, object], ...]:
        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ()
        events: list[dict[str, object]] = []
        for line in text.splitlines():
            if not line.strip():
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(item, dict):
                events.append(item)
        return tuple(events)
