from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

from textual.widgets import DataTable

from refinery import status_tui as tui
from refinery.events import EventLog, MergeEvent
from refinery.models import MergeRequest, RefineryState
from refinery.state import StateStore


_NOW = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)


def _mr(mr_id: str, branch: str, **overrides: object) -> MergeRequest:
    fields: dict[str, object] = {
        "id": mr_id,
        "branch": branch,
        "worker": branch.split("/")[1],
        "target_branch": "main",
        "created_at": _NOW - timedelta(minutes=10),
    }
    fields.update(overrides)
    return MergeRequest(**fields)  # type: ignore[arg-type]


def _state() -> RefineryState:
    current = _mr("mr-ace-1", "polecat/ace")
    current.claim()
    failed = _mr("mr-nux-2", "polecat/nux", error="tests failed: " + "x" * 80)
    rejected = _mr("mr-zed-3", "polecat/zed", error="duplicate")
    rejected.close("rejected")
    merged = _mr("mr-kit-4", "polecat/kit")
    merged.claim()
    merged.close("merged")
    state = RefineryState(
        rig_name="gastown",
        state="running",
        pid=4242,
        started_at=_NOW - timedelta(hours=2),
        last_merge_at=_NOW - timedelta(minutes=3),
        current_mr=current,
        pending_mrs={
            "mr-ace-1": current,
            "mr-nux-2": failed,
            "mr-zed-3": rejected,
            "mr-kit-4": merged,
        },
    )
    state.stats.record_merge(_NOW)
    state.stats.record_failure(_NOW)
    return state


def test_summary_text_reports_run_state_and_current_work() -> None:
    text = tui.summary_text(_state(), now=_NOW)
    assert text == (
        "rig=gastown | state=running | pid=4242 | up 2h | processing=polecat/ace"
        " | last merge 3m ago"
    )
    assert tui.summary_text(RefineryState(rig_name="gastown"), now=_NOW) == (
        "rig=gastown | state=stopped | processing=-"
    )


def test_queue_rows_lists_current_once_and_hides_merged() -> None:
    rows = tui.queue_rows(_state())
    assert [mr.id for mr in rows] == ["mr-ace-1", "mr-nux-2", "mr-zed-3"]


def test_clip_truncates_long_errors() -> None:
    assert tui._clip("short") == "short"
    clipped = tui._clip("y" * 100)
    assert len(clipped) == 48
    assert clipped.endswith("...")


def test_status_app_renders_queue_stats_and_events(tmp_path: Path) -> None:
    store = StateStore(tmp_path / "gastown" / "refinery.json", rig_name="gastown")
    store.save(_state())
    events = EventLog(tmp_path / "events.jsonl")
    events.emit(
        MergeEvent(
            type="merge_failed",
            actor="gastown/refinery",
            mr_id="mr-nux-2",
            worker="nux",
            branch="polecat/nux",
            reason="tests failed",
        )
    )
    events.emit(
        MergeEvent(
            type="merged", actor="beads/refinery", mr_id="mr-o-1", worker="o", branch="polecat/o"
        )
    )
    events.emit(
        MergeEvent(
            type="merged",
            actor="gastown/refinery",
            mr_id="mr-ace-0",
            worker="ace",
            branch="polecat/ace",
        )
    )
    app = tui.RefineryStatusApp(store=store, events=events, refresh_seconds=60, clock=lambda: _NOW)

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            queue = app.query_one("#queue-table", DataTable)
            stats = app.query_one("#stats-table", DataTable)
            recent = app.query_one("#events-table", DataTable)
            assert queue.row_count == 3
            assert [str(cell) for cell in queue.get_row_at(0)[:2]] == ["0", "mr-ace-1"]
            assert str(queue.get_row_at(1)[0]) == "1"
            assert str(queue.get_row_at(2)[4]) == "closed:rejected"
            assert stats.row_count == 2
            assert [str(cell) for cell in stats.get_row_at(1)] == ["total", "1", "1"]
            assert recent.row_count == 2
            assert str(recent.get_row_at(0)[1]) == "merged"
            assert str(recent.get_row_at(1)[3]) == "tests failed"
            app.action_refresh()
            assert queue.row_count == 3

    asyncio.run(run_app())


def test_status_app_survives_unreadable_state(tmp_path: Path) -> None:
    path = tmp_path / "gastown" / "refinery.json"
    path.parent.mkdir(parents=True)
    path.write_text("{broken", encoding="utf-8")
    app = tui.RefineryStatusApp(
        store=StateStore(path, rig_name="gastown"), refresh_seconds=60, clock=lambda: _NOW
    )

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            assert app.query_one("#queue-table", DataTable).row_count == 0
            assert app.query_one("#events-table", DataTable).row_count == 0

    asyncio.run(run_app())
