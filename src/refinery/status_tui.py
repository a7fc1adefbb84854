from __future__ import annotations

from datetime import datetime
from typing import Callable

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from refinery.discovery import format_age
from refinery.events import EventLog
from refinery.models import MergeRequest, RefineryState, utc_now
from refinery.state import StateFormatError, StateStore


_ERROR_MAX_CHARS = 48
_RECENT_EVENT_LIMIT = 20


class RefineryStatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "refresh", "Refresh"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        store: StateStore,
        events: EventLog | None = None,
        refresh_seconds: int = 2,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__()
        self._store = store
        self._events = events
        self._refresh_seconds = refresh_seconds
        self._clock = clock

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Queue", classes="panel-title")
            yield DataTable(id="queue-table")
            yield Static("Stats", classes="panel-title")
            yield DataTable(id="stats-table")
            yield Static("Recent Events", classes="panel-title")
            yield DataTable(id="events-table")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#queue-table", DataTable).add_columns(
            "#", "ID", "Branch", "Worker", "Status", "Age", "Error"
        )
        self.query_one("#stats-table", DataTable).add_columns("Window", "Merged", "Failed")
        self.query_one("#events-table", DataTable).add_columns("Time", "Type", "MR", "Reason")
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)

    def action_refresh(self) -> None:
        self.refresh_data()

    def refresh_data(self) -> None:
        summary = self.query_one("#summary", Static)
        try:
            state = self._store.load()
        except (OSError, StateFormatError) as exc:
            summary.update(f"Cannot read {self._store.path}: {exc}")
            return
        now = self._clock()
        summary.update(summary_text(state, now=now))
        self._refresh_queue_table(state, now=now)
        self._refresh_stats_table(state)
        self._refresh_events_table(state)

    def _refresh_queue_table(self, state: RefineryState, *, now: datetime) -> None:
        table = self.query_one("#queue-table", DataTable)
        table.clear(columns=False)
        position = 0
        for mr in queue_rows(state):
            if mr.is_in_progress:
                label = "0"
            elif mr.is_open:
                position += 1
                label = str(position)
            else:
                label = "-"
            table.add_row(
                label,
                mr.id,
                mr.branch,
                mr.worker,
                f"closed:{mr.close_reason}" if mr.is_closed else mr.status,
                format_age(mr.created_at, now=now),
                _clip(mr.error),
            )

    def _refresh_stats_table(self, state: RefineryState) -> None:
        table = self.query_one("#stats-table", DataTable)
        table.clear(columns=False)
        stats = state.stats
        table.add_row(
            f"today ({stats.stats_date or '-'})", str(stats.today_merged), str(stats.today_failed)
        )
        table.add_row("total", str(stats.total_merged), str(stats.total_failed))

    def _refresh_events_table(self, state: RefineryState) -> None:
        table = self.query_one("#events-table", DataTable)
        table.clear(columns=False)
        if self._events is None:
            return
        actor = f"{state.rig_name}/refinery"
        rows = [event for event in self._events.read() if event.get("actor") == actor]
        for event in reversed(rows[-_RECENT_EVENT_LIMIT:]):
            payload = event.get("payload")
            details = payload if isinstance(payload, dict) else {}
            table.add_row(
                str(event.get("ts", "")),
                str(event.get("type", "")),
                str(details.get("mr_id", "")),
                _clip(str(details.get("reason", ""))),
            )


def summary_text(state: RefineryState, *, now: datetime) -> str:
    current = state.current_mr
    parts = [f"rig={state.rig_name}", f"state={state.state}"]
    if state.pid:
        parts.append(f"pid={state.pid}")
    if state.started_at is not None:
        parts.append(f"up {format_age(state.started_at, now=now).removesuffix(' ago')}")
    parts.append(f"processing={current.branch if current is not None else '-'}")
    if state.last_merge_at is not None:
        parts.append(f"last merge {format_age(state.last_merge_at, now=now)}")
    return " | ".join(parts)


def queue_rows(state: RefineryState) -> list[MergeRequest]:
    """Current merge request first, then the registry in insertion order.

    Merged records are history and are left to the stats table.
    """
    rows: list[MergeRequest] = []
    if state.current_mr is not None:
        rows.append(state.current_mr)
    current_id = state.current_mr.id if state.current_mr is not None else None
    rows.extend(
        mr
        for mr in state.pending_mrs.values()
        if mr.id != current_id and mr.close_reason != "merged"
    )
    return rows


def _clip(text: str) -> str:
    if len(text) <= _ERROR_MAX_CHARS:
        return text
    return f"{text[: _ERROR_MAX_CHARS - 3]}..."


def run_status_tui(*, store: StateStore, events: EventLog | None, refresh_seconds: int) -> None:
    RefineryStatusApp(store=store, events=events, refresh_seconds=refresh_seconds).run()
