"""Structured ``event=<name> key=value`` logging for the refinery.

Nothing is emitted until ``configure_logging`` turns on a verbose mode.
``high`` shows every event. ``low`` keeps lifecycle changes and merge
outcomes plus anything at WARNING or above. Each line carries the rig
set by ``logging_rig_context``.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
from typing import Final, Literal, cast


ROOT_LOGGER: Final[str] = "refinery"
LOG_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(rig)s] %(message)s"
OUTCOME_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "refinery_started",
        "refinery_stopped",
        "merge_started",
        "merged",
        "merge_failed",
        "merge_skipped",
        "merge_rejected",
        "push_retry_scheduled",
        "interrupted_merge_recovered",
    }
)
_FIELD_LIMIT: Final[int] = 120

VerboseMode = Literal["low", "high"]

_current_rig: ContextVar[str] = ContextVar("refinery_rig", default="-")


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    mode = _verbose_mode(verbose)
    logger = logging.getLogger(ROOT_LOGGER)
    for old in list(logger.handlers):
        logger.removeHandler(old)
        old.close()
    logger.propagate = False

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if state_dir is not None:
        handlers.append(daily_file_handler(state_dir / "logs"))
    for handler in handlers:
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(_stamp_rig)
        if mode == "low":
            handler.addFilter(_outcomes_only)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)


def daily_file_handler(logs_dir: Path) -> logging.Handler:
    """``<logs_dir>/refinery.log``, rolled over at UTC midnight."""
    logs_dir.mkdir(parents=True, exist_ok=True)
    return TimedRotatingFileHandler(
        logs_dir / "refinery.log", when="midnight", utc=True, encoding="utf-8"
    )


def log_event(
    logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: object
) -> None:
    parts = [f"event={event}"]
    parts.extend(f"{key}={_format_field(fields[key])}" for key in sorted(fields))
    logger.log(level, " ".join(parts), extra={"event": event})


@contextmanager
def logging_rig_context(rig_name: str) -> Iterator[None]:
    token = _current_rig.set(rig_name)
    try:
        yield
    finally:
        _current_rig.reset(token)


def _format_field(value: object) -> str:
    if value is None:
        text = "null"
    elif isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, int | float):
        text = str(value)
    elif isinstance(value, datetime):
        text = value.isoformat()
    elif isinstance(value, Path):
        text = str(value)
    elif isinstance(value, tuple | list) and all(isinstance(item, str) for item in value):
        text = ",".join(value)
    elif isinstance(value, str):
        text = " ".join(value.split())
        if len(text) > _FIELD_LIMIT:
            text = f"{text[:_FIELD_LIMIT]}..."
    else:
        text = f"<{type(value).__name__}>"

    if not text:
        return "<empty>"
    if "=" in text or any(ch.isspace() for ch in text):
        return json.dumps(text)
    return text


def _verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None or verbose is False:
        return None
    if verbose is True:
        return "high"
    mode = verbose.strip().lower()
    if mode not in ("low", "high"):
        raise ValueError(f"Unsupported verbose mode: {verbose!r}")
    return cast(VerboseMode, mode)


def _stamp_rig(record: logging.LogRecord) -> bool:
    record.rig = _current_rig.get()
    return True


def _outcomes_only(record: logging.LogRecord) -> bool:
    if record.levelno >= logging.WARNING:
        return True
    return getattr(record, "event", None) in OUTCOME_EVENTS
