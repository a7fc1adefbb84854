from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Literal, Protocol

from refinery.models import MergeRequest
from refinery.observability import log_event
from refinery.shell import run


LOGGER = logging.getLogger("refinery.notifier")

Priority = Literal["urgent", "high", "normal", "low"]

_PRIORITY_LEVELS: dict[Priority, int] = {"urgent": 0, "high": 1, "normal": 2, "low": 3}


@dataclass(frozen=True)
class MailMessage:
    sender: str
    recipient: str
    subject: str
    body: str
    priority: Priority = "normal"


class Notifier(Protocol):
    def send(self, message: MailMessage) -> None: ...


class NullNotifier:
    """Drops messages; used when ``[notify] enabled = false``."""

    def send(self, message: MailMessage) -> None:
        log_event(
            LOGGER,
            "worker_notification_dropped",
            recipient=message.recipient,
            subject=message.subject,
        )


class CommandMailer:
    """Deliver mail by running ``<mail_command> <to> -s <subject> -m <body>``."""

    def __init__(
        self,
        mail_command: tuple[str, ...],
        *,
        cwd: Path | None = None,
        timeout_seconds: int | None = None,
    ) -> None:
        self._mail_command = mail_command
        self._cwd = cwd
        self._timeout = float(timeout_seconds) if timeout_seconds is not None else None

    def send(self, message: MailMessage) -> None:
        argv = [
            *self._mail_command,
            message.recipient,
            "-s",
            message.subject,
            "-m",
            message.body,
            "--priority",
            str(_PRIORITY_LEVELS[message.priority]),
        ]
        log_event(
            LOGGER,
            "worker_notification_sent",
            recipient=message.recipient,
            subject=message.subject,
            priority=message.priority,
        )
        run(
            argv,
            cwd=self._cwd,
            timeout=self._timeout,
            extra_env={"BEADS_AGENT_NAME": message.sender},
        )


def refinery_address(rig_name: str) -> str:
    return f"{rig_name}/refinery"


def worker_address(rig_name: str, worker: str) -> str:
    return f"{rig_name}/{worker}"


def merged_message(rig_name: str, mr: MergeRequest) -> MailMessage:
    return MailMessage(
        sender=refinery_address(rig_name),
        recipient=worker_address(rig_name, mr.worker),
        subject="Work merged successfully",
        body=(
            f"Your branch {mr.branch} has been merged to {mr.target_branch}.\n"
            "\n"
            f"Issue: {mr.issue_id or '-'}\n"
            "Thank you for your contribution!"
        ),
    )


def conflict_message(rig_name: str, mr: MergeRequest, *, remote: str = "origin") -> MailMessage:
    return MailMessage(
        sender=refinery_address(rig_name),
        recipient=worker_address(rig_name, mr.worker),
        subject="Merge conflict - rebase required",
        body=(
            f"Your branch {mr.branch} has conflicts with {mr.target_branch}.\n"
            "\n"
            "Please rebase your changes:\n"
            f"  git fetch {remote}\n"
            f"  git rebase {remote}/{mr.target_branch}\n"
            "  git push -f\n"
            "\n"
            "Then the Refinery will retry the merge."
        ),
        priority="high",
    )


def rejected_message(rig_name: str, mr: MergeRequest, reason: str) -> MailMessage:
    return MailMessage(
        sender=refinery_address(rig_name),
        recipient=worker_address(rig_name, mr.worker),
        subject="Merge request rejected",
        body=(
            "Your merge request has been rejected.\n"
            "\n"
            f"Branch: {mr.branch}\n"
            f"Issue: {mr.issue_id or '-'}\n"
            f"Reason: {reason}\n"
            "\n"
            "Please review the feedback and address the issues before resubmitting."
        ),
        priority="normal",
    )
