"""Outbound adapters: issue tracker comments/labels and operator notifications."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class IssueTracker(Protocol):
    """Protocol implemented by issue tracker adapters."""

    def post_comment(self, project_number: int, issue_number: int, body: str) -> None:
        """Post a markdown comment on an issue."""

    def add_label(self, project_number: int, issue_number: int, label: str) -> None:
        """Attach a label to an issue."""


class Notifier(Protocol):
    """Protocol implemented by operator-facing alert channels."""

    def warn(self, title: str, message: str, *, artifact: Path | None = None) -> None:
        """Raise a warning-level notification, optionally pointing at a report file."""


class LoggingIssueTracker:
    """Tracker adapter that only records intended calls in the log."""

    def post_comment(self, project_number: int, issue_number: int, body: str) -> None:
        logger.info(
            "Tracker comment for issue %d/%d (%d chars)",
            project_number,
            issue_number,
            len(body),
        )

    def add_label(self, project_number: int, issue_number: int, label: str) -> None:
        logger.info("Tracker label %r for issue %d/%d", label, project_number, issue_number)


class LoggingNotifier:
    def warn(self, title: str, message: str, *, artifact: Path | None = None) -> None:
        if artifact is not None:
            logger.warning("%s: %s (see %s)", title, message, artifact)
        else:
            logger.warning("%s: %s", title, message)
