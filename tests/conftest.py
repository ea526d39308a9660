"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_fleet.config import LifecycleSettings, Settings, StoreSettings
from agent_fleet.orchestration.services import FleetServices
from agent_fleet.storage.retry import RetryPolicy
from agent_fleet.storage.state_store import StateStore

START = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@dataclass
class RecordingTracker:
    comments: list[tuple[int, int, str]] = field(default_factory=list)
    labels: list[tuple[int, int, str]] = field(default_factory=list)

    def post_comment(self, project_number: int, issue_number: int, body: str) -> None:
        self.comments.append((project_number, issue_number, body))

    def add_label(self, project_number: int, issue_number: int, label: str) -> None:
        self.labels.append((project_number, issue_number, label))


@dataclass
class RecordingNotifier:
    warnings: list[tuple[str, str, Path | None]] = field(default_factory=list)

    def warn(self, title: str, message: str, *, artifact: Path | None = None) -> None:
        self.warnings.append((title, message, artifact))


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock):
    state_store = StateStore(
        tmp_path / "fleet.db",
        retry_policy=RetryPolicy(attempts=3, base_delay_seconds=0.0),
        clock=clock,
    )
    state_store.init_schema()
    yield state_store
    state_store.close()


@pytest.fixture()
def tracker() -> RecordingTracker:
    return RecordingTracker()


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "fleet.db",
        artifacts_dir=tmp_path / "artifacts",
        store=StoreSettings(retry_base_delay_seconds=0.0),
        lifecycle=LifecycleSettings(
            stop_grace_seconds=2.0,
            stop_all_timeout_seconds=5.0,
            startup_probe_seconds=0.3,
            heartbeat_interval_seconds=0.2,
        ),
    )


@pytest.fixture()
def services(settings: Settings, clock: FakeClock, tracker, notifier):
    fleet = FleetServices(settings, tracker=tracker, notifier=notifier, clock=clock)
    fleet.init_schema()
    yield fleet
    fleet.close()
