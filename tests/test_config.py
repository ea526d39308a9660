from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_fleet.config import HealthSettings, LifecycleSettings, Settings, StoreSettings

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "AGENT_FLEET_DB_PATH",
        "AGENT_FLEET_DISABLED_CATEGORIES",
        "AGENT_FLEET_PAUSE_MODE",
        "AGENT_FLEET_REVIEW_MAX_CYCLES",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_fleet.db")
    assert settings.review.max_cycles == 3
    assert settings.review.claim_timeout_seconds == 7_200
    assert settings.categories.disabled == ()
    assert settings.health.stuck_threshold_minutes == 30
    assert settings.lifecycle.pause_mode == "channel"
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_FLEET_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("AGENT_FLEET_DISABLED_CATEGORIES", " security, ,testing ")
    monkeypatch.setenv("AGENT_FLEET_REVIEW_MAX_CYCLES", "5")
    monkeypatch.setenv("AGENT_FLEET_PAUSE_MODE", " SIGNAL ")
    monkeypatch.setenv("AGENT_FLEET_AGENT_COMMAND", "run-agent --id '{agent_id}'")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.categories.disabled == ("security", "testing")
    assert settings.review.max_cycles == 5
    assert settings.lifecycle.pause_mode == "signal"
    assert settings.lifecycle.agent_command == ("run-agent", "--id", "{agent_id}")


def test_explicit_db_path_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_FLEET_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(store=StoreSettings(retry_attempts=0)), "RETRY_ATTEMPTS"),
        (
            Settings(health=HealthSettings(heartbeat_healthy_seconds=120)),
            "HEARTBEAT_HEALTHY_SECONDS",
        ),
        (Settings(health=HealthSettings(min_queue_depth=11)), "MIN_QUEUE_DEPTH"),
        (Settings(lifecycle=LifecycleSettings(pause_mode="freeze")), "PAUSE_MODE"),
    ],
)
def test_validate_rejects_out_of_range_values(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_validate_rejects_zero_review_cycles() -> None:
    settings = Settings()
    settings = replace(settings, review=replace(settings.review, max_cycles=0))

    with pytest.raises(ValueError, match="AGENT_FLEET_REVIEW_MAX_CYCLES must be >= 1"):
        settings.validate()
