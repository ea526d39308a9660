"""Runtime configuration for the agent fleet."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path

PAUSE_MODES = ("channel", "signal")


@dataclass(slots=True)
class StoreSettings:
    """State store connection and retry settings."""

    busy_timeout_ms: int = 5_000
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 1.0


@dataclass(slots=True)
class ReviewSettings:
    """Review queue and refinement loop settings."""

    claim_timeout_seconds: int = 7_200
    retention_days: int = 7
    max_cycles: int = 3


@dataclass(slots=True)
class CategorySettings:
    """Ideation category scheduler settings."""

    disabled: tuple[str, ...] = ()
    exhaustion_days: int = 7


@dataclass(slots=True)
class HealthSettings:
    """Loop health thresholds."""

    stuck_threshold_minutes: int = 30
    target_cycle_minutes: int = 240
    heartbeat_healthy_seconds: int = 60
    heartbeat_degraded_seconds: int = 120
    coverage_window_days: int = 30
    min_queue_depth: int = 3
    max_queue_depth: int = 10
    max_transitions_per_agent: int = 1_000


@dataclass(slots=True)
class LifecycleSettings:
    """Agent process management settings."""

    agent_command: tuple[str, ...] = ()
    pause_mode: str = "channel"
    stop_grace_seconds: float = 5.0
    stop_all_timeout_seconds: float = 10.0
    startup_probe_seconds: float = 0.1
    heartbeat_interval_seconds: float = 15.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by component."""

    db_path: Path = Path(".agent_fleet.db")
    artifacts_dir: Path = Path(".agent_fleet")
    store: StoreSettings = field(default_factory=StoreSettings)
    review: ReviewSettings = field(default_factory=ReviewSettings)
    categories: CategorySettings = field(default_factory=CategorySettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``AGENT_FLEET_*`` variables with local-development defaults."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_FLEET_DB_PATH", ".agent_fleet.db")),
            artifacts_dir=Path(os.getenv("AGENT_FLEET_ARTIFACTS_DIR", ".agent_fleet")),
            store=StoreSettings(
                busy_timeout_ms=int(os.getenv("AGENT_FLEET_BUSY_TIMEOUT_MS", "5000")),
                retry_attempts=int(os.getenv("AGENT_FLEET_RETRY_ATTEMPTS", "3")),
                retry_base_delay_seconds=float(
                    os.getenv("AGENT_FLEET_RETRY_BASE_DELAY_SECONDS", "1.0"),
                ),
            ),
            review=ReviewSettings(
                claim_timeout_seconds=int(
                    os.getenv("AGENT_FLEET_REVIEW_CLAIM_TIMEOUT_SECONDS", "7200"),
                ),
                retention_days=int(os.getenv("AGENT_FLEET_REVIEW_RETENTION_DAYS", "7")),
                max_cycles=int(os.getenv("AGENT_FLEET_REVIEW_MAX_CYCLES", "3")),
            ),
            categories=CategorySettings(
                disabled=_csv_env("AGENT_FLEET_DISABLED_CATEGORIES"),
                exhaustion_days=int(os.getenv("AGENT_FLEET_CATEGORY_EXHAUSTION_DAYS", "7")),
            ),
            health=HealthSettings(
                stuck_threshold_minutes=int(
                    os.getenv("AGENT_FLEET_STUCK_THRESHOLD_MINUTES", "30"),
                ),
                target_cycle_minutes=int(os.getenv("AGENT_FLEET_TARGET_CYCLE_MINUTES", "240")),
                heartbeat_healthy_seconds=int(
                    os.getenv("AGENT_FLEET_HEARTBEAT_HEALTHY_SECONDS", "60"),
                ),
                heartbeat_degraded_seconds=int(
                    os.getenv("AGENT_FLEET_HEARTBEAT_DEGRADED_SECONDS", "120"),
                ),
                coverage_window_days=int(os.getenv("AGENT_FLEET_COVERAGE_WINDOW_DAYS", "30")),
                min_queue_depth=int(os.getenv("AGENT_FLEET_MIN_QUEUE_DEPTH", "3")),
                max_queue_depth=int(os.getenv("AGENT_FLEET_MAX_QUEUE_DEPTH", "10")),
                max_transitions_per_agent=int(
                    os.getenv("AGENT_FLEET_MAX_TRANSITIONS_PER_AGENT", "1000"),
                ),
            ),
            lifecycle=LifecycleSettings(
                agent_command=tuple(shlex.split(os.getenv("AGENT_FLEET_AGENT_COMMAND", ""))),
                pause_mode=os.getenv("AGENT_FLEET_PAUSE_MODE", "channel").strip().lower(),
                stop_grace_seconds=float(os.getenv("AGENT_FLEET_STOP_GRACE_SECONDS", "5.0")),
                stop_all_timeout_seconds=float(
                    os.getenv("AGENT_FLEET_STOP_ALL_TIMEOUT_SECONDS", "10.0"),
                ),
                startup_probe_seconds=float(
                    os.getenv("AGENT_FLEET_STARTUP_PROBE_SECONDS", "0.1"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("AGENT_FLEET_HEARTBEAT_INTERVAL_SECONDS", "15.0"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if self.store.busy_timeout_ms <= 0:
            raise ValueError("AGENT_FLEET_BUSY_TIMEOUT_MS must be > 0.")
        if self.store.retry_attempts < 1:
            raise ValueError("AGENT_FLEET_RETRY_ATTEMPTS must be >= 1.")
        if self.store.retry_base_delay_seconds < 0:
            raise ValueError("AGENT_FLEET_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.review.claim_timeout_seconds <= 0:
            raise ValueError("AGENT_FLEET_REVIEW_CLAIM_TIMEOUT_SECONDS must be > 0.")
        if self.review.retention_days < 0:
            raise ValueError("AGENT_FLEET_REVIEW_RETENTION_DAYS must be >= 0.")
        if self.review.max_cycles < 1:
            raise ValueError("AGENT_FLEET_REVIEW_MAX_CYCLES must be >= 1.")
        if self.categories.exhaustion_days <= 0:
            raise ValueError("AGENT_FLEET_CATEGORY_EXHAUSTION_DAYS must be > 0.")
        if self.health.stuck_threshold_minutes <= 0:
            raise ValueError("AGENT_FLEET_STUCK_THRESHOLD_MINUTES must be > 0.")
        if self.health.heartbeat_healthy_seconds >= self.health.heartbeat_degraded_seconds:
            raise ValueError(
                "AGENT_FLEET_HEARTBEAT_HEALTHY_SECONDS must be lower than "
                "AGENT_FLEET_HEARTBEAT_DEGRADED_SECONDS.",
            )
        if self.health.min_queue_depth > self.health.max_queue_depth:
            raise ValueError(
                "AGENT_FLEET_MIN_QUEUE_DEPTH must not exceed AGENT_FLEET_MAX_QUEUE_DEPTH.",
            )
        if self.health.max_transitions_per_agent <= 0:
            raise ValueError("AGENT_FLEET_MAX_TRANSITIONS_PER_AGENT must be > 0.")
        if self.lifecycle.pause_mode not in PAUSE_MODES:
            raise ValueError(
                f"AGENT_FLEET_PAUSE_MODE must be one of {', '.join(PAUSE_MODES)}; "
                f"got {self.lifecycle.pause_mode!r}.",
            )
        if self.lifecycle.stop_grace_seconds < 0:
            raise ValueError("AGENT_FLEET_STOP_GRACE_SECONDS must be >= 0.")
        if self.lifecycle.stop_all_timeout_seconds <= 0:
            raise ValueError("AGENT_FLEET_STOP_ALL_TIMEOUT_SECONDS must be > 0.")


def _csv_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())
