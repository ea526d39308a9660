"""Error taxonomy shared by every fleet component."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class FleetError(Exception):
    """Base fleet error."""

    message: str
    code: str = "fleet_error"

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class NotFoundError(FleetError):
    """Operation targeted a session, review, conflict or category that does not exist."""

    code: str = "not_found"


@dataclass(slots=True)
class AlreadyClaimedError(FleetError):
    """A competing claimer won the race for the same item."""

    code: str = "already_claimed"


@dataclass(slots=True)
class CorruptStateError(FleetError):
    """Stored record failed to parse and was quarantined instead of healed."""

    code: str = "corrupt_state"
    namespace: str | None = None
    record_key: str | None = None


@dataclass(slots=True)
class SpawnError(FleetError):
    """Agent worker process could not be started."""

    code: str = "spawn_failed"
    agent_id: str | None = None


@dataclass(slots=True)
class StaleClaimError(FleetError):
    """Claim or operation exceeded its staleness bound."""

    code: str = "stale_claim"


@dataclass(slots=True)
class InvalidTransitionError(FleetError):
    """Requested agent status change is not allowed by the state machine."""

    code: str = "invalid_transition"


@dataclass(slots=True)
class AgentNotRunningError(FleetError):
    """Lifecycle operation requires a live worker process."""

    code: str = "agent_not_running"


@dataclass(slots=True)
class AgentAlreadyRunningError(FleetError):
    """Agent already has a live worker process."""

    code: str = "agent_already_running"


@dataclass(slots=True)
class StoreUnavailableError(FleetError):
    """State store kept failing after all retry attempts."""

    code: str = "store_unavailable"
