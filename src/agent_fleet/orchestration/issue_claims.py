"""Issue claim registry: which agent currently owns which issue."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from agent_fleet.orchestration.codecs import ISSUE_CLAIMS, claim_key
from agent_fleet.orchestration.models import IssueClaim
from agent_fleet.storage.common import utc_now
from agent_fleet.storage.state_store import NO_CHANGE, StateStore

logger = logging.getLogger(__name__)


class IssueClaimRegistry:
    """First-writer-wins claims keyed by ``(project_number, issue_number)``."""

    def __init__(self, store: StateStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock

    def claim(self, project_number: int, issue_number: int, agent_id: str) -> IssueClaim | None:
        """Claim an issue; ``None`` when another agent already holds it.

        Re-claiming an issue the same agent holds returns the existing claim.
        """

        def _claim(current: IssueClaim | None) -> tuple[Any, IssueClaim | None]:
            if current is not None:
                return NO_CHANGE, current if current.agent_id == agent_id else None
            claim = IssueClaim(
                project_number=project_number,
                issue_number=issue_number,
                agent_id=agent_id,
                claimed_at=self._clock(),
            )
            return claim, claim

        claim = self._store.mutate(ISSUE_CLAIMS, claim_key(project_number, issue_number), _claim)
        if claim is None:
            logger.info(
                "Issue %d/%d already claimed; %s lost the race",
                project_number,
                issue_number,
                agent_id,
            )
        else:
            logger.info("Issue %d/%d claimed by %s", project_number, issue_number, claim.agent_id)
        return claim

    def release(self, project_number: int, issue_number: int) -> bool:
        """Return the issue to the backlog. False if it was not claimed."""

        released = self._store.delete(ISSUE_CLAIMS, claim_key(project_number, issue_number))
        if released:
            logger.info("Issue %d/%d released to backlog", project_number, issue_number)
        return released

    def get(self, project_number: int, issue_number: int) -> IssueClaim | None:
        record = self._store.get(ISSUE_CLAIMS, claim_key(project_number, issue_number))
        return record.value if record is not None else None

    def is_claimed(self, project_number: int, issue_number: int) -> bool:
        return self.get(project_number, issue_number) is not None

    def list_active(self) -> list[IssueClaim]:
        claims = [claim for _, claim in self._store.list(ISSUE_CLAIMS)]
        return sorted(claims, key=lambda claim: claim.claimed_at)

    def restore(self, claim: IssueClaim) -> IssueClaim:
        """Put a previously released claim back; an existing claim is kept."""

        def _restore(current: IssueClaim | None) -> tuple[Any, IssueClaim]:
            if current is not None:
                return NO_CHANGE, current
            return claim, claim

        restored = self._store.mutate(
            ISSUE_CLAIMS,
            claim_key(claim.project_number, claim.issue_number),
            _restore,
        )
        logger.warning(
            "Issue %d/%d claim restored for %s",
            claim.project_number,
            claim.issue_number,
            restored.agent_id,
        )
        return restored
