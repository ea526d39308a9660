"""Merge-conflict queue awaiting operator intervention."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from datetime import datetime
from typing import Any
from uuid import uuid4

from agent_fleet.errors import NotFoundError
from agent_fleet.orchestration.codecs import CONFLICT_QUEUE, QUEUE_KEY
from agent_fleet.orchestration.issue_claims import IssueClaimRegistry
from agent_fleet.orchestration.models import ConflictItem, ConflictStatus
from agent_fleet.storage.common import utc_now
from agent_fleet.storage.state_store import NO_CHANGE, StateStore

logger = logging.getLogger(__name__)


class ConflictQueue:
    def __init__(
        self,
        store: StateStore,
        claims: IssueClaimRegistry,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._claims = claims
        self._clock = clock

    def add(
        self,
        project_number: int,
        issue_number: int,
        branch_name: str,
        conflicting_files: Sequence[str],
        agent_id: str,
    ) -> ConflictItem:
        item = ConflictItem(
            conflict_id=str(uuid4()),
            project_number=project_number,
            issue_number=issue_number,
            branch_name=branch_name,
            conflicting_files=list(conflicting_files),
            status=ConflictStatus.PENDING,
            created_at=self._clock(),
            agent_id=agent_id,
        )
        self._store.mutate(
            CONFLICT_QUEUE,
            QUEUE_KEY,
            lambda items: ([*(items or []), item], None),
        )
        logger.warning(
            "Merge conflict on issue %d/%d (%s): %d file(s), agent %s",
            project_number,
            issue_number,
            branch_name,
            len(item.conflicting_files),
            agent_id,
        )
        return item

    def list(self) -> list[ConflictItem]:
        return sorted(self._load(), key=lambda item: item.created_at)

    def get(self, conflict_id: str) -> ConflictItem | None:
        for item in self._load():
            if item.conflict_id == conflict_id:
                return item
        return None

    def count(self) -> int:
        return len(self._load())

    def list_by_status(self, status: ConflictStatus | str) -> list[ConflictItem]:
        wanted = ConflictStatus(status)
        return [item for item in self.list() if item.status == wanted]

    def list_by_agent(self, agent_id: str) -> list[ConflictItem]:
        return [item for item in self.list() if item.agent_id == agent_id]

    def set_status(self, conflict_id: str, status: ConflictStatus | str) -> ConflictItem:
        target = ConflictStatus(status)

        def _set(items: list[ConflictItem] | None) -> tuple[Any, ConflictItem]:
            queue = items or []
            for index, item in enumerate(queue):
                if item.conflict_id == conflict_id:
                    updated = replace(item, status=target)
                    return [*queue[:index], updated, *queue[index + 1 :]], updated
            raise NotFoundError(message=f"Conflict not found: {conflict_id}")

        updated = self._store.mutate(CONFLICT_QUEUE, QUEUE_KEY, _set)
        logger.info("Conflict %s -> %s", conflict_id, target.value)
        return updated

    def remove(self, conflict_id: str) -> ConflictItem:
        def _remove(items: list[ConflictItem] | None) -> tuple[Any, ConflictItem]:
            queue = items or []
            for index, item in enumerate(queue):
                if item.conflict_id == conflict_id:
                    return [*queue[:index], *queue[index + 1 :]], item
            raise NotFoundError(message=f"Conflict not found: {conflict_id}")

        removed = self._store.mutate(CONFLICT_QUEUE, QUEUE_KEY, _remove)
        logger.info("Conflict %s removed", conflict_id)
        return removed

    def resolve(self, conflict_id: str) -> ConflictItem:
        """The conflict is gone; the agent keeps its claim and carries on."""

        return self.remove(conflict_id)

    def abort(self, conflict_id: str) -> ConflictItem:
        """Drop the conflict and return its issue to the backlog.

        The claim is released first. If removing the conflict then fails the
        claim is put back, so the issue never ends up released while its
        conflict is still listed, nor claimed with no conflict on record.
        """

        item = self.get(conflict_id)
        if item is None:
            raise NotFoundError(message=f"Conflict not found: {conflict_id}")

        claim = self._claims.get(item.project_number, item.issue_number)
        self._claims.release(item.project_number, item.issue_number)
        try:
            removed = self.remove(conflict_id)
        except Exception:
            if claim is not None:
                self._claims.restore(claim)
            logger.error(
                "Abort of conflict %s failed; claim on issue %d/%d restored",
                conflict_id,
                item.project_number,
                item.issue_number,
            )
            raise
        logger.info(
            "Conflict %s aborted; issue %d/%d returned to backlog",
            conflict_id,
            item.project_number,
            item.issue_number,
        )
        return removed

    def clear_resolved(self) -> int:
        def _clear(items: list[ConflictItem] | None) -> tuple[Any, int]:
            queue = items or []
            kept = [item for item in queue if item.status != ConflictStatus.RESOLVED]
            removed = len(queue) - len(kept)
            if removed == 0:
                return NO_CHANGE, 0
            return kept, removed

        removed = self._store.mutate(CONFLICT_QUEUE, QUEUE_KEY, _clear)
        if removed:
            logger.info("Cleared %d resolved conflicts", removed)
        return removed

    def _load(self) -> list[ConflictItem]:
        record = self._store.get(CONFLICT_QUEUE, QUEUE_KEY)
        return list(record.value) if record is not None else []
