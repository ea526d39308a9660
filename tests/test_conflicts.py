from __future__ import annotations

import allure
import pytest

from agent_fleet.errors import NotFoundError, StoreUnavailableError
from agent_fleet.orchestration.models import ConflictStatus

pytestmark = [
    allure.epic("Work Queues"),
    allure.feature("Conflict Queue"),
]


def _add(services, issue_number: int = 42, agent_id: str = "agent-1"):
    services.claims.claim(1, issue_number, agent_id)
    return services.conflicts.add(
        1,
        issue_number,
        f"feature/issue-{issue_number}",
        ["src/app.py", "README.md"],
        agent_id,
    )


def test_add_and_query_conflicts(services, clock) -> None:
    first = _add(services, 42)
    clock.advance(minutes=1)
    second = _add(services, 43, agent_id="agent-2")

    assert first.status == ConflictStatus.PENDING
    assert first.conflicting_files == ["src/app.py", "README.md"]
    assert services.conflicts.count() == 2
    assert [item.conflict_id for item in services.conflicts.list()] == [
        first.conflict_id,
        second.conflict_id,
    ]
    assert services.conflicts.get(second.conflict_id) == second
    assert services.conflicts.get("missing") is None
    assert [item.issue_number for item in services.conflicts.list_by_agent("agent-2")] == [43]


def test_set_status_and_clear_resolved(services) -> None:
    first = _add(services, 42)
    _add(services, 43)

    updated = services.conflicts.set_status(first.conflict_id, "resolved")

    assert updated.status == ConflictStatus.RESOLVED
    assert [item.issue_number for item in services.conflicts.list_by_status("pending")] == [43]
    assert services.conflicts.clear_resolved() == 1
    assert services.conflicts.clear_resolved() == 0
    assert services.conflicts.count() == 1
    with pytest.raises(NotFoundError):
        services.conflicts.set_status("missing", ConflictStatus.RESOLVING)


def test_resolve_keeps_issue_claimed(services) -> None:
    item = _add(services)

    services.conflicts.resolve(item.conflict_id)

    assert services.conflicts.count() == 0
    assert services.claims.is_claimed(1, 42)
    with pytest.raises(NotFoundError):
        services.conflicts.remove(item.conflict_id)


def test_abort_returns_issue_to_backlog(services) -> None:
    item = _add(services)

    aborted = services.conflicts.abort(item.conflict_id)

    assert aborted.conflict_id == item.conflict_id
    assert services.conflicts.list() == []
    assert not services.claims.is_claimed(1, 42)
    assert services.claims.claim(1, 42, "agent-2") is not None
    with pytest.raises(NotFoundError):
        services.conflicts.abort(item.conflict_id)


def test_abort_restores_claim_when_removal_fails(services, monkeypatch) -> None:
    item = _add(services)
    original = services.claims.get(1, 42)

    def _unavailable(conflict_id: str):
        raise StoreUnavailableError(message="database is locked")

    monkeypatch.setattr(services.conflicts, "remove", _unavailable)

    with pytest.raises(StoreUnavailableError):
        services.conflicts.abort(item.conflict_id)

    assert services.claims.get(1, 42) == original
    assert services.conflicts.get(item.conflict_id) == item
