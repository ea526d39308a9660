from __future__ import annotations

import os
import signal
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_fleet.errors import (
    AgentAlreadyRunningError,
    AgentNotRunningError,
    InvalidTransitionError,
    SpawnError,
)
from agent_fleet.orchestration.agent_worker import AgentWorker
from agent_fleet.orchestration.models import AgentStatus
from agent_fleet.orchestration.services import FleetServices

pytestmark = [
    allure.epic("Agent Processes"),
    allure.feature("Lifecycle Controller"),
]

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.05)
    return predicate()


def _fleet(settings, monkeypatch, *command: str, **lifecycle_changes) -> FleetServices:
    pythonpath = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(SRC_DIR), pythonpath]) if pythonpath else str(SRC_DIR),
    )
    lifecycle = replace(settings.lifecycle, agent_command=tuple(command), **lifecycle_changes)
    fleet = FleetServices(replace(settings, lifecycle=lifecycle))
    fleet.init_schema()
    return fleet


@pytest.fixture()
def fleet(settings, monkeypatch):
    services = _fleet(settings, monkeypatch)
    yield services
    services.lifecycle.stop_all()
    services.close()


def test_started_worker_heartbeats_until_stopped(fleet: FleetServices) -> None:
    pid = fleet.lifecycle.start("agent-1")

    assert pid > 0
    assert fleet.lifecycle.is_running("agent-1")
    first = fleet.sessions.read("agent-1").last_heartbeat
    assert _wait_for(lambda: fleet.sessions.read("agent-1").last_heartbeat > first)

    assert fleet.lifecycle.stop("agent-1") is True
    assert not fleet.lifecycle.is_running("agent-1")
    session = fleet.sessions.read("agent-1")
    assert session.status == AgentStatus.IDLE
    assert session.error_count == 0
    assert fleet.lifecycle.stop("agent-1") is False


def test_start_refuses_running_agent(fleet: FleetServices) -> None:
    fleet.lifecycle.start("agent-1")

    with pytest.raises(AgentAlreadyRunningError):
        fleet.lifecycle.start("agent-1")


def test_concurrent_starts_spawn_one_process(fleet: FleetServices) -> None:
    barrier = threading.Barrier(2)
    pids: list[int] = []
    errors: list[Exception] = []

    def _start() -> None:
        barrier.wait()
        try:
            pids.append(fleet.lifecycle.start("agent-x"))
        except AgentAlreadyRunningError as error:
            errors.append(error)

    threads = [threading.Thread(target=_start) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(pids) == 1
    assert len(errors) == 1
    assert fleet.lifecycle.running_agents() == ["agent-x"]
    assert [info.pid for info in fleet.lifecycle.agent_stats().processes] == pids


def test_pause_and_resume_over_control_channel(fleet: FleetServices) -> None:
    with pytest.raises(AgentNotRunningError):
        fleet.lifecycle.pause("agent-1")

    fleet.lifecycle.start("agent-1")
    with pytest.raises(InvalidTransitionError):
        fleet.lifecycle.resume("agent-1")

    fleet.lifecycle.pause("agent-1")
    assert fleet.sessions.read("agent-1").status == AgentStatus.PAUSED
    assert fleet.lifecycle.is_running("agent-1")

    fleet.lifecycle.resume("agent-1")
    assert fleet.sessions.read("agent-1").status == AgentStatus.IDLE
    transitions = fleet.monitor.transitions.list(agent_id="agent-1")
    assert [(item.from_state, item.to_state) for item in transitions] == [
        ("idle", "paused"),
        ("paused", "idle"),
    ]


@pytest.mark.skipif(not hasattr(signal, "SIGSTOP"), reason="POSIX job control signals required")
def test_pause_in_signal_mode(settings, monkeypatch) -> None:
    fleet = _fleet(settings, monkeypatch, pause_mode="signal")
    try:
        fleet.lifecycle.start("agent-1")
        fleet.lifecycle.pause("agent-1")
        assert fleet.sessions.read("agent-1").status == AgentStatus.PAUSED
        fleet.lifecycle.resume("agent-1")
        assert fleet.sessions.read("agent-1").status == AgentStatus.IDLE
        assert fleet.lifecycle.stop("agent-1") is True
    finally:
        fleet.lifecycle.stop_all()
        fleet.close()


@pytest.mark.skipif(not hasattr(signal, "SIGKILL"), reason="SIGKILL required")
def test_unsolicited_exit_is_recorded_as_crash(fleet: FleetServices) -> None:
    pid = fleet.lifecycle.start("agent-1")

    os.kill(pid, signal.SIGKILL)

    assert _wait_for(lambda: fleet.sessions.read("agent-1").status == AgentStatus.FAILED)
    session = fleet.sessions.read("agent-1")
    assert session.error_count == 1
    assert "SIGKILL" in session.last_error
    assert _wait_for(lambda: not fleet.lifecycle.is_running("agent-1"))

    fleet.lifecycle.start("agent-1")
    assert fleet.sessions.read("agent-1").status == AgentStatus.IDLE


def test_process_exiting_during_startup_is_spawn_failure(settings, monkeypatch) -> None:
    fleet = _fleet(settings, monkeypatch, sys.executable, "-c", "import sys; sys.exit(3)")
    try:
        with pytest.raises(SpawnError) as excinfo:
            fleet.lifecycle.start("agent-1")
        assert excinfo.value.agent_id == "agent-1"
        session = fleet.sessions.read("agent-1")
        assert session.status == AgentStatus.FAILED
        assert session.error_count == 1
        assert "exited with code 3" in session.last_error
        assert not fleet.lifecycle.is_running("agent-1")

        with pytest.raises(SpawnError):
            fleet.lifecycle.start("agent-1")
        assert fleet.sessions.read("agent-1").error_count == 2
    finally:
        fleet.close()


def test_missing_executable_is_spawn_failure(settings, monkeypatch, tmp_path: Path) -> None:
    fleet = _fleet(settings, monkeypatch, str(tmp_path / "no-such-agent"))
    try:
        with pytest.raises(SpawnError):
            fleet.lifecycle.start("agent-1")
        assert fleet.sessions.read("agent-1").status == AgentStatus.FAILED
        assert fleet.sessions.read("agent-1").last_error.startswith("Spawn failed")
    finally:
        fleet.close()


def test_stop_kills_worker_that_ignores_sigterm(settings, monkeypatch) -> None:
    fleet = _fleet(
        settings,
        monkeypatch,
        sys.executable,
        "-c",
        "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); time.sleep(60)",
        stop_grace_seconds=0.5,
    )
    try:
        fleet.lifecycle.start("agent-1")
        started = time.monotonic()

        assert fleet.lifecycle.stop("agent-1") is True

        assert time.monotonic() - started < 5
        assert not fleet.lifecycle.is_running("agent-1")
        session = fleet.sessions.read("agent-1")
        assert session.status == AgentStatus.IDLE
        assert session.error_count == 0
    finally:
        fleet.lifecycle.stop_all()
        fleet.close()


def test_stop_all_stops_every_agent(fleet: FleetServices) -> None:
    for agent_id in ("agent-1", "agent-2", "agent-3"):
        fleet.lifecycle.start(agent_id)

    stats = fleet.lifecycle.agent_stats()
    assert stats.running == 3
    assert [info.agent_id for info in stats.processes] == ["agent-1", "agent-2", "agent-3"]
    assert stats.sessions_by_status == {"idle": 3}

    stopped = fleet.lifecycle.stop_all()

    assert stopped == ["agent-1", "agent-2", "agent-3"]
    assert fleet.lifecycle.running_agents() == []
    assert {session.status for session in fleet.sessions.list()} == {AgentStatus.IDLE}
    assert fleet.lifecycle.stop_all() == []


def test_worker_stops_on_control_channel_eof(services) -> None:
    services.sessions.create("agent-1")
    read_end, write_end = os.pipe()
    os.close(write_end)

    with os.fdopen(read_end) as control:
        worker = AgentWorker(
            agent_id="agent-1",
            sessions=services.sessions,
            heartbeat_interval_seconds=0.05,
        )
        assert worker.run(control=control) == 0


def test_worker_exits_when_session_is_gone(services) -> None:
    worker = AgentWorker(agent_id="ghost", sessions=services.sessions)

    assert worker.run() == 1


def test_parked_worker_skips_work_but_keeps_heartbeating(services) -> None:
    services.sessions.create("agent-1")
    ticks: list[int] = []
    worker = AgentWorker(
        agent_id="agent-1",
        sessions=services.sessions,
        heartbeat_interval_seconds=0.02,
        on_tick=lambda: ticks.append(1),
    )
    worker.handle_command("pause")
    before = services.sessions.read("agent-1").last_heartbeat
    runner = threading.Thread(target=worker.run)
    runner.start()
    try:
        assert _wait_for(
            lambda: services.sessions.read("agent-1").last_heartbeat > before,
            timeout=5,
        )
        assert worker.paused
        assert ticks == []

        worker.handle_command("resume")
        assert _wait_for(lambda: len(ticks) > 0, timeout=5)
        worker.handle_command("unknown")
    finally:
        worker.handle_command("stop")
        runner.join(timeout=5)
    assert not runner.is_alive()


@pytest.mark.parametrize("in_main_thread", [True, False])
def test_worker_tick_errors_propagate_and_restore_handlers(services, in_main_thread) -> None:
    services.sessions.create("agent-1")
    original = signal.getsignal(signal.SIGTERM)

    def _broken_tick() -> None:
        raise ValueError("tick failed")

    worker = AgentWorker(
        agent_id="agent-1",
        sessions=services.sessions,
        heartbeat_interval_seconds=0.01,
        on_tick=_broken_tick,
    )
    errors: list[Exception] = []

    def _run() -> None:
        try:
            worker.run()
        except Exception as error:  # noqa: BLE001
            errors.append(error)

    if in_main_thread:
        _run()
    else:
        runner = threading.Thread(target=_run)
        runner.start()
        runner.join(timeout=5)

    assert [type(error) for error in errors] == [ValueError]
    assert str(errors[0]) == "tick failed"
    assert signal.getsignal(signal.SIGTERM) == original
