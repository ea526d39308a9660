"""Map agent sessions onto OS processes."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from collections import Counter
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_fleet.errors import (
    AgentAlreadyRunningError,
    AgentNotRunningError,
    InvalidTransitionError,
    SpawnError,
)
from agent_fleet.orchestration.models import AgentStats, AgentStatus, RunningAgentInfo
from agent_fleet.orchestration.sessions import SessionRegistry, can_transition
from agent_fleet.storage.common import utc_now

logger = logging.getLogger(__name__)

WORKER_MODULE = "agent_fleet.orchestration.agent_worker"


@dataclass(slots=True)
class _ManagedProcess:
    agent_id: str
    process: subprocess.Popen[str]
    started_at: datetime
    stop_requested: bool = False
    paused: bool = False


class AgentLifecycleController:
    """Start, pause, resume and stop one worker process per agent.

    Pause/resume use a line-based control channel on the worker's stdin
    (``pause``/``resume``). In ``signal`` mode SIGSTOP/SIGCONT are used instead
    where the platform has them. A worker exit not requested through ``stop``
    is recorded as a crash: the session moves to ``failed``.
    """

    def __init__(
        self,
        sessions: SessionRegistry,
        *,
        db_path: Path,
        command_template: Sequence[str] = (),
        pause_mode: str = "channel",
        stop_grace_seconds: float = 5.0,
        stop_all_timeout_seconds: float = 10.0,
        startup_probe_seconds: float = 0.1,
        heartbeat_interval_seconds: float = 15.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sessions = sessions
        self._db_path = db_path
        self._command_template = tuple(command_template)
        self._use_signals = pause_mode == "signal" and hasattr(signal, "SIGSTOP")
        self._stop_grace_seconds = stop_grace_seconds
        self._stop_all_timeout_seconds = stop_all_timeout_seconds
        self._startup_probe_seconds = startup_probe_seconds
        self._heartbeat_interval_seconds = heartbeat_interval_seconds
        self._clock = clock
        self._processes: dict[str, _ManagedProcess] = {}
        self._starting: set[str] = set()
        self._lock = threading.Lock()

    def start(self, agent_id: str) -> int:
        """Spawn the agent's worker and return its pid.

        The agent id is reserved under the lock until the process is
        registered or the spawn fails, so concurrent starts get one process.
        """

        with self._lock:
            existing = self._processes.get(agent_id)
            if agent_id in self._starting or (
                existing is not None and existing.process.poll() is None
            ):
                raise AgentAlreadyRunningError(message=f"Agent {agent_id} is already running")
            self._starting.add(agent_id)

        try:
            managed = self._spawn(agent_id)
        finally:
            with self._lock:
                self._starting.discard(agent_id)

        threading.Thread(
            target=self._watch,
            args=(managed,),
            name=f"agent-watch-{agent_id}",
            daemon=True,
        ).start()
        logger.info("Agent %s running as pid %d", agent_id, managed.process.pid)
        return managed.process.pid

    def _spawn(self, agent_id: str) -> _ManagedProcess:
        self._sessions.reset(agent_id)
        command = self._build_command(agent_id)
        logger.info("Starting agent %s: %s", agent_id, " ".join(command))
        try:
            process = subprocess.Popen(  # noqa: S603
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                text=True,
                env={**os.environ, "AGENT_FLEET_AGENT_ID": agent_id},
            )
        except OSError as error:
            self._sessions.record_error(agent_id, f"Spawn failed: {error}")
            raise SpawnError(
                message=f"Failed to spawn agent {agent_id}: {error}",
                agent_id=agent_id,
            ) from error

        try:
            returncode: int | None = process.wait(timeout=self._startup_probe_seconds)
        except subprocess.TimeoutExpired:
            returncode = None
        if returncode is not None:
            description = _describe_exit(returncode)
            self._sessions.record_error(agent_id, f"Agent exited during startup: {description}")
            raise SpawnError(
                message=f"Agent {agent_id} exited during startup: {description}",
                agent_id=agent_id,
            )

        managed = _ManagedProcess(agent_id=agent_id, process=process, started_at=self._clock())
        with self._lock:
            self._processes[agent_id] = managed
        return managed

    def pause(self, agent_id: str) -> None:
        managed = self._require_running(agent_id)
        self._require_transition(agent_id, AgentStatus.PAUSED)
        if self._use_signals:
            os.kill(managed.process.pid, signal.SIGSTOP)
        else:
            self._send_control(managed, "pause")
        managed.paused = True
        self._sessions.update(agent_id, status=AgentStatus.PAUSED)
        logger.info("Agent %s paused", agent_id)

    def resume(self, agent_id: str) -> None:
        session = self._sessions.read(agent_id)
        if session is None or session.status != AgentStatus.PAUSED:
            current = session.status.value if session is not None else "missing"
            raise InvalidTransitionError(
                message=f"Agent {agent_id} is not paused (status={current})",
            )
        managed = self._require_running(agent_id)
        if self._use_signals:
            os.kill(managed.process.pid, signal.SIGCONT)
        else:
            self._send_control(managed, "resume")
        managed.paused = False
        self._sessions.update(agent_id, status=AgentStatus.IDLE)
        logger.info("Agent %s resumed", agent_id)

    def stop(self, agent_id: str) -> bool:
        """Terminate gracefully, kill after the grace period, mark the session idle.

        Returns False when no process was running for the agent.
        """

        with self._lock:
            managed = self._processes.pop(agent_id, None)
            if managed is not None:
                managed.stop_requested = True

        if managed is not None:
            self._terminate(managed)
        if self._sessions.read(agent_id) is not None:
            self._sessions.update(agent_id, status=AgentStatus.IDLE)
        return managed is not None

    def stop_all(self, timeout_seconds: float | None = None) -> list[str]:
        """Stop every tracked agent concurrently; force-kill stragglers at the deadline."""

        timeout = self._stop_all_timeout_seconds if timeout_seconds is None else timeout_seconds
        with self._lock:
            targets = dict(self._processes)
        if not targets:
            return []

        with ThreadPoolExecutor(max_workers=len(targets)) as executor:
            futures = {executor.submit(self.stop, agent_id): agent_id for agent_id in targets}
            _, pending = wait_futures(futures, timeout=timeout)
            for future in pending:
                agent_id = futures[future]
                logger.warning("Agent %s did not stop within %.1fs, killing", agent_id, timeout)
                _kill(targets[agent_id].process)
        logger.info("Stopped %d agents", len(targets))
        return sorted(targets)

    def is_running(self, agent_id: str) -> bool:
        with self._lock:
            managed = self._processes.get(agent_id)
        return managed is not None and managed.process.poll() is None

    def running_agents(self) -> list[str]:
        with self._lock:
            agent_ids = list(self._processes)
        return sorted(agent_id for agent_id in agent_ids if self.is_running(agent_id))

    def agent_stats(self) -> AgentStats:
        now = self._clock()
        with self._lock:
            managed = [item for item in self._processes.values() if item.process.poll() is None]
        by_status = Counter(session.status.value for session in self._sessions.list())
        return AgentStats(
            running=len(managed),
            sessions_by_status=dict(sorted(by_status.items())),
            processes=[
                RunningAgentInfo(
                    agent_id=item.agent_id,
                    pid=item.process.pid,
                    started_at=item.started_at,
                    uptime_seconds=(now - item.started_at).total_seconds(),
                )
                for item in sorted(managed, key=lambda item: item.agent_id)
            ],
        )

    def _build_command(self, agent_id: str) -> list[str]:
        if self._command_template:
            return [
                part.format(agent_id=agent_id, db_path=self._db_path)
                for part in self._command_template
            ]
        return [
            sys.executable,
            "-m",
            WORKER_MODULE,
            "--agent-id",
            agent_id,
            "--db-path",
            str(self._db_path),
            "--heartbeat-interval",
            str(self._heartbeat_interval_seconds),
        ]

    def _watch(self, managed: _ManagedProcess) -> None:
        returncode = managed.process.wait()
        with self._lock:
            if managed.stop_requested:
                return
            if self._processes.get(managed.agent_id) is managed:
                del self._processes[managed.agent_id]

        description = _describe_exit(returncode)
        logger.error("Agent %s crashed: %s", managed.agent_id, description)
        try:
            self._sessions.record_error(
                managed.agent_id,
                f"Agent process {description}",
                status=AgentStatus.FAILED,
            )
        except Exception as error:  # noqa: BLE001
            logger.error("Could not record crash of agent %s: %s", managed.agent_id, error)

    def _terminate(self, managed: _ManagedProcess) -> None:
        process = managed.process
        if process.poll() is not None:
            return
        if managed.paused and self._use_signals:
            os.kill(process.pid, signal.SIGCONT)
        try:
            process.terminate()
        except OSError:
            return
        try:
            process.wait(timeout=self._stop_grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(
                "Agent %s ignored SIGTERM for %.1fs, killing",
                managed.agent_id,
                self._stop_grace_seconds,
            )
            _kill(process)
        if process.stdin is not None:
            process.stdin.close()
        logger.info("Agent %s stopped (%s)", managed.agent_id, _describe_exit(process.returncode))

    def _require_running(self, agent_id: str) -> _ManagedProcess:
        with self._lock:
            managed = self._processes.get(agent_id)
        if managed is None or managed.process.poll() is not None:
            raise AgentNotRunningError(message=f"Agent {agent_id} is not running")
        return managed

    def _require_transition(self, agent_id: str, target: AgentStatus) -> None:
        session = self._sessions.read(agent_id)
        if session is not None and not can_transition(session.status, target):
            raise InvalidTransitionError(
                message=(
                    f"Agent {agent_id} cannot move from {session.status.value} "
                    f"to {target.value}"
                ),
            )

    def _send_control(self, managed: _ManagedProcess, command: str) -> None:
        stdin = managed.process.stdin
        if stdin is None:
            raise AgentNotRunningError(message=f"Agent {managed.agent_id} has no control channel")
        try:
            stdin.write(f"{command}\n")
            stdin.flush()
        except OSError as error:
            raise AgentNotRunningError(
                message=f"Agent {managed.agent_id} control channel closed: {error}",
            ) from error


def _kill(process: subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        logger.error("Process %d did not exit after SIGKILL", process.pid)


def _describe_exit(returncode: int | None) -> str:
    if returncode is None:
        return "still running"
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"terminated by signal {name}"
    return f"exited with code {returncode}"
