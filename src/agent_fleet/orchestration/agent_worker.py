"""Minimal agent process: heartbeats its session and obeys the control channel.

The controller writes ``pause``/``resume``/``stop`` lines to the worker's
stdin. End of input means the controller went away, so the worker stops.
"""

from __future__ import annotations

import logging
import signal
import sys
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TextIO

import rich_click as click

from agent_fleet.config import Settings
from agent_fleet.errors import NotFoundError, StoreUnavailableError
from agent_fleet.orchestration.sessions import SessionRegistry
from agent_fleet.storage.retry import RetryPolicy
from agent_fleet.storage.state_store import StateStore

logger = logging.getLogger(__name__)


class AgentWorker:
    def __init__(
        self,
        *,
        agent_id: str,
        sessions: SessionRegistry,
        heartbeat_interval_seconds: float = 15.0,
        on_tick: Callable[[], None] | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.sessions = sessions
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.on_tick = on_tick
        self._stop_requested = False
        self._paused = threading.Event()

    @property
    def paused(self) -> bool:
        return self._paused.is_set()

    def run(self, control: TextIO | None = None) -> int:
        """Heartbeat until asked to stop. Returns the process exit code."""

        if control is not None:
            threading.Thread(
                target=self._read_control,
                args=(control,),
                name=f"agent-control-{self.agent_id}",
                daemon=True,
            ).start()

        logger.info("Agent worker %s started", self.agent_id)
        with self._signal_handlers():
            while not self._stop_requested:
                try:
                    self.sessions.heartbeat(self.agent_id)
                except NotFoundError:
                    logger.error("Session for agent %s is gone, exiting", self.agent_id)
                    return 1
                except StoreUnavailableError as error:
                    logger.warning("Heartbeat for %s skipped: %s", self.agent_id, error)
                # Parked workers keep heartbeating so a pause is not mistaken for a hang.
                if not self.paused and self.on_tick is not None:
                    self.on_tick()
                self._sleep_with_stop(self.heartbeat_interval_seconds)
        logger.info("Agent worker %s stopped", self.agent_id)
        return 0

    def handle_command(self, command: str) -> None:
        command = command.strip().lower()
        if not command:
            return
        if command == "pause":
            self._paused.set()
            logger.info("Agent worker %s parked", self.agent_id)
        elif command == "resume":
            self._paused.clear()
            logger.info("Agent worker %s resumed", self.agent_id)
        elif command == "stop":
            self.request_stop()
        else:
            logger.warning("Agent worker %s ignoring unknown command %r", self.agent_id, command)

    def request_stop(self) -> None:
        self._stop_requested = True

    def _read_control(self, control: TextIO) -> None:
        for line in control:
            self.handle_command(line)
            if self._stop_requested:
                return
        logger.info("Control channel closed for %s", self.agent_id)
        self.request_stop()

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Agent worker %s received %s", self.agent_id, name)
            self.request_stop()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            logger.debug("Agent worker %s runs without signal handlers", self.agent_id)

        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


@click.command()
@click.option("--agent-id", required=True, help="Session to heartbeat.")
@click.option(
    "--db-path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="State database. Defaults to AGENT_FLEET_DB_PATH.",
)
@click.option("--heartbeat-interval", type=float, default=15.0, show_default=True)
def main(agent_id: str, db_path: Path | None, heartbeat_interval: float) -> None:
    """Run one agent worker until stopped."""

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    settings = Settings.from_env(db_path=db_path)
    store = StateStore(
        settings.db_path,
        busy_timeout_ms=settings.store.busy_timeout_ms,
        retry_policy=RetryPolicy(
            attempts=settings.store.retry_attempts,
            base_delay_seconds=settings.store.retry_base_delay_seconds,
        ),
    )
    try:
        sessions = SessionRegistry(store)
        worker = AgentWorker(
            agent_id=agent_id,
            sessions=sessions,
            heartbeat_interval_seconds=heartbeat_interval,
        )
        exit_code = worker.run(control=sys.stdin)
    finally:
        store.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
