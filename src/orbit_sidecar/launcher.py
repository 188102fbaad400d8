"""Detached daemon launch with a bounded spawn/exit race.

A launch resolves to exactly one ``SpawnOutcome``:

* ``Spawned`` when the OS shows the child alive before the deadline,
* ``ExitedEarly`` when the child is observed to exit first,
* ``TimedOut`` when the deadline passes without either,
* ``SpawnFailed`` when the process could not be created at all.

``ProcessLauncher.launch`` maps the non-success outcomes onto the
``LaunchError`` family and, on success, waits a fixed readiness delay before
handing back a ``DaemonHandle``.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Callable, Mapping, Protocol, Sequence

from .errors import DaemonExitedEarly, LaunchTimeout, ShutdownError, SpawnFailed as SpawnFailedError
from .models import DaemonHandle, ExitedEarly, ShutdownResult, SpawnFailed, SpawnOutcome, Spawned, TimedOut
from .shutdown import ShutdownCoordinator, process_visible
from .utils import Clock, Deadline, Sleeper, redact_argv

logger = logging.getLogger(__name__)

PRIVILEGE_WRAPPER = ("sudo", "-E")
_SPAWN_POLL_INTERVAL = 0.05
_REAP_TIMEOUT = 2.0
_REAP_POLL_INTERVAL = 0.1


class ChildProcess(Protocol):
    pid: int

    def poll(self) -> int | None: ...


Spawner = Callable[[Sequence[str], Mapping[str, str] | None], ChildProcess]
Probe = Callable[[int], bool]
Reaper = Callable[[int], ShutdownResult]


def spawn_detached(argv: Sequence[str], env: Mapping[str, str] | None) -> subprocess.Popen:
    """Start ``argv`` in its own session with stdio detached.

    The child leads a new process group, so it neither receives the
    supervisor's terminal signals nor dies when the supervisor exits.
    """
    return subprocess.Popen(
        list(argv),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        close_fds=True,
        env=dict(env) if env is not None else None,
    )


def needs_privilege_wrapper() -> bool:
    geteuid = getattr(os, "geteuid", None)
    return geteuid is not None and geteuid() != 0


class ProcessLauncher:
    def __init__(
        self,
        *,
        timeout: float = 5.0,
        ready_delay: float = 5.0,
        privileged: bool = True,
        env: Mapping[str, str] | None = None,
        spawner: Spawner = spawn_detached,
        probe: Probe = process_visible,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
        reaper: Reaper | None = None,
    ) -> None:
        self.timeout = timeout
        self.ready_delay = ready_delay
        self.privileged = privileged
        self.env = env
        self._spawner = spawner
        self._probe = probe
        self._clock = clock
        self._sleep = sleep
        self._reaper = reaper if reaper is not None else self._stop_group

    def command(self, argv: Sequence[str]) -> list[str]:
        if self.privileged and needs_privilege_wrapper():
            return [*PRIVILEGE_WRAPPER, *argv]
        return list(argv)

    def spawn(self, argv: Sequence[str]) -> SpawnOutcome:
        """Start ``argv`` and race spawn confirmation against exit and the deadline."""
        started = self._start(argv)
        if isinstance(started, SpawnFailed):
            return started
        return self._race(started)

    def launch(self, argv: Sequence[str], *, log_file: Path | None = None) -> DaemonHandle:
        """Launch a daemon and wait until it is assumed ready.

        Raises:
            SpawnFailed: The process could not be created.
            DaemonExitedEarly: The process exited before or during readiness.
            LaunchTimeout: No spawn confirmation within ``timeout`` seconds. The
                unconfirmed child is stopped before this is raised.
        """
        program = Path(argv[0]).name
        started = self._start(argv)
        if isinstance(started, SpawnFailed):
            raise SpawnFailedError(program, started.reason)

        outcome = self._race(started)
        if isinstance(outcome, ExitedEarly):
            raise DaemonExitedEarly(
                program,
                exit_code=outcome.exit_code,
                signal_name=outcome.signal_name,
                log_file=log_file,
            )
        if isinstance(outcome, TimedOut):
            logger.warning("%s (PID %s) did not confirm spawn within %gs", program, outcome.pid, self.timeout)
            self._abandon(started)
            raise LaunchTimeout(program, self.timeout, pid=started.pid)

        handle = DaemonHandle(pid=outcome.pid)
        logger.debug("%s spawned (PID %d)", program, handle.pid)

        if self.ready_delay > 0:
            logger.debug("Waiting %g seconds for %s to be ready...", self.ready_delay, program)
            self._sleep(self.ready_delay)
            logger.debug("Ready wait completed")

        returncode = started.poll()
        if returncode is not None:
            exited = ExitedEarly.from_returncode(returncode)
            raise DaemonExitedEarly(
                program,
                exit_code=exited.exit_code,
                signal_name=exited.signal_name,
                log_file=log_file,
            )
        return dataclasses.replace(handle, ready_confirmed=True)

    def _start(self, argv: Sequence[str]) -> ChildProcess | SpawnFailed:
        command = self.command(argv)
        logger.debug("Starting: %s", " ".join(redact_argv(command)))
        try:
            return self._spawner(command, self.env)
        except OSError as exc:
            logger.debug("%s error: %s", command[0], exc)
            return SpawnFailed(reason=str(exc))

    def _race(self, process: ChildProcess) -> SpawnOutcome:
        deadline = Deadline(self.timeout, clock=self._clock)
        while True:
            returncode = process.poll()
            if returncode is not None:
                logger.debug("PID %d exited with return code %d", process.pid, returncode)
                return ExitedEarly.from_returncode(returncode)
            if self._probe(process.pid):
                return Spawned(pid=process.pid)
            if deadline.expired():
                return TimedOut(pid=process.pid)
            deadline.nap(_SPAWN_POLL_INTERVAL, self._sleep)

    def _stop_group(self, pid: int) -> ShutdownResult:
        coordinator = ShutdownCoordinator(
            timeout=_REAP_TIMEOUT,
            poll_interval=_REAP_POLL_INTERVAL,
            clock=self._clock,
            sleep=self._sleep,
        )
        return coordinator.shutdown(pid, group=True)

    def _abandon(self, process: ChildProcess) -> None:
        """Stop a child that never confirmed its spawn; nothing else knows its PID."""
        try:
            result = self._reaper(process.pid)
            logger.debug("Stopped unconfirmed PID %d (%s)", process.pid, result.state.value)
        except ShutdownError as exc:
            logger.warning("Unable to stop unconfirmed PID %d: %s", process.pid, exc)
        process.poll()
