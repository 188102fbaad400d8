from __future__ import annotations

import logging
import os
import signal
import time
from typing import Protocol

import psutil

from .errors import ShutdownError
from .models import ShutdownResult, ShutdownState
from .state_store import LifecycleStateStore, PidFile
from .utils import Clock, Deadline, Sleeper

logger = logging.getLogger(__name__)


def process_visible(pid: int) -> bool:
    """Return True if the OS reports ``pid`` as a live, non-zombie process."""
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


class ProcessOps(Protocol):
    """Signal delivery and liveness checks, swappable for tests."""

    def send(self, pid: int, sig: int, *, group: bool) -> None: ...

    def is_alive(self, pid: int) -> bool: ...


class PosixProcessOps:
    def send(self, pid: int, sig: int, *, group: bool) -> None:
        if group:
            os.killpg(pid, sig)
        else:
            os.kill(pid, sig)

    def is_alive(self, pid: int) -> bool:
        return process_visible(pid)


class ShutdownCoordinator:
    """Graceful-then-forced termination of a recorded process.

    The sequence is SIGTERM, liveness polling every ``poll_interval`` seconds
    under a single ``timeout``, then SIGKILL if the process outlives it. A
    process that is already gone counts as stopped at every step, so running
    the coordinator twice is harmless.
    """

    def __init__(
        self,
        *,
        ops: ProcessOps | None = None,
        timeout: float = 5.0,
        poll_interval: float = 0.5,
        clock: Clock = time.monotonic,
        sleep: Sleeper = time.sleep,
    ) -> None:
        self.ops = ops if ops is not None else PosixProcessOps()
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def shutdown(self, pid: int | None, *, group: bool = True) -> ShutdownResult:
        if pid is None:
            logger.info("No PID on record, nothing to stop")
            return ShutdownResult(pid=None, state=ShutdownState.NOT_FOUND)

        try:
            self.ops.send(pid, signal.SIGTERM, group=group)
        except ProcessLookupError:
            logger.info("Process %d already terminated", pid)
            return ShutdownResult(pid=pid, state=ShutdownState.CONFIRMED)
        except OSError as exc:
            raise ShutdownError(pid, f"SIGTERM rejected: {exc}") from exc
        logger.info("Sent SIGTERM to process %d", pid)

        deadline = Deadline(self.timeout, clock=self._clock)
        while not deadline.expired():
            if not self.ops.is_alive(pid):
                logger.debug("Process %d exited after SIGTERM", pid)
                return ShutdownResult(pid=pid, state=ShutdownState.CONFIRMED)
            deadline.nap(self.poll_interval, self._sleep)
        if not self.ops.is_alive(pid):
            return ShutdownResult(pid=pid, state=ShutdownState.CONFIRMED)

        try:
            self.ops.send(pid, signal.SIGKILL, group=group)
        except ProcessLookupError:
            logger.debug("Process %d already terminated", pid)
        except OSError as exc:
            raise ShutdownError(pid, f"SIGKILL rejected: {exc}") from exc
        else:
            logger.info("Process %d force killed with SIGKILL", pid)
        return ShutdownResult(pid=pid, state=ShutdownState.FORCE_KILLED)

    def stop(self, store: LifecycleStateStore, key: str, *, group: bool = True) -> ShutdownResult:
        """Stop the process recorded under ``key`` and drop the record either way."""
        try:
            return self.shutdown(store.load_int(key), group=group)
        finally:
            store.delete(key)

    def stop_pid_file(self, pid_file: PidFile, *, group: bool = False) -> ShutdownResult:
        """Stop the process named by a PID file and remove the file either way."""
        try:
            pid = pid_file.read()
            if pid is not None:
                logger.debug("Found PID %d in %s", pid, pid_file.path)
            return self.shutdown(pid, group=group)
        finally:
            if pid_file.remove():
                logger.debug("Removed PID file %s", pid_file.path)
