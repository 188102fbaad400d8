from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, Mapping, Sequence

from .errors import SignalError
from .models import EventContext, LifecycleEvent
from .utils import redact_argv

logger = logging.getLogger(__name__)

Runner = Callable[..., subprocess.CompletedProcess]

API_TOKEN_ENV = "ORBITCI_API_TOKEN"


def event_command(cli: str, event: LifecycleEvent, context: EventContext | None = None) -> list[str]:
    """Build the companion CLI argv for one lifecycle event.

    Without a context the CLI asks the running daemon to correlate the event
    (``orbit event job-start``). With one, the explicit ``fire`` form carries
    the job id, server address and token itself.
    """
    if context is None:
        return [cli, "event", event.value]
    return [
        cli,
        "event",
        "fire",
        f"-event={event.value}",
        f"-job-id={context.job_id}",
        f"-server-addr={context.server_addr}",
        f"-token={context.token}",
    ]


class EventSignaler:
    """Runs the companion CLI as a short-lived child and waits for its verdict."""

    def __init__(
        self,
        cli_path: Path | str,
        *,
        timeout: float = 30.0,
        api_token: str = "",
        runner: Runner = subprocess.run,
    ) -> None:
        self.cli_path = str(cli_path)
        self.timeout = timeout
        self.api_token = api_token
        self._runner = runner

    def run(self, args: Sequence[str], *, label: str) -> str:
        """Run ``cli args...``; return stdout or raise ``SignalError``."""
        argv = [self.cli_path, *args]
        logger.debug("Running: %s", " ".join(redact_argv(argv)))
        try:
            completed = self._runner(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
                env=merged_env(os.environ, self.api_token),
            )
        except subprocess.TimeoutExpired as exc:
            raise SignalError(f"{label} timed out after {self.timeout:g}s") from exc
        except OSError as exc:
            raise SignalError(f"Failed to execute orbit command: {exc}") from exc

        if completed.stderr:
            logger.debug("orbit command stderr: %s", completed.stderr.strip())
        if completed.returncode != 0:
            raise SignalError(
                f"{label} failed with exit code {completed.returncode}",
                exit_code=completed.returncode,
                stderr=completed.stderr or "",
            )
        output = (completed.stdout or "").strip()
        if output:
            logger.debug("orbit command output: %s", output)
        return output

    def signal(self, event: LifecycleEvent, context: EventContext | None = None) -> None:
        argv = event_command(self.cli_path, event, context)
        self.run(argv[1:], label=f"orbit event {event.value}")

    def server_stop(self) -> None:
        self.run(["server", "stop"], label="orbit server stop")


def server_start_command(cli: str, server_addr: str, pid_file: Path) -> list[str]:
    return [cli, "server", "start", f"-server-addr={server_addr}", f"-pid-file={pid_file}"]


def signal_best_effort(signaler: EventSignaler, event: LifecycleEvent, context: EventContext | None = None) -> bool:
    """Fire ``event`` and downgrade any failure to a warning."""
    try:
        signaler.signal(event, context)
    except SignalError as exc:
        logger.warning("Failed to send %s event: %s", event.value, exc)
        return False
    return True


def merged_env(base: Mapping[str, str], api_token: str) -> dict[str, str]:
    env = dict(base)
    if api_token:
        env[API_TOKEN_ENV] = api_token
    return env
