"""Pipeline-host integration: step outputs, PATH additions, log groups, logging.

Values are written to the files GitHub Actions names in ``GITHUB_OUTPUT`` and
``GITHUB_PATH``. Outside a runner these variables are unset and the values
are only logged.
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_ANNOTATIONS = {
    logging.DEBUG: "::debug::",
    logging.WARNING: "::warning::",
    logging.ERROR: "::error::",
    logging.CRITICAL: "::error::",
}


def running_in_actions() -> bool:
    return os.getenv("GITHUB_ACTIONS", "").lower() == "true"


def runner_debug_enabled() -> bool:
    return os.getenv("RUNNER_DEBUG", "") == "1"


class ActionsFormatter(logging.Formatter):
    """Render records as workflow commands so warnings show up as annotations."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        prefix = _ANNOTATIONS.get(record.levelno, "")
        if not prefix:
            return message
        # Workflow commands end at the first newline.
        return prefix + message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


def configure_logging(level: str = "INFO") -> None:
    if runner_debug_enabled():
        level = "DEBUG"
    if running_in_actions():
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ActionsFormatter("%(message)s"))
        logging.basicConfig(level=getattr(logging, level), handlers=[handler], force=True)
        return
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, force=True)


def _append(env_name: str, content: str) -> bool:
    target = os.getenv(env_name)
    if not target:
        return False
    with Path(target).open("a", encoding="utf-8") as handle:
        handle.write(content)
    return True


def set_output(name: str, value: str) -> None:
    delimiter = f"ghadelimiter_{uuid.uuid4()}"
    if not _append("GITHUB_OUTPUT", f"{name}<<{delimiter}\n{value}\n{delimiter}\n"):
        logger.info("output %s=%s", name, value)


def add_path(directory: Path) -> None:
    os.environ["PATH"] = f"{directory}{os.pathsep}{os.environ.get('PATH', '')}"
    if not _append("GITHUB_PATH", f"{directory}\n"):
        logger.debug("GITHUB_PATH unset, %s added to this process only", directory)


@contextmanager
def log_group(title: str) -> Iterator[None]:
    if running_in_actions():
        print(f"::group::{title}", flush=True)
    try:
        yield
    finally:
        if running_in_actions():
            print("::endgroup::", flush=True)


def print_log_file(log_file: Path, title: str = "Orbit CI agent logs") -> None:
    """Echo a log file inside a collapsible group. Unreadable files only warn."""
    if not log_file.is_file():
        logger.debug("Log file not found: %s", log_file)
        return
    try:
        contents = log_file.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        logger.warning("Failed to read log file: %s", exc)
        return
    with log_group(title):
        for line in contents.splitlines():
            if line.strip():
                print(line, flush=True)
