from __future__ import annotations

import fcntl
import logging
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import rfc8785
from pydantic import ValidationError

from .errors import StateStoreError
from .models import StateDocument

logger = logging.getLogger(__name__)

# Documented keys of the lifecycle state file.
DAEMON_PID = "daemon_pid"
DAEMON_STARTED_AT = "daemon_started_at"
DAEMON_READY = "daemon_ready"
SERVER_PID = "server_pid"
INSTALL_DIR = "install_dir"
VERSION = "version"

STATE_FILE_NAME = "state.json"
DAEMON_PID_FILE = "orbitd.pid"
SERVER_PID_FILE = "orbit-server.pid"

_LOCK_SUFFIX = ".lock"

StateScalar = bool | int | str


# ---------------------------------------------------------------------------
# File helpers
# ---------------------------------------------------------------------------


@contextmanager
def _locked_file(path: Path) -> Iterator[None]:
    """Acquire an exclusive file lock for the duration of the context.

    Uses a separate .lock sidecar file so the actual data file can be
    atomically replaced via ``os.replace`` without disturbing the lock
    handle.
    """
    lock_path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* via temp file and ``os.replace``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _canonical(document: StateDocument) -> str:
    # RFC 8785 output: saving unchanged entries rewrites identical bytes.
    return rfc8785.dumps(document.model_dump(mode="json")).decode("utf-8")


# ---------------------------------------------------------------------------
# LifecycleStateStore
# ---------------------------------------------------------------------------


class LifecycleStateStore:
    """Durable key-value store shared by the setup and teardown invocations.

    ``load`` of an absent key returns ``None``; a state file that exists but
    cannot be parsed raises ``StateStoreError`` so that "never started" and
    "cannot tell" stay distinguishable.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def path(self) -> Path:
        return self.root / STATE_FILE_NAME

    def save(self, key: str, value: StateScalar) -> None:
        with _locked_file(self.path):
            document = self._read()
            document.entries[key] = value
            self._write(document)
        logger.debug("Saved state %s", key)

    def load(self, key: str) -> StateScalar | None:
        if not self.path.is_file():
            return None
        with _locked_file(self.path):
            return self._read().entries.get(key)

    def load_int(self, key: str) -> int | None:
        value = self.load(key)
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, str)):
            raise StateStoreError(f"state entry {key} is not an integer: {value!r}")
        try:
            return int(value)
        except ValueError as exc:
            raise StateStoreError(f"state entry {key} is not an integer: {value!r}") from exc

    def delete(self, key: str) -> None:
        if not self.path.is_file():
            return
        with _locked_file(self.path):
            document = self._read()
            if document.entries.pop(key, None) is not None:
                self._write(document)
                logger.debug("Deleted state %s", key)

    def entries(self) -> dict[str, StateScalar]:
        if not self.path.is_file():
            return {}
        with _locked_file(self.path):
            return dict(self._read().entries)

    def clear(self) -> None:
        """Remove the state file and its lock."""
        for path in (self.path, self.path.with_suffix(self.path.suffix + _LOCK_SUFFIX)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise StateStoreError(f"unable to remove {path}: {exc}") from exc

    def _read(self) -> StateDocument:
        if not self.path.is_file():
            return StateDocument()
        try:
            text = self.path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise StateStoreError(f"state file {self.path} is unreadable: {exc}") from exc
        if not text.strip():
            return StateDocument()
        try:
            return StateDocument.model_validate_json(text)
        except ValidationError as exc:
            raise StateStoreError(f"state file {self.path} failed validation: {exc}") from exc

    def _write(self, document: StateDocument) -> None:
        try:
            _atomic_write_text(self.path, _canonical(document))
        except OSError as exc:
            raise StateStoreError(f"unable to write {self.path}: {exc}") from exc


# ---------------------------------------------------------------------------
# PID files
# ---------------------------------------------------------------------------


class PidFile:
    """Plain-text PID file written by a process about itself."""

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def in_temp_dir(cls, name: str) -> "PidFile":
        return cls(Path(tempfile.gettempdir()) / name)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> int | None:
        if not self.path.is_file():
            return None
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError as exc:
            raise StateStoreError(f"PID file {self.path} does not contain a PID: {raw!r}") from exc

    def write(self, pid: int) -> None:
        _atomic_write_text(self.path, f"{pid}\n")

    def remove(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True
