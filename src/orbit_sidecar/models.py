from __future__ import annotations

import signal
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, StrictBool, StrictInt, StrictStr


ORBIT_ORG = "orbitci"
ORBIT_AGENT_REPO = "orbit-ebpf"
LATEST = "latest"


class Platform(str, Enum):
    LINUX = "linux"


class Arch(str, Enum):
    X64 = "x64"
    ARM64 = "arm64"


class Component(str, Enum):
    """Installable pieces of the agent and the archive prefix each ships under."""

    CLI = "orbit"
    DAEMON = "orbitd"
    BUNDLE = "orbit-agent"


class AssetLayout(str, Enum):
    """Release packaging convention, chosen at configuration time."""

    COMBINED = "combined"
    SPLIT = "split"

    @property
    def components(self) -> tuple[Component, ...]:
        if self is AssetLayout.COMBINED:
            return (Component.BUNDLE,)
        return (Component.CLI, Component.DAEMON)


class LifecycleEvent(str, Enum):
    JOB_START = "job-start"
    JOB_END = "job-end"


class ShutdownState(str, Enum):
    NOT_FOUND = "not_found"
    SIGNAL_SENT = "signal_sent"
    CONFIRMED = "confirmed"
    FORCE_KILLED = "force_killed"


@dataclass(frozen=True)
class AssetRef:
    name: str
    remote_id: int
    download_locator: str
    size: int | None = None


@dataclass(frozen=True)
class ReleaseDescriptor:
    """Exact release tag plus the assets required for one platform/arch."""

    tag: str
    platform: Platform
    arch: Arch
    layout: AssetLayout
    assets: tuple[AssetRef, ...]

    def asset_names(self) -> list[str]:
        return [asset.name for asset in self.assets]


@dataclass(frozen=True)
class InstallManifest:
    install_dir: Path
    files: frozenset[Path]
    executable: dict[Path, bool] = field(default_factory=dict)

    def binary(self, name: str) -> Path:
        return self.install_dir / name


@dataclass(frozen=True)
class DaemonHandle:
    pid: int
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ready_confirmed: bool = False


@dataclass(frozen=True)
class EventContext:
    """Correlation data for the explicit ``orbit event fire`` form."""

    job_id: str
    server_addr: str
    token: str


# ---------------------------------------------------------------------------
# Spawn outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Spawned:
    pid: int


@dataclass(frozen=True)
class ExitedEarly:
    exit_code: int | None = None
    signal_name: str | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitedEarly":
        """Translate a ``Popen.returncode`` (negative for signals) into an outcome."""
        if returncode >= 0:
            return cls(exit_code=returncode)
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = f"signal {-returncode}"
        return cls(signal_name=name)


@dataclass(frozen=True)
class TimedOut:
    pid: int | None = None


@dataclass(frozen=True)
class SpawnFailed:
    reason: str


SpawnOutcome = Spawned | ExitedEarly | TimedOut | SpawnFailed


@dataclass(frozen=True)
class ShutdownResult:
    pid: int | None
    state: ShutdownState

    @property
    def signals_sent(self) -> bool:
        return self.state is not ShutdownState.NOT_FOUND


# ---------------------------------------------------------------------------
# Artifact host payloads
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


class AssetPayload(_Payload):
    id: int
    name: str
    url: str
    size: int | None = None
    browser_download_url: str | None = None


class ReleasePayload(_Payload):
    tag_name: str
    name: str | None = None
    assets: list[AssetPayload] = []

    def find_asset(self, name: str) -> AssetPayload | None:
        for asset in self.assets:
            if asset.name == name:
                return asset
        return None


class WorkflowJobPayload(_Payload):
    id: int
    name: str
    status: str | None = None


class WorkflowJobsPage(_Payload):
    total_count: int = 0
    jobs: list[WorkflowJobPayload] = []


# ---------------------------------------------------------------------------
# Persisted state
# ---------------------------------------------------------------------------

StateValue = StrictBool | StrictInt | StrictStr


class StateDocument(BaseModel):
    """On-disk shape of the lifecycle state file."""

    model_config = ConfigDict(extra="forbid")

    schema_version: int = 1
    entries: dict[str, StateValue] = {}
