from importlib.metadata import PackageNotFoundError, version

from .errors import (
    AssetNotFound,
    DaemonExitedEarly,
    ExtractionFailed,
    InstallError,
    LaunchError,
    LaunchTimeout,
    ReleaseNotFound,
    ResolutionError,
    ShutdownError,
    SidecarError,
    SignalError,
    TransferFailed,
    UnsupportedPlatform,
)
from .installer import ArtifactInstaller
from .launcher import ProcessLauncher
from .models import (
    Arch,
    AssetLayout,
    AssetRef,
    DaemonHandle,
    EventContext,
    InstallManifest,
    LifecycleEvent,
    Platform,
    ReleaseDescriptor,
    ShutdownResult,
    ShutdownState,
)
from .resolver import ArtifactResolver
from .settings import SidecarSettings
from .shutdown import ShutdownCoordinator
from .signaler import EventSignaler
from .state_store import LifecycleStateStore, PidFile
from .workflow import run_cleanup, run_setup, run_teardown


def get_version() -> str:
    try:
        return version("orbit-sidecar")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "Arch",
    "ArtifactInstaller",
    "ArtifactResolver",
    "AssetLayout",
    "AssetNotFound",
    "AssetRef",
    "DaemonExitedEarly",
    "DaemonHandle",
    "EventContext",
    "EventSignaler",
    "ExtractionFailed",
    "InstallError",
    "InstallManifest",
    "LaunchError",
    "LaunchTimeout",
    "LifecycleEvent",
    "LifecycleStateStore",
    "PidFile",
    "Platform",
    "ProcessLauncher",
    "ReleaseDescriptor",
    "ReleaseNotFound",
    "ResolutionError",
    "ShutdownCoordinator",
    "ShutdownError",
    "ShutdownResult",
    "ShutdownState",
    "SidecarError",
    "SidecarSettings",
    "SignalError",
    "TransferFailed",
    "UnsupportedPlatform",
    "get_version",
    "run_cleanup",
    "run_setup",
    "run_teardown",
]
