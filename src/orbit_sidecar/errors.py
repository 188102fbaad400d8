"""Error taxonomy for the sidecar supervisor.

Resolution, install and launch errors abort the setup phase. Signal errors
are always downgraded to warnings by callers. Shutdown errors are reported
but never prevent state cleanup.
"""

from __future__ import annotations

from pathlib import Path


class SidecarError(RuntimeError):
    """Root of every error the supervisor raises on purpose.

    ``stage`` is filled in by ``workflow.stage`` when the error crosses a
    phase boundary, so top-level reporting can name where it happened.
    """

    stage: str | None = None


class ConfigurationError(SidecarError):
    """A required option is missing or an option value is invalid."""


class StateStoreError(SidecarError):
    """The lifecycle state file exists but cannot be read or written."""


class ArtifactHostError(SidecarError):
    """The artifact host API answered with an error or could not be reached."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class UnexpectedError(SidecarError):
    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"unexpected {type(cause).__name__} during {stage}: {cause}")
        self.stage = stage
        self.cause = cause


# -- Resolution -------------------------------------------------------------


class ResolutionError(SidecarError):
    pass


class UnsupportedPlatform(ResolutionError):
    def __init__(self, kind: str, value: str, supported: list[str]) -> None:
        super().__init__(
            f"{kind} {value} is not supported. Currently, only these are supported: {', '.join(supported)}"
        )
        self.kind = kind
        self.value = value


class ReleaseNotFound(ResolutionError):
    def __init__(self, tag: str) -> None:
        super().__init__(f"Release not found: {tag}")
        self.tag = tag


class AssetNotFound(ResolutionError):
    def __init__(self, asset_name: str, tag: str) -> None:
        super().__init__(f"Required asset not found: {asset_name} (release {tag})")
        self.asset_name = asset_name
        self.tag = tag


# -- Install ----------------------------------------------------------------


class InstallError(SidecarError):
    retryable = False


class TransferFailed(InstallError):
    """Network or transfer failure. The caller may retry the whole install."""

    retryable = True

    def __init__(self, asset_name: str, reason: str) -> None:
        super().__init__(f"Failed to download {asset_name}: {reason}")
        self.asset_name = asset_name


class ExtractionFailed(InstallError):
    def __init__(self, asset_name: str, reason: str) -> None:
        super().__init__(f"Failed to extract {asset_name}: {reason}")
        self.asset_name = asset_name


# -- Launch -----------------------------------------------------------------


class LaunchError(SidecarError):
    pass


class SpawnFailed(LaunchError):
    def __init__(self, program: str, reason: str) -> None:
        super().__init__(f"Failed to start {program}: {reason}")
        self.program = program


class DaemonExitedEarly(LaunchError):
    def __init__(
        self,
        program: str,
        *,
        exit_code: int | None = None,
        signal_name: str | None = None,
        log_file: Path | None = None,
    ) -> None:
        if exit_code is not None:
            message = f"{program} exited with code {exit_code}"
        else:
            message = f"{program} was terminated by signal {signal_name}"
        if log_file is not None:
            message += f". Check {log_file} for errors"
        super().__init__(message)
        self.program = program
        self.exit_code = exit_code
        self.signal_name = signal_name
        self.log_file = log_file


class LaunchTimeout(LaunchError):
    def __init__(self, program: str, timeout: float, *, pid: int | None = None) -> None:
        super().__init__(f"Timeout waiting for {program} to start ({timeout:g}s)")
        self.program = program
        self.timeout = timeout
        self.pid = pid


class DaemonAlreadyRunning(LaunchError):
    def __init__(self, pid: int) -> None:
        super().__init__(f"A daemon recorded for this run is still alive (PID {pid})")
        self.pid = pid


# -- Signal / shutdown -------------------------------------------------------


class SignalError(SidecarError):
    def __init__(self, message: str, *, exit_code: int | None = None, stderr: str = "") -> None:
        detail = f"{message}: {stderr.strip()}" if stderr.strip() else message
        super().__init__(detail)
        self.exit_code = exit_code
        self.stderr = stderr


class ShutdownError(SidecarError):
    def __init__(self, pid: int, reason: str) -> None:
        super().__init__(f"Failed to stop process {pid}: {reason}")
        self.pid = pid
