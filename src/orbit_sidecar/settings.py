from __future__ import annotations

import os
import platform as host_platform
import tempfile
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .models import LATEST, AssetLayout


EVENT_MODES = frozenset({"daemon", "direct"})
DEFAULT_LOG_FILE = "/var/log/orbitd.log"
DEFAULT_WORKER_LOG_GLOB = "/home/runner/runners/*/_diag/Worker_*.log"

_MACHINE_ALIASES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


@dataclass(frozen=True)
class SidecarSettings:
    """Supervisor settings loaded from environment with fail-fast validation.

    Every option is read from ``ORBIT_<NAME>`` first and the pipeline input
    ``INPUT_<NAME>`` second, so the same package runs both as a pipeline step
    and from a shell.
    """

    version: str = LATEST
    github_token: str = ""
    api_token: str = ""
    server_addr: str = ""
    log_file: str = DEFAULT_LOG_FILE
    daemon_log_level: int = 1
    daemon_debug: bool = True
    asset_layout: str = AssetLayout.SPLIT.value
    install_dir: str = "bin"
    state_dir: str = ""
    launch_timeout: float = 5.0
    ready_delay: float = 5.0
    shutdown_timeout: float = 5.0
    shutdown_poll_interval: float = 0.5
    signal_timeout: float = 30.0
    download_attempts: int = 3
    use_sudo: bool = True
    start_event_server: bool = False
    event_mode: str = "daemon"
    ci_provider: str = "github"
    api_url: str = "https://api.github.com"
    worker_log_glob: str = DEFAULT_WORKER_LOG_GLOB
    platform: str = ""
    arch: str = ""

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "SidecarSettings":
        dotenv_path = env_file if env_file is not None else Path.cwd() / ".env"
        if dotenv_path.is_file():
            load_dotenv(dotenv_path, override=False)
        return cls(
            version=_get_option("VERSION", LATEST),
            github_token=_get_option("GITHUB_TOKEN", ""),
            api_token=_get_option("API_TOKEN", ""),
            server_addr=_get_option("SERVER_ADDR", ""),
            log_file=_get_option("LOG_FILE", DEFAULT_LOG_FILE),
            daemon_log_level=_get_env_int("DAEMON_LOG_LEVEL", default=1, minimum=0, maximum=10),
            daemon_debug=_get_env_bool("DAEMON_DEBUG", default=True),
            asset_layout=_get_option("ASSET_LAYOUT", AssetLayout.SPLIT.value),
            install_dir=_get_option("INSTALL_DIR", "bin"),
            state_dir=_get_option("STATE_DIR", ""),
            launch_timeout=_get_env_float("LAUNCH_TIMEOUT", default=5.0, minimum=1.0, maximum=120.0),
            ready_delay=_get_env_float("READY_DELAY", default=5.0, minimum=0.0, maximum=120.0),
            shutdown_timeout=_get_env_float("SHUTDOWN_TIMEOUT", default=5.0, minimum=0.5, maximum=300.0),
            shutdown_poll_interval=_get_env_float("SHUTDOWN_POLL_INTERVAL", default=0.5, minimum=0.05, maximum=10.0),
            signal_timeout=_get_env_float("SIGNAL_TIMEOUT", default=30.0, minimum=1.0, maximum=600.0),
            download_attempts=_get_env_int("DOWNLOAD_ATTEMPTS", default=3, minimum=1, maximum=10),
            use_sudo=_get_env_bool("USE_SUDO", default=True),
            start_event_server=_get_env_bool("START_EVENT_SERVER", default=False),
            event_mode=_get_option("EVENT_MODE", "daemon"),
            ci_provider=_get_option("CI_PROVIDER", "github"),
            api_url=_get_option("API_URL", "https://api.github.com"),
            worker_log_glob=_get_option("WORKER_LOG_GLOB", DEFAULT_WORKER_LOG_GLOB),
            platform=_get_option("PLATFORM", ""),
            arch=_get_option("ARCH", ""),
        ).normalized()

    def normalized(self) -> "SidecarSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        version = self.version.strip() or LATEST

        layout = self.asset_layout.strip().lower()
        if layout not in {item.value for item in AssetLayout}:
            raise ValueError(
                f"ORBIT_ASSET_LAYOUT must be one of: {', '.join(item.value for item in AssetLayout)}, got: {self.asset_layout!r}"
            )
        event_mode = self.event_mode.strip().lower()
        if event_mode not in EVENT_MODES:
            raise ValueError(f"ORBIT_EVENT_MODE must be one of: {', '.join(sorted(EVENT_MODES))}")

        if not self.log_file.strip():
            raise ValueError("ORBIT_LOG_FILE must be non-empty")
        if not self.install_dir.strip():
            raise ValueError("ORBIT_INSTALL_DIR must be non-empty")
        if not self.api_url.strip():
            raise ValueError("ORBIT_API_URL must be non-empty")
        if self.shutdown_poll_interval > self.shutdown_timeout:
            raise ValueError(
                "ORBIT_SHUTDOWN_POLL_INTERVAL must not exceed ORBIT_SHUTDOWN_TIMEOUT, "
                f"got: {self.shutdown_poll_interval} > {self.shutdown_timeout}"
            )
        return SidecarSettings(
            version=version,
            github_token=self.github_token.strip(),
            api_token=self.api_token.strip(),
            server_addr=self.server_addr.strip(),
            log_file=self.log_file.strip(),
            daemon_log_level=self.daemon_log_level,
            daemon_debug=self.daemon_debug,
            asset_layout=layout,
            install_dir=self.install_dir.strip(),
            state_dir=self.state_dir.strip(),
            launch_timeout=self.launch_timeout,
            ready_delay=self.ready_delay,
            shutdown_timeout=self.shutdown_timeout,
            shutdown_poll_interval=self.shutdown_poll_interval,
            signal_timeout=self.signal_timeout,
            download_attempts=self.download_attempts,
            use_sudo=self.use_sudo,
            start_event_server=self.start_event_server,
            event_mode=event_mode,
            ci_provider=self.ci_provider.strip() or "github",
            api_url=self.api_url.strip().rstrip("/"),
            worker_log_glob=self.worker_log_glob.strip(),
            platform=self.platform.strip().lower(),
            arch=self.arch.strip().lower(),
        )

    def require_setup_inputs(self) -> None:
        """Raise ValueError when an option the setup phase cannot run without is missing."""
        missing = [
            name
            for name, value in (
                ("github_token", self.github_token),
                ("api_token", self.api_token),
                ("server_addr", self.server_addr),
            )
            if not value
        ]
        if missing:
            raise ValueError(f"Input required and not supplied: {', '.join(missing)}")

    @property
    def layout(self) -> AssetLayout:
        return AssetLayout(self.asset_layout)

    @property
    def log_path(self) -> Path:
        return Path(self.log_file)

    def install_path(self, workspace_root: Path | None = None) -> Path:
        path = Path(self.install_dir)
        if path.is_absolute():
            return path
        return (workspace_root if workspace_root is not None else Path.cwd()) / path

    def state_path(self) -> Path:
        """Directory holding the lifecycle state file.

        Defaults to a subdirectory of the runner's per-job temp dir so that
        setup and teardown of one job share it and other jobs do not.
        """
        if self.state_dir:
            return Path(self.state_dir)
        base = os.getenv("RUNNER_TEMP") or tempfile.gettempdir()
        return Path(base) / "orbit-sidecar"

    def host_platform(self) -> str:
        return self.platform or host_platform.system().lower()

    def host_arch(self) -> str:
        if self.arch:
            return self.arch
        machine = host_platform.machine().lower()
        return _MACHINE_ALIASES.get(machine, machine)


def _get_option(name: str, default: str) -> str:
    for key in (f"ORBIT_{name}", f"INPUT_{name}"):
        raw = os.getenv(key)
        if raw is not None and raw.strip():
            return raw
    return default


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer option with bounds checking.

    Args:
        name: Option name without prefix.
        default: Value to return if the option is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = _get_option(name, "")
    if not raw:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"ORBIT_{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"ORBIT_{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"ORBIT_{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = _get_option(name, "")
    if not raw:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"ORBIT_{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"ORBIT_{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = _get_option(name, "")
    if not raw:
        return default
    lowered = raw.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"ORBIT_{name} must be a boolean, got: {raw!r}")
