"""Setup, teardown and cleanup phases of one pipeline run.

Setup and teardown run as separate invocations; everything teardown needs to
undo setup travels through the ``LifecycleStateStore``.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator

from .errors import (
    ConfigurationError,
    DaemonAlreadyRunning,
    SidecarError,
    StateStoreError,
    TransferFailed,
    UnexpectedError,
)
from .github import ArtifactHost, GitHubClient, ReleaseIndex
from .installer import ArtifactInstaller
from .job_id import JobIdProvider, WorkerLogJobIdProvider, derive_job_id
from .launcher import ProcessLauncher
from .models import Component, DaemonHandle, EventContext, InstallManifest, LifecycleEvent, ReleaseDescriptor, ShutdownResult
from .pipeline import add_path, print_log_file, runner_debug_enabled, set_output
from .resolver import ArtifactResolver
from .settings import SidecarSettings
from .shutdown import PosixProcessOps, ShutdownCoordinator
from .signaler import EventSignaler, merged_env, server_start_command, signal_best_effort
from .state_store import (
    DAEMON_PID,
    DAEMON_PID_FILE,
    DAEMON_READY,
    DAEMON_STARTED_AT,
    INSTALL_DIR,
    SERVER_PID,
    SERVER_PID_FILE,
    VERSION,
    LifecycleStateStore,
    PidFile,
)

logger = logging.getLogger(__name__)


@contextmanager
def stage(name: str) -> Iterator[None]:
    """Tag errors escaping the block with the stage they happened in."""
    try:
        yield
    except SidecarError as exc:
        if exc.stage is None:
            exc.stage = name
        raise
    except Exception as exc:  # noqa: BLE001
        raise UnexpectedError(name, exc) from exc


@dataclass(frozen=True)
class SetupResult:
    version: str
    install_dir: Path
    daemon: DaemonHandle
    server_pid: int | None = None
    job_start_sent: bool = False


@dataclass
class TeardownResult:
    job_end_sent: bool = False
    daemon: ShutdownResult | None = None
    server: ShutdownResult | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.warnings


def build_daemon_args(settings: SidecarSettings, install_dir: Path) -> list[str]:
    args = [
        str(install_dir / Component.DAEMON.value),
        f"-client-bin-path={install_dir / Component.CLI.value}",
        f"-server-addr={settings.server_addr}",
        f"-api-token={settings.api_token}",
        f"-log-level={settings.daemon_log_level}",
        f"-log-file={settings.log_file}",
        f"-ci-provider={settings.ci_provider}",
    ]
    if settings.daemon_debug:
        args.append("-debug")
    return args


def install_with_retry(
    installer: ArtifactInstaller,
    descriptor: ReleaseDescriptor,
    install_dir: Path,
    *,
    attempts: int,
) -> InstallManifest:
    """Run the installer, repeating it only for transfer failures."""
    for attempt in range(1, attempts + 1):
        try:
            return installer.install(descriptor, install_dir)
        except TransferFailed as exc:
            if attempt >= attempts:
                raise
            logger.warning("Download attempt %d/%d failed: %s", attempt, attempts, exc)
    raise AssertionError("unreachable")


def event_context(settings: SidecarSettings, job_ids: JobIdProvider | None) -> EventContext | None:
    if settings.event_mode != "direct":
        return None
    if job_ids is None:
        job_ids = WorkerLogJobIdProvider.from_environment(
            GitHubClient(settings.github_token, api_url=settings.api_url),
            log_glob=settings.worker_log_glob,
        )
    job_id = derive_job_id(job_ids, os.getenv("GITHUB_JOB", ""))
    return EventContext(job_id=job_id, server_addr=settings.server_addr, token=settings.api_token)


class SetupPhase:
    """Resolve, install, launch and announce the job start."""

    def __init__(
        self,
        settings: SidecarSettings,
        *,
        index: ArtifactHost | None = None,
        store: LifecycleStateStore | None = None,
        launcher: ProcessLauncher | None = None,
        signaler: EventSignaler | None = None,
        job_ids: JobIdProvider | None = None,
        workspace_root: Path | None = None,
        coordinator: ShutdownCoordinator | None = None,
    ) -> None:
        self.settings = settings
        self.index = index
        self.store = store if store is not None else LifecycleStateStore(settings.state_path())
        self.launcher = launcher
        self.signaler = signaler
        self.job_ids = job_ids
        self.install_dir = settings.install_path(workspace_root)
        self.coordinator = coordinator or ShutdownCoordinator(
            timeout=settings.shutdown_timeout,
            poll_interval=settings.shutdown_poll_interval,
        )

    def _index(self) -> ArtifactHost:
        if self.index is None:
            self.index = ReleaseIndex(GitHubClient(self.settings.github_token, api_url=self.settings.api_url))
        return self.index

    def _record(self, key: str, pid: int) -> None:
        """Persist a launched PID; a process that cannot be recorded is stopped again."""
        try:
            self.store.save(key, pid)
        except StateStoreError:
            logger.warning("Unable to record PID %d, stopping it", pid)
            try:
                self.coordinator.shutdown(pid, group=True)
            except SidecarError as exc:
                logger.warning("Unable to stop unrecorded PID %d: %s", pid, exc)
            raise

    def _launcher(self, *, privileged: bool) -> ProcessLauncher:
        if self.launcher is not None:
            return self.launcher
        return ProcessLauncher(
            timeout=self.settings.launch_timeout,
            ready_delay=self.settings.ready_delay,
            privileged=privileged,
            env=merged_env(os.environ, self.settings.api_token),
        )

    def run(self) -> SetupResult:
        settings = self.settings
        with stage("configure"):
            try:
                settings.require_setup_inputs()
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc

        with stage("preflight"):
            existing = self.store.load_int(DAEMON_PID)
            if existing is not None and PosixProcessOps().is_alive(existing):
                raise DaemonAlreadyRunning(existing)

        with stage("resolve"):
            resolver = ArtifactResolver(self._index(), layout=settings.layout)
            descriptor = resolver.resolve(settings.version, settings.host_platform(), settings.host_arch())
            logger.info("Using Orbit agent version: %s", descriptor.tag)

        with stage("install"):
            manifest = install_with_retry(
                ArtifactInstaller(self._index()),
                descriptor,
                self.install_dir,
                attempts=settings.download_attempts,
            )
            add_path(manifest.install_dir)
            self.store.save(INSTALL_DIR, str(manifest.install_dir))
            self.store.save(VERSION, descriptor.tag)

        with stage("launch"):
            handle = self._launcher(privileged=settings.use_sudo).launch(
                build_daemon_args(settings, manifest.install_dir),
                log_file=settings.log_path,
            )
            self._record(DAEMON_PID, handle.pid)
            self.store.save(DAEMON_STARTED_AT, handle.started_at.isoformat())
            self.store.save(DAEMON_READY, handle.ready_confirmed)
            logger.info("Orbit agent started successfully (PID: %d)", handle.pid)

        server_pid = None
        if settings.start_event_server:
            with stage("event-server"):
                server = self._launcher(privileged=False).launch(
                    server_start_command(
                        str(manifest.binary(Component.CLI.value)),
                        settings.server_addr,
                        PidFile.in_temp_dir(SERVER_PID_FILE).path,
                    ),
                )
                server_pid = server.pid
                self._record(SERVER_PID, server_pid)
                logger.info("Orbit event server started (PID: %d)", server_pid)

        sent = False
        try:
            with stage("job-start"):
                signaler = self.signaler or EventSignaler(
                    manifest.binary(Component.CLI.value),
                    timeout=settings.signal_timeout,
                    api_token=settings.api_token,
                )
                sent = signal_best_effort(signaler, LifecycleEvent.JOB_START, event_context(settings, self.job_ids))
                if sent:
                    logger.info("Job start event sent successfully")
        except SidecarError as exc:
            logger.warning("Job start event skipped: %s", exc)

        with stage("outputs"):
            set_output("version", descriptor.tag)
            set_output("binary_path", str(manifest.install_dir))
            set_output("pid", str(handle.pid))
        return SetupResult(
            version=descriptor.tag,
            install_dir=manifest.install_dir,
            daemon=handle,
            server_pid=server_pid,
            job_start_sent=sent,
        )


class TeardownPhase:
    """Announce the job end, stop what setup started, forget the state.

    Nothing here raises: every failure becomes a warning so that a broken
    teardown never fails an otherwise green pipeline run.
    """

    def __init__(
        self,
        settings: SidecarSettings,
        *,
        store: LifecycleStateStore | None = None,
        signaler: EventSignaler | None = None,
        coordinator: ShutdownCoordinator | None = None,
        job_ids: JobIdProvider | None = None,
        debug: bool | None = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else LifecycleStateStore(settings.state_path())
        self.signaler = signaler
        self.coordinator = coordinator or ShutdownCoordinator(
            timeout=settings.shutdown_timeout,
            poll_interval=settings.shutdown_poll_interval,
        )
        self.job_ids = job_ids
        self.debug = runner_debug_enabled() if debug is None else debug

    def _warn(self, result: TeardownResult, exc: SidecarError) -> None:
        message = f"{exc.stage or 'teardown'}: {exc}"
        logger.warning("%s", message)
        result.warnings.append(message)

    def _cli_path(self) -> str:
        try:
            install_dir = self.store.load(INSTALL_DIR)
        except StateStoreError as exc:
            logger.warning("Unable to read install directory from state: %s", exc)
            install_dir = None
        if isinstance(install_dir, str) and install_dir:
            return str(Path(install_dir) / Component.CLI.value)
        return Component.CLI.value

    def run(self) -> TeardownResult:
        result = TeardownResult()
        try:
            try:
                with stage("preflight"):
                    if self.store.load(DAEMON_PID) is None:
                        logger.warning("No Orbit daemon PID found")
            except SidecarError as exc:
                self._warn(result, exc)

            signaler = self.signaler or EventSignaler(
                self._cli_path(),
                timeout=self.settings.signal_timeout,
                api_token=self.settings.api_token,
            )
            try:
                with stage("job-end"):
                    result.job_end_sent = signal_best_effort(
                        signaler,
                        LifecycleEvent.JOB_END,
                        event_context(self.settings, self.job_ids),
                    )
                    if result.job_end_sent:
                        logger.info("Job end event sent successfully")
            except SidecarError as exc:
                self._warn(result, exc)

            try:
                with stage("event-server"):
                    result.server = self._stop_server(signaler)
            except SidecarError as exc:
                self._warn(result, exc)

            try:
                with stage("shutdown"):
                    result.daemon = self.coordinator.stop(self.store, DAEMON_PID)
                    if result.daemon.signals_sent:
                        logger.info("Orbit agent stopped successfully")
            except SidecarError as exc:
                self._warn(result, exc)

            if self.debug:
                print_log_file(self.settings.log_path)
        finally:
            try:
                with stage("reconcile"):
                    self.store.clear()
            except SidecarError as exc:
                self._warn(result, exc)
        return result

    def _stop_server(self, signaler: EventSignaler) -> ShutdownResult | None:
        if self.store.load(SERVER_PID) is None:
            return None
        try:
            signaler.server_stop()
        except SidecarError as exc:
            logger.warning("orbit server stop failed, falling back to signals: %s", exc)
        try:
            return self.coordinator.stop(self.store, SERVER_PID)
        finally:
            PidFile.in_temp_dir(SERVER_PID_FILE).remove()


def run_setup(settings: SidecarSettings, **kwargs) -> SetupResult:  # noqa: ANN003
    return SetupPhase(settings, **kwargs).run()


def run_teardown(settings: SidecarSettings, **kwargs) -> TeardownResult:  # noqa: ANN003
    return TeardownPhase(settings, **kwargs).run()


def run_cleanup(
    settings: SidecarSettings,
    *,
    pid_file: PidFile | None = None,
    coordinator: ShutdownCoordinator | None = None,
) -> ShutdownResult:
    """Stop the daemon named by its own PID file and remove the file."""
    pid_file = pid_file or PidFile.in_temp_dir(DAEMON_PID_FILE)
    coordinator = coordinator or ShutdownCoordinator(
        timeout=settings.shutdown_timeout,
        poll_interval=settings.shutdown_poll_interval,
    )
    if not pid_file.exists():
        logger.info("No PID file found, orbitd may not be running")
    with stage("cleanup"):
        result = coordinator.stop_pid_file(pid_file)
    if result.signals_sent:
        logger.info("Orbit agent stopped successfully and PID file removed")
    return result
