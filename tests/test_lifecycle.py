from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path

import pytest

from orbit_sidecar import settings as settings_module
from orbit_sidecar.errors import ArtifactHostError, SignalError, StateStoreError
from orbit_sidecar.job_id import WorkerLogJobIdProvider, derive_job_id, newest_worker_log, read_job_display_name
from orbit_sidecar.models import AssetLayout, EventContext, LifecycleEvent, WorkflowJobPayload
from orbit_sidecar.pipeline import ActionsFormatter, add_path, print_log_file, set_output
from orbit_sidecar.settings import SidecarSettings
from orbit_sidecar.signaler import API_TOKEN_ENV, EventSignaler, event_command, signal_best_effort
from orbit_sidecar.state_store import (
    DAEMON_PID,
    DAEMON_READY,
    INSTALL_DIR,
    STATE_FILE_NAME,
    LifecycleStateStore,
    PidFile,
)

_OPTION_NAMES = (
    "VERSION",
    "GITHUB_TOKEN",
    "API_TOKEN",
    "SERVER_ADDR",
    "LOG_FILE",
    "DAEMON_LOG_LEVEL",
    "DAEMON_DEBUG",
    "ASSET_LAYOUT",
    "INSTALL_DIR",
    "STATE_DIR",
    "LAUNCH_TIMEOUT",
    "READY_DELAY",
    "SHUTDOWN_TIMEOUT",
    "SHUTDOWN_POLL_INTERVAL",
    "SIGNAL_TIMEOUT",
    "DOWNLOAD_ATTEMPTS",
    "USE_SUDO",
    "START_EVENT_SERVER",
    "EVENT_MODE",
    "CI_PROVIDER",
    "API_URL",
    "WORKER_LOG_GLOB",
    "PLATFORM",
    "ARCH",
)


@pytest.fixture(autouse=True)
def _clean_option_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Start every test without ORBIT_*/INPUT_* options; values loaded from .env files are undone too."""
    for name in _OPTION_NAMES:
        for key in (f"ORBIT_{name}", f"INPUT_{name}"):
            monkeypatch.setenv(key, "")
            monkeypatch.delenv(key)


# ---------------------------------------------------------------------------
# Lifecycle state store
# ---------------------------------------------------------------------------


def test_state_survives_across_store_instances(tmp_path: Path) -> None:
    LifecycleStateStore(tmp_path).save(DAEMON_PID, 4242)
    LifecycleStateStore(tmp_path).save(DAEMON_READY, True)
    LifecycleStateStore(tmp_path).save(INSTALL_DIR, "/work/bin")

    fresh = LifecycleStateStore(tmp_path)
    assert fresh.load(DAEMON_PID) == 4242
    assert fresh.load(DAEMON_READY) is True
    assert fresh.load(INSTALL_DIR) == "/work/bin"
    assert fresh.load("never_saved") is None


def test_missing_state_file_reads_as_empty(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path / "nested")

    assert store.load(DAEMON_PID) is None
    assert store.entries() == {}
    store.delete(DAEMON_PID)
    assert not store.path.exists()


def test_state_file_is_canonical_json(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    store.save(INSTALL_DIR, "/work/bin")
    store.save(DAEMON_PID, 7)
    first = store.path.read_text(encoding="utf-8")

    store.save(DAEMON_PID, 7)

    assert store.path.read_text(encoding="utf-8") == first
    assert first == '{"entries":{"daemon_pid":7,"install_dir":"/work/bin"},"schema_version":1}'


def test_corrupt_state_file_is_distinguishable_from_absent(tmp_path: Path) -> None:
    (tmp_path / STATE_FILE_NAME).write_text("{not json", encoding="utf-8")

    with pytest.raises(StateStoreError, match="failed validation"):
        LifecycleStateStore(tmp_path).load(DAEMON_PID)


def test_state_file_with_unknown_fields_is_rejected(tmp_path: Path) -> None:
    (tmp_path / STATE_FILE_NAME).write_text('{"entries": {}, "owner": "someone"}', encoding="utf-8")

    with pytest.raises(StateStoreError):
        LifecycleStateStore(tmp_path).entries()


def test_load_int_accepts_numeric_strings_only(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    store.save(DAEMON_PID, "123")
    assert store.load_int(DAEMON_PID) == 123

    store.save(DAEMON_PID, True)
    with pytest.raises(StateStoreError, match="not an integer"):
        store.load_int(DAEMON_PID)


def test_delete_and_clear(tmp_path: Path) -> None:
    store = LifecycleStateStore(tmp_path)
    store.save(DAEMON_PID, 1)
    store.save(INSTALL_DIR, "/bin")

    store.delete(DAEMON_PID)
    assert store.entries() == {INSTALL_DIR: "/bin"}

    store.clear()
    assert not store.path.exists()
    assert list(tmp_path.iterdir()) == []
    store.clear()


def test_pid_file_round_trip_and_garbage(tmp_path: Path) -> None:
    pid_file = PidFile(tmp_path / "orbitd.pid")
    assert pid_file.read() is None
    assert pid_file.remove() is False

    pid_file.write(31337)
    assert pid_file.read() == 31337
    assert pid_file.remove() is True

    pid_file.path.write_text("not-a-pid\n", encoding="utf-8")
    with pytest.raises(StateStoreError, match="does not contain a PID"):
        pid_file.read()


# ---------------------------------------------------------------------------
# Event signaler
# ---------------------------------------------------------------------------


class RecordingRunner:
    def __init__(
        self,
        *,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        error: Exception | None = None,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.error = error
        self.calls: list[tuple[list[str], dict[str, object]]] = []

    def __call__(self, argv: list[str], **kwargs: object) -> subprocess.CompletedProcess:
        self.calls.append((argv, kwargs))
        if self.error is not None:
            raise self.error
        return subprocess.CompletedProcess(argv, self.returncode, self.stdout, self.stderr)


def test_signal_runs_cli_with_token_in_environment() -> None:
    runner = RecordingRunner(stdout="ok\n")
    signaler = EventSignaler("/work/bin/orbit", timeout=12.0, api_token="tok", runner=runner)

    signaler.signal(LifecycleEvent.JOB_START)

    argv, kwargs = runner.calls[0]
    assert argv == ["/work/bin/orbit", "event", "job-start"]
    assert kwargs["timeout"] == 12.0
    assert kwargs["check"] is False
    env = kwargs["env"]
    assert isinstance(env, dict)
    assert env[API_TOKEN_ENV] == "tok"


def test_direct_event_form_carries_correlation_data() -> None:
    context = EventContext(job_id="987", server_addr="orbit.example:443", token="tok")

    assert event_command("orbit", LifecycleEvent.JOB_END, context) == [
        "orbit",
        "event",
        "fire",
        "-event=job-end",
        "-job-id=987",
        "-server-addr=orbit.example:443",
        "-token=tok",
    ]


def test_nonzero_exit_is_signal_error_with_stderr() -> None:
    runner = RecordingRunner(returncode=3, stderr="daemon not reachable\n")
    signaler = EventSignaler("orbit", runner=runner)

    with pytest.raises(SignalError, match="daemon not reachable") as excinfo:
        signaler.signal(LifecycleEvent.JOB_END)
    assert excinfo.value.exit_code == 3


def test_cli_timeout_is_signal_error() -> None:
    runner = RecordingRunner(error=subprocess.TimeoutExpired(["orbit"], 1.0))

    with pytest.raises(SignalError, match="timed out"):
        EventSignaler("orbit", timeout=1.0, runner=runner).signal(LifecycleEvent.JOB_START)


def test_missing_cli_is_signal_error() -> None:
    runner = RecordingRunner(error=FileNotFoundError(2, "No such file or directory"))

    with pytest.raises(SignalError, match="Failed to execute orbit command"):
        EventSignaler("orbit", runner=runner).server_stop()
    assert runner.calls[0][0] == ["orbit", "server", "stop"]


def test_best_effort_signal_downgrades_to_warning(caplog: pytest.LogCaptureFixture) -> None:
    signaler = EventSignaler("orbit", runner=RecordingRunner(returncode=1))

    with caplog.at_level(logging.WARNING):
        sent = signal_best_effort(signaler, LifecycleEvent.JOB_START)

    assert sent is False
    assert "Failed to send job-start event" in caplog.text


# ---------------------------------------------------------------------------
# Job id derivation
# ---------------------------------------------------------------------------


def _worker_log(directory: Path, name: str, display_name: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text(
        "[2026-01-01 00:00:00Z INFO Worker] Job message:\n"
        "{\n"
        f'  "jobDisplayName": "{display_name}",\n'
        '  "jobName": "__default"\n'
        "}\n",
        encoding="utf-8",
    )
    return path


def _jobs(*names: str) -> list[WorkflowJobPayload]:
    return [WorkflowJobPayload(id=100 + index, name=name) for index, name in enumerate(names)]


def test_job_id_found_by_display_name(tmp_path: Path) -> None:
    _worker_log(tmp_path / "_diag", "Worker_20260101.log", 'test \\"unit\\" (3.12)')
    provider = WorkerLogJobIdProvider(
        log_glob=str(tmp_path / "_diag" / "Worker_*.log"),
        list_jobs=lambda: _jobs("build", 'test "unit" (3.12)'),
    )

    assert provider.job_id() == "101"
    assert derive_job_id(provider, "test") == "101"


def test_newest_worker_log_wins(tmp_path: Path) -> None:
    old = _worker_log(tmp_path, "Worker_1.log", "build")
    new = _worker_log(tmp_path, "Worker_2.log", "lint")
    os.utime(old, (1_000_000, 1_000_000))
    os.utime(new, (2_000_000, 2_000_000))

    latest = newest_worker_log(str(tmp_path / "Worker_*.log"))

    assert latest == new
    assert read_job_display_name(latest) == "lint"


def test_job_id_falls_back_without_worker_log(tmp_path: Path) -> None:
    provider = WorkerLogJobIdProvider(log_glob=str(tmp_path / "none_*.log"), list_jobs=lambda: _jobs("build"))

    assert derive_job_id(provider, "build") == "build"


def test_job_id_falls_back_when_api_fails(tmp_path: Path) -> None:
    _worker_log(tmp_path, "Worker_1.log", "build")

    def _broken() -> list[WorkflowJobPayload]:
        raise ArtifactHostError("HTTP 403", status=403)

    provider = WorkerLogJobIdProvider(log_glob=str(tmp_path / "Worker_*.log"), list_jobs=_broken)

    assert derive_job_id(provider, "build") == "build"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def test_settings_defaults(tmp_path: Path) -> None:
    settings = SidecarSettings.from_env(env_file=tmp_path / "absent.env")

    assert settings.version == "latest"
    assert settings.layout is AssetLayout.SPLIT
    assert settings.log_file == "/var/log/orbitd.log"
    assert settings.shutdown_timeout == 5.0
    assert settings.shutdown_poll_interval == 0.5
    assert settings.use_sudo is True
    assert settings.server_addr == ""


def test_orbit_prefix_wins_over_pipeline_input(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("INPUT_SERVER_ADDR", "input.example:443")
    monkeypatch.setenv("INPUT_VERSION", "v1.0.0")
    monkeypatch.setenv("ORBIT_VERSION", "v2.0.0")

    settings = SidecarSettings.from_env(env_file=tmp_path / "absent.env")

    assert settings.server_addr == "input.example:443"
    assert settings.version == "v2.0.0"


def test_env_file_fills_unset_options(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("ORBIT_SERVER_ADDR=dotenv.example:443\nORBIT_API_TOKEN=from-file\n", encoding="utf-8")
    monkeypatch.setenv("ORBIT_API_TOKEN", "from-env")

    settings = SidecarSettings.from_env(env_file=env_file)

    assert settings.server_addr == "dotenv.example:443"
    assert settings.api_token == "from-env"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("ORBIT_DOWNLOAD_ATTEMPTS", "three", "must be an integer"),
        ("ORBIT_DOWNLOAD_ATTEMPTS", "0", "must be >= 1"),
        ("ORBIT_SHUTDOWN_TIMEOUT", "-1", "must be within"),
        ("ORBIT_USE_SUDO", "maybe", "must be a boolean"),
        ("ORBIT_ASSET_LAYOUT", "tarball", "ORBIT_ASSET_LAYOUT must be one of"),
        ("ORBIT_EVENT_MODE", "carrier-pigeon", "ORBIT_EVENT_MODE must be one of"),
        ("ORBIT_SHUTDOWN_POLL_INTERVAL", "9", "must not exceed"),
    ],
)
def test_invalid_options_fail_fast(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        SidecarSettings.from_env(env_file=tmp_path / "absent.env")


def test_required_setup_inputs_are_named() -> None:
    settings = SidecarSettings(github_token="gh").normalized()

    with pytest.raises(ValueError, match="api_token, server_addr"):
        settings.require_setup_inputs()


def test_host_arch_aliases(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(settings_module.host_platform, "machine", lambda: "aarch64")
    monkeypatch.setattr(settings_module.host_platform, "system", lambda: "Linux")
    settings = SidecarSettings()

    assert settings.host_arch() == "arm64"
    assert settings.host_platform() == "linux"
    assert SidecarSettings(arch="x64").host_arch() == "x64"


def test_paths_resolve_against_workspace_and_runner_temp(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RUNNER_TEMP", str(tmp_path / "runner-temp"))
    settings = SidecarSettings()

    assert settings.install_path(tmp_path) == tmp_path / "bin"
    assert SidecarSettings(install_dir="/opt/orbit").install_path(tmp_path) == Path("/opt/orbit")
    assert settings.state_path() == tmp_path / "runner-temp" / "orbit-sidecar"
    assert SidecarSettings(state_dir=str(tmp_path / "s")).state_path() == tmp_path / "s"


# ---------------------------------------------------------------------------
# Pipeline host integration
# ---------------------------------------------------------------------------


def test_set_output_appends_heredoc_block(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    output_file = tmp_path / "output"
    monkeypatch.setenv("GITHUB_OUTPUT", str(output_file))

    set_output("version", "v1.2.3")
    set_output("pid", "42")

    lines = output_file.read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("version<<ghadelimiter_")
    assert lines[1] == "v1.2.3"
    assert lines[2] == lines[0].split("<<", 1)[1]
    assert lines[3].startswith("pid<<")
    assert lines[4] == "42"


def test_add_path_updates_process_and_runner(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    path_file = tmp_path / "path"
    monkeypatch.setenv("GITHUB_PATH", str(path_file))
    monkeypatch.setenv("PATH", "/usr/bin")

    add_path(tmp_path / "bin")

    assert os.environ["PATH"] == f"{tmp_path / 'bin'}{os.pathsep}/usr/bin"
    assert path_file.read_text(encoding="utf-8") == f"{tmp_path / 'bin'}\n"


def test_actions_formatter_emits_escaped_annotations() -> None:
    formatter = ActionsFormatter("%(message)s")
    record = logging.LogRecord("orbit", logging.WARNING, __file__, 1, "line one\nline two 100%", None, None)
    info = logging.LogRecord("orbit", logging.INFO, __file__, 1, "plain", None, None)

    assert formatter.format(record) == "::warning::line one%0Aline two 100%25"
    assert formatter.format(info) == "plain"


def test_print_log_file_groups_output(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("GITHUB_ACTIONS", "true")
    log_file = tmp_path / "orbitd.log"
    log_file.write_text("started\n\nattached probes\n", encoding="utf-8")

    print_log_file(log_file)

    assert capsys.readouterr().out.splitlines() == [
        "::group::Orbit CI agent logs",
        "started",
        "attached probes",
        "::endgroup::",
    ]
