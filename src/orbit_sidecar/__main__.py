"""Entry point for `python -m orbit_sidecar` and the `orbit-sidecar` CLI script."""

from __future__ import annotations

import argparse
import dataclasses
import logging
from pathlib import Path

from orbit_sidecar.errors import SidecarError
from orbit_sidecar.models import AssetLayout, Component, LifecycleEvent
from orbit_sidecar.pipeline import configure_logging
from orbit_sidecar.settings import SidecarSettings
from orbit_sidecar.signaler import EventSignaler
from orbit_sidecar.state_store import INSTALL_DIR, LifecycleStateStore
from orbit_sidecar.workflow import event_context, run_cleanup, run_setup, run_teardown, stage


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Install, run and stop the Orbit CI agent around a pipeline job")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument("--env-file", type=Path, default=None, help="Optional .env file with ORBIT_* settings")
    parser.add_argument("--state-dir", default=None, help="Directory of the lifecycle state file")
    sub = parser.add_subparsers(dest="command", required=True)

    setup = sub.add_parser("setup", help="Resolve, install and launch the agent, then send job-start")
    setup.add_argument("--version", dest="agent_version", default=None, help="Release tag or 'latest'")
    setup.add_argument("--server-addr", default=None, help="Address of the Orbit API server")
    setup.add_argument("--log-file", default=None, help="Daemon log file path")
    setup.add_argument("--install-dir", default=None, help="Directory the binaries are installed into")
    setup.add_argument(
        "--asset-layout",
        default=None,
        choices=[item.value for item in AssetLayout],
        help="Release packaging convention",
    )
    setup.add_argument("--no-sudo", action="store_true", help="Launch the daemon without sudo")

    teardown = sub.add_parser("teardown", help="Send job-end and stop the agent")
    teardown.add_argument("--log-file", default=None, help="Daemon log file path")

    sub.add_parser("cleanup", help="Stop the agent recorded in its own PID file")

    event = sub.add_parser("event", help="Fire one lifecycle event at the running agent")
    event.add_argument("name", choices=[item.value for item in LifecycleEvent])
    return parser.parse_args(argv)


def _overrides(args: argparse.Namespace) -> dict[str, object]:
    mapping = {
        "version": getattr(args, "agent_version", None),
        "server_addr": getattr(args, "server_addr", None),
        "log_file": getattr(args, "log_file", None),
        "install_dir": getattr(args, "install_dir", None),
        "asset_layout": getattr(args, "asset_layout", None),
        "state_dir": args.state_dir,
    }
    overrides: dict[str, object] = {key: value for key, value in mapping.items() if value is not None}
    if getattr(args, "no_sudo", False):
        overrides["use_sudo"] = False
    return overrides


def load_settings(args: argparse.Namespace) -> SidecarSettings:
    settings = SidecarSettings.from_env(env_file=args.env_file)
    overrides = _overrides(args)
    if overrides:
        settings = dataclasses.replace(settings, **overrides).normalized()
    return settings


def _fire_event(settings: SidecarSettings, name: str) -> None:
    install_dir = LifecycleStateStore(settings.state_path()).load(INSTALL_DIR)
    cli = str(Path(install_dir) / Component.CLI.value) if isinstance(install_dir, str) else Component.CLI.value
    signaler = EventSignaler(cli, timeout=settings.signal_timeout, api_token=settings.api_token)
    with stage(f"event {name}"):
        signaler.signal(LifecycleEvent(name), event_context(settings, None))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        settings = load_settings(args)
    except ValueError as exc:
        if args.command == "setup":
            logging.error("Invalid configuration: %s", exc)
            return 1
        logging.warning("Invalid configuration, skipping %s: %s", args.command, exc)
        return 0

    if args.command == "setup":
        try:
            result = run_setup(settings)
        except SidecarError as exc:
            logging.error("Setup failed during %s: %s", exc.stage or "setup", exc)
            return 1
        except Exception as exc:  # noqa: BLE001
            logging.exception("Setup failed: %s", exc)
            return 1
        print(f"version={result.version}")
        print(f"binary_path={result.install_dir}")
        print(f"pid={result.daemon.pid}")
        return 0

    if args.command == "teardown":
        try:
            teardown = run_teardown(settings)
        except Exception as exc:  # noqa: BLE001
            logging.exception("Teardown failed: %s", exc)
            return 0
        if not teardown.clean:
            logging.warning("Teardown finished with %d warning(s)", len(teardown.warnings))
        return 0

    if args.command == "cleanup":
        try:
            run_cleanup(settings)
        except SidecarError as exc:
            logging.warning("Cleanup failed during %s: %s", exc.stage or "cleanup", exc)
        return 0

    try:
        _fire_event(settings, args.name)
    except SidecarError as exc:
        logging.warning("Failed to send %s event: %s", args.name, exc)
        return 0
    logging.info("%s event sent successfully", args.name)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
