#!/usr/bin/env python3
"""Entry point for SwitchConfigBackup."""

from __future__ import annotations

import argparse
import logging
import math
import sys
from collections import Counter
from datetime import date, datetime
from pathlib import Path

# Ensure src/ is on sys.path for local imports when running as a script
ROOT_DIR = Path(__file__).resolve().parent.parent
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from swbackup.commands.catalog import CommandCatalog  # noqa: E402
from swbackup.common.run_summary import RunSummaryBuilder  # noqa: E402
from swbackup.core.config import (  # noqa: E402
    DevicesConfigError,
    RunConfig,
    RunConfigError,
    build_run_config,
    load_inventory,
    load_local_config,
)
from swbackup.core.logging import setup_logging  # noqa: E402
from swbackup.core.models import Device  # noqa: E402
from swbackup.core.naming import backup_filename  # noqa: E402
from swbackup.core.orchestrator import BackupOrchestrator, resolve_backup_command  # noqa: E402
from swbackup.core.secrets import CredentialStore, SecretsConfigError, load_secrets, prompt_credentials  # noqa: E402
from swbackup.core.storage import resolve_workdir  # noqa: E402
from swbackup.tftp.receiver import ReceiverError, TftpReceiver, resolve_server_address  # noqa: E402

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_DEVICE_FAILURES = 3


def positive_seconds(text: str) -> float:
    """argparse type for durations: a finite number greater than zero."""

    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {text!r}") from None
    if not math.isfinite(value) or value <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: {text!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""

    parser = argparse.ArgumentParser(
        description=(
            "Back up switch running-configs: each switch is told over SSH to upload its "
            "configuration to a local TFTP receiver, and the files are sorted into "
            "per-device and per-day folders."
        ),
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=ROOT_DIR / "config" / "local.yml",
        help="Path to the local settings file (YAML)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug-level logging for troubleshooting. Overrides config/local.yml logging.level.",
    )
    parser.add_argument("--log-file", type=Path, default=None, help="Log file path. Default: '{workdir}/{yyMMdd} script.log'")

    subcommands = parser.add_subparsers(dest="command", title="commands")

    backup_parser = subcommands.add_parser("backup", help="Run configuration backups for all inventory devices")
    backup_parser.add_argument("--inventory", type=Path, default=None, help="Device inventory file (CSV)")
    backup_parser.add_argument("--delimiter", default=None, help="Inventory column delimiter (default ';')")
    backup_parser.add_argument("--workdir", type=Path, default=None, help="Directory the archive folders are created in")
    backup_parser.add_argument("--secrets", type=Path, default=None, help="Path to the secrets file (YAML)")
    backup_parser.add_argument("--server-address", default=None, help="Address the devices upload to")
    backup_parser.add_argument("--timeout", type=positive_seconds, default=None, help="Seconds to wait for each upload")
    backup_parser.add_argument("--poll-interval", type=positive_seconds, default=None, help="Seconds between upload checks")
    backup_parser.add_argument(
        "--prompt-credentials",
        action="store_true",
        default=None,
        help="Ask for credentials that are not found in the secrets file or environment",
    )
    backup_parser.add_argument(
        "--summary-json", action="store_true", default=None, help="Write summary/run_<id>.json in the workdir"
    )
    backup_parser.add_argument(
        "--strict", action="store_true", help=f"Exit with {EXIT_DEVICE_FAILURES} when any device failed"
    )
    backup_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be backed up without starting the receiver or connecting to devices",
    )

    return parser


def resolve_run_config(args: argparse.Namespace, logger: logging.Logger | None = None) -> RunConfig:
    """Merge local.yml with command line overrides. Priority: CLI > local.yml > defaults."""

    base = build_run_config(load_local_config(args.config, logger))
    return base.with_overrides(
        inventory=getattr(args, "inventory", None),
        delimiter=getattr(args, "delimiter", None),
        workdir=getattr(args, "workdir", None),
        secrets=getattr(args, "secrets", None),
        prompt_credentials=getattr(args, "prompt_credentials", None),
        summary_json=getattr(args, "summary_json", None),
        receiver={
            "address": getattr(args, "server_address", None),
            "wait_timeout": getattr(args, "timeout", None),
            "poll_interval": getattr(args, "poll_interval", None),
        },
    )


def main(argv: list[str] | None = None) -> int:
    """Run the CLI."""

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_run_config(args)
    except RunConfigError as exc:
        parser.error(str(exc))
        return 2

    logger = setup_logging(
        args.config,
        workdir=config.workdir,
        cli_level=logging.DEBUG if args.debug else None,
        log_file=args.log_file,
    )
    logger.info("SwitchConfigBackup run started.")

    if args.command is None:
        parser.print_help()
        logger.info("SwitchConfigBackup run finished.")
        return EXIT_OK

    if args.command == "backup":
        exit_code = _run_backup(args, config, logger)
        logger.info("SwitchConfigBackup run finished.")
        return exit_code

    parser.error(f"Unknown command: {args.command}")
    return 2


def _run_backup(args: argparse.Namespace, config: RunConfig, logger: logging.Logger) -> int:
    """Execute the backup workflow for all inventory devices."""

    if config.inventory is None:
        logger.error("No inventory given. Use --inventory or inventory.path in local.yml.")
        return EXIT_FAILED

    logger.debug("loading devices from %s delimiter=%r", config.inventory, config.delimiter)
    try:
        devices = load_inventory(config.inventory, config.delimiter, logger, port=config.ssh.port)
    except (OSError, DevicesConfigError):
        logger.exception("Failed to load device inventory.", extra={"device": "-"})
        return EXIT_FAILED

    logger.debug("total devices loaded=%d", len(devices))
    for brand, count in sorted(Counter(device.brand for device in devices).items()):
        logger.debug("%s devices selected=%d", brand, count)

    catalog = CommandCatalog.default(config.commands)
    server_address = resolve_server_address(config.receiver.address)

    if args.dry_run:
        _log_dry_run(devices, catalog, server_address, logger)
        return EXIT_OK

    try:
        workdir = resolve_workdir(config.workdir, logger)
        secrets = load_secrets(config.secrets, logger)
    except (OSError, SecretsConfigError):
        logger.exception("Failed to prepare the run.")
        return EXIT_FAILED
    config = config.with_overrides(workdir=workdir)

    credentials = CredentialStore(secrets, prompter=prompt_credentials if config.prompt_credentials else None)
    receiver = TftpReceiver(
        config.receiver.command,
        config.receiver.config_file,
        cwd=config.incoming_dir,
        logger=logger,
        stop_timeout=config.receiver.stop_timeout,
    )
    orchestrator = BackupOrchestrator(config, receiver, credentials, catalog, server_address, logger=logger)

    run_started = datetime.now()
    summary = RunSummaryBuilder(
        run_id=run_started.strftime("%Y%m%d_%H%M%S"),
        timestamp=run_started.isoformat(timespec="seconds"),
        devices_total=len(devices),
    )
    logger.info("Starting backup for %d device(s).", len(devices))

    try:
        results = orchestrator.run(devices)
    except ReceiverError:
        logger.exception("Receiver could not be started, aborting run.")
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.warning("Run interrupted.")
        return EXIT_FAILED

    summary.extend(results)
    summary.log_totals(logger)
    if config.summary_json:
        summary.save(config.workdir, logger)

    if args.strict and summary.devices_failed:
        return EXIT_DEVICE_FAILURES
    return EXIT_OK


def _log_dry_run(
    devices: list[Device], catalog: CommandCatalog, server_address: str, logger: logging.Logger
) -> None:
    today = date.today()
    logger.info("Dry run requested. Receiver address=%s", server_address)
    for device in devices:
        log_extra = {"device": device.hostname}
        if not device.is_backup:
            logger.info("would send command='%s'", device.command or "-", extra=log_extra)
            continue
        command, reason = resolve_backup_command(
            device, catalog, server_address, backup_filename(today, device.hostname)
        )
        if command is None:
            logger.warning("would fail: %s", reason, extra=log_extra)
        else:
            logger.info("would send command='%s'", command, extra=log_extra)


if __name__ == "__main__":
    raise SystemExit(main())
