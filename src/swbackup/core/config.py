"""Configuration helpers for SwitchConfigBackup."""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from swbackup.core.models import BACKUP_FUNCTION, Device

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_LOCAL_CONFIG = PROJECT_ROOT / "config" / "local.yml"
DEFAULT_DELIMITER = ";"

INVENTORY_FIELDS = ("hostname", "address", "brand", "function", "command", "default_credentials")
_TRUE_VALUES = {"true", "yes", "y", "1"}
_FALSE_VALUES = {"false", "no", "n", "0", ""}


class DevicesConfigError(ValueError):
    """Raised when the inventory file cannot be parsed or validated."""


class RunConfigError(ValueError):
    """Raised when local.yml contains invalid values."""


@dataclass(frozen=True, slots=True)
class ReceiverConfig:
    """How to run the TFTP receiver and where it drops uploads."""

    command: tuple[str, ...] = ("tftpd64.exe",)
    config_file: Path = Path("tftpd32.ini")
    address: str | None = None
    incoming_dir: Path | None = None
    wait_timeout: float = 10.0
    poll_interval: float = 0.2
    settle: bool = False
    stop_timeout: float = 5.0


@dataclass(frozen=True, slots=True)
class SshConfig:
    port: int = 22
    timeout: float = 10.0


@dataclass(frozen=True, slots=True)
class RunConfig:
    """Settings for one backup run, passed explicitly to every component."""

    workdir: Path = Path(".")
    inventory: Path | None = None
    delimiter: str = DEFAULT_DELIMITER
    receiver: ReceiverConfig = field(default_factory=ReceiverConfig)
    ssh: SshConfig = field(default_factory=SshConfig)
    secrets: Path = Path("config/secrets.yml")
    prompt_credentials: bool = False
    commands: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    summary_json: bool = False

    @property
    def incoming_dir(self) -> Path:
        """Directory the receiver writes uploads into."""

        return self.receiver.incoming_dir or self.workdir

    def with_overrides(self, **changes: Any) -> "RunConfig":
        """Return a copy with the non-``None`` values applied."""

        receiver_changes = changes.pop("receiver", None) or {}
        receiver = replace(
            self.receiver, **{key: value for key, value in receiver_changes.items() if value is not None}
        )
        return replace(self, receiver=receiver, **{key: value for key, value in changes.items() if value is not None})


def parse_bool(value: Any, context: str) -> bool:
    """Interpret a boolean-like inventory cell."""

    if isinstance(value, bool):
        return value
    text = str(value if value is not None else "").strip().casefold()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise DevicesConfigError(f"{context}: '{value}' is not a valid boolean flag.")


def _require_string(mapping: Mapping[str, Any], field_name: str, context: str) -> str:
    value = mapping.get(field_name)
    if value is None or not str(value).strip():
        raise DevicesConfigError(f"{context}: missing required field '{field_name}'.")
    return str(value).strip()


def _optional_string(mapping: Mapping[str, Any], field_name: str) -> str | None:
    value = mapping.get(field_name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_row(row: Mapping[str, Any], context: str, port: int) -> Device:
    hostname = _require_string(row, "hostname", context)
    context = f"{context} '{hostname}'"
    address = _require_string(row, "address", context)
    brand = _require_string(row, "brand", context)
    function = _optional_string(row, "function") or BACKUP_FUNCTION
    command = _optional_string(row, "command")
    use_default = parse_bool(row.get("default_credentials"), f"{context} default_credentials")

    if any(char in hostname for char in '\\/:*?"<>|'):
        raise DevicesConfigError(f"{context}: hostname contains characters not allowed in filenames.")

    return Device(
        hostname=hostname,
        address=address,
        brand=brand,
        function=function,
        command=command,
        use_default_credentials=use_default,
        port=port,
    )


def load_inventory(
    path: Path,
    delimiter: str = DEFAULT_DELIMITER,
    logger: logging.Logger | None = None,
    port: int = 22,
) -> list[Device]:
    """Load the device inventory from a delimited file.

    The first row must be a header naming the columns in ``INVENTORY_FIELDS``
    (case-insensitive). Invalid or duplicate rows are logged and skipped; the
    order of the remaining rows is the processing order.
    """

    logger = logger or logging.getLogger(__name__)

    if not path.exists():
        raise FileNotFoundError(f"Devices inventory not found: {path}")

    with path.open("r", encoding="utf-8-sig", newline="") as handle:
        reader = csv.DictReader(handle, delimiter=delimiter)
        if reader.fieldnames is None:
            raise DevicesConfigError(f"Inventory {path} is empty.")

        header = [name.strip().casefold() for name in reader.fieldnames]
        missing = [name for name in ("hostname", "address", "brand") if name not in header]
        if missing:
            raise DevicesConfigError(
                f"Inventory {path} is missing column(s): {', '.join(missing)} (delimiter={delimiter!r})."
            )
        reader.fieldnames = header

        devices: list[Device] = []
        seen_names: set[str] = set()

        for index, row in enumerate(reader, start=1):
            context = f"row #{index}"
            if not any((value or "").strip() for value in row.values() if isinstance(value, str)):
                continue

            log_extra = {"device": (row.get("hostname") or "-").strip() or "-"}
            try:
                device = _parse_row(row, context, port)
            except DevicesConfigError as exc:
                logger.error("%s", exc, extra=log_extra)
                continue

            if device.hostname in seen_names:
                logger.error(
                    "%s '%s': hostname must be unique. Duplicate ignored.",
                    context,
                    device.hostname,
                    extra=log_extra,
                )
                continue

            seen_names.add(device.hostname)
            devices.append(device)
            logger.debug(
                "device=%s address=%s brand=%s function=%s default_credentials=%s",
                device.hostname,
                device.address,
                device.brand,
                device.function,
                device.use_default_credentials,
                extra={"device": device.hostname},
            )

    return devices


def load_local_config(
    config_path: str | Path | None = None, logger: logging.Logger | None = None
) -> Mapping[str, Any] | None:
    """Load local.yml if it exists and return the mapping."""

    config_file = Path(config_path) if config_path else DEFAULT_LOCAL_CONFIG
    if not config_file.is_absolute():
        config_file = PROJECT_ROOT / config_file

    if logger:
        logger.debug("loading local config from %s", config_file)

    if not config_file.exists():
        if logger:
            logger.debug("local config not found at %s", config_file)
        return None

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        if logger:
            logger.warning("unable to read local config file=%s reason=\"%s\"", config_file, exc)
        return None

    return data if isinstance(data, Mapping) else None


def _section(local_cfg: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = local_cfg.get(name)
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise RunConfigError(f"local.yml: '{name}' must be a mapping.")
    return section


def _positive_float(value: Any, context: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RunConfigError(f"local.yml: {context} must be a number.")
    if value <= 0:
        raise RunConfigError(f"local.yml: {context} must be greater than zero.")
    return float(value)


def _port(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise RunConfigError("local.yml: ssh.port must be an integer.")
    if value <= 0 or value > 65535:
        raise RunConfigError("local.yml: ssh.port must be between 1 and 65535.")
    return value


def _path(value: Any, default: Path | None) -> Path | None:
    if value in (None, ""):
        return default
    return Path(str(value)).expanduser()


def _commands(raw: Mapping[str, Any]) -> dict[str, dict[str, str]]:
    commands: dict[str, dict[str, str]] = {}
    for brand, functions in raw.items():
        if isinstance(functions, str):
            commands[str(brand)] = {BACKUP_FUNCTION: functions}
            continue
        if not isinstance(functions, Mapping):
            raise RunConfigError(f"local.yml: commands.{brand} must be a string or a mapping.")
        commands[str(brand)] = {str(name): str(template) for name, template in functions.items()}
    return commands


def build_run_config(local_cfg: Mapping[str, Any] | None) -> RunConfig:
    """Translate a local.yml mapping into a ``RunConfig``."""

    if not local_cfg:
        return RunConfig()

    defaults = RunConfig()
    inventory = _section(local_cfg, "inventory")
    receiver_raw = _section(local_cfg, "receiver")
    ssh_raw = _section(local_cfg, "ssh")
    credentials = _section(local_cfg, "credentials")
    summary = _section(local_cfg, "summary")

    command = receiver_raw.get("command")
    if isinstance(command, str):
        command = (command,)
    elif command is None:
        command = defaults.receiver.command
    elif isinstance(command, list):
        command = tuple(str(part) for part in command)
    else:
        raise RunConfigError("local.yml: receiver.command must be a string or a list.")

    receiver = ReceiverConfig(
        command=command,
        config_file=_path(receiver_raw.get("config_file"), defaults.receiver.config_file),
        address=receiver_raw.get("address") or None,
        incoming_dir=_path(receiver_raw.get("incoming_dir"), None),
        wait_timeout=_positive_float(receiver_raw.get("wait_timeout"), "receiver.wait_timeout", 10.0),
        poll_interval=_positive_float(receiver_raw.get("poll_interval"), "receiver.poll_interval", 0.2),
        settle=bool(receiver_raw.get("settle", False)),
        stop_timeout=_positive_float(receiver_raw.get("stop_timeout"), "receiver.stop_timeout", 5.0),
    )
    ssh = SshConfig(
        port=_port(ssh_raw.get("port"), defaults.ssh.port),
        timeout=_positive_float(ssh_raw.get("timeout"), "ssh.timeout", defaults.ssh.timeout),
    )

    return RunConfig(
        workdir=_path(local_cfg.get("workdir"), defaults.workdir),
        inventory=_path(inventory.get("path"), None),
        delimiter=str(inventory.get("delimiter") or DEFAULT_DELIMITER),
        receiver=receiver,
        ssh=ssh,
        secrets=_path(credentials.get("secrets_file"), defaults.secrets),
        prompt_credentials=bool(credentials.get("prompt", False)),
        commands=_commands(_section(local_cfg, "commands")),
        summary_json=bool(summary.get("enabled", False)),
    )
