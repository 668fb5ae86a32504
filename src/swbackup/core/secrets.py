"""Credential resolution for device sessions.

Credentials are loaded from ``config/secrets.yml`` when present and can be
overridden via environment variables. A single ``default`` entry serves every
device flagged for default credentials; other devices are looked up by
hostname. When prompting is enabled, missing credentials are asked for on the
terminal and kept in memory for the rest of the run.
"""

from __future__ import annotations

import getpass
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping

import yaml

from swbackup.core.models import Credentials, Device

logger = logging.getLogger(__name__)

ENV_PREFIX = "SWBACKUP_SECRET_"
ENV_DEFAULT_PREFIX = "SWBACKUP_DEFAULT_"
DEFAULT_SECRETS_PATH = Path("config/secrets.yml")

Prompter = Callable[[str], Credentials]


class SecretsConfigError(ValueError):
    """Raised when the secrets file is missing required structure."""


class CredentialsNotFoundError(KeyError):
    """Raised when no credentials can be resolved for a device.

    Callers handle it per device: the device is skipped, the run goes on.
    """


@dataclass(slots=True)
class Secrets:
    """Container for the credentials read from secrets.yml."""

    default: Credentials | None
    devices: Mapping[str, Credentials]
    source_path: Path
    missing_source: bool = False

    def get(self, hostname: str) -> Credentials | None:
        return self.devices.get(hostname)


def _normalize_ref(ref: str) -> str:
    """Convert hostnames to ``UPPER_SNAKE_CASE`` for env lookup."""

    normalized = re.sub(r"[^A-Z0-9]+", "_", ref.upper())
    return normalized.strip("_")


def _parse_entry(ref: str, entry: object) -> Credentials:
    if not isinstance(entry, Mapping):
        raise SecretsConfigError(f"Secret '{ref}' must be a mapping.")

    values: dict[str, str] = {}
    for field_name in ("username", "password"):
        value = entry.get(field_name)
        if value is None:
            raise SecretsConfigError(f"Secret '{ref}' is missing required field '{field_name}'.")
        if not isinstance(value, str):
            raise SecretsConfigError(f"Secret '{ref}' field '{field_name}' must be a string.")
        values[field_name] = value

    return Credentials(username=values["username"], password=values["password"])


def _load_file_secrets(path: Path) -> Secrets:
    """Load secrets from a YAML file.

    Expected structure::

        default:
          username: admin
          password: secret
        devices:
          SW02:
            username: other
            password: secret2
    """

    try:
        with path.open("r", encoding="utf-8") as handle:
            raw_data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise SecretsConfigError(f"Unable to read secrets file: {path}") from exc

    if not isinstance(raw_data, Mapping):
        raise SecretsConfigError("Top-level secrets.yml structure must be a mapping.")

    raw_default = raw_data.get("default")
    default = _parse_entry("default", raw_default) if raw_default is not None else None

    raw_devices = raw_data.get("devices") or {}
    if not isinstance(raw_devices, Mapping):
        raise SecretsConfigError("Field 'devices' must be a mapping of hostnames.")

    devices = {str(ref): _parse_entry(str(ref), entry) for ref, entry in raw_devices.items()}
    return Secrets(default=default, devices=devices, source_path=path)


def load_secrets(path: Path = DEFAULT_SECRETS_PATH, logger: logging.Logger | None = None) -> Secrets:
    """Load secrets from the provided path."""

    logger = logger or logging.getLogger(__name__)
    if not path.exists():
        logger.warning("Secrets file not found at %s", path, extra={"device": "-"})
        return Secrets(default=None, devices={}, source_path=path, missing_source=True)

    secrets = _load_file_secrets(path)
    logger.debug("Secrets file loaded path=%s entries=%d", path, len(secrets.devices))
    return secrets


def _env_credentials(prefix: str, fallback: Credentials | None) -> Credentials | None:
    """Return env-sourced credentials, filling gaps from ``fallback``."""

    username = os.getenv(f"{prefix}USERNAME")
    password = os.getenv(f"{prefix}PASSWORD")
    if username is None and password is None:
        return None

    username = username if username is not None else (fallback.username if fallback else None)
    password = password if password is not None else (fallback.password if fallback else None)
    if username is None or password is None:
        return None
    return Credentials(username=username, password=password)


def prompt_credentials(label: str) -> Credentials:
    """Ask for credentials on the terminal.

    Raises ``CredentialsNotFoundError`` when the terminal is closed or not
    interactive, so only the device being asked for fails.
    """

    try:
        username = input(f"Username for {label}: ").strip()
        password = getpass.getpass(f"Password for {label}: ")
    except EOFError as exc:
        raise CredentialsNotFoundError(f"No credentials entered for {label}: input closed.") from exc
    return Credentials(username=username, password=password)


@dataclass(slots=True)
class CredentialStore:
    """Resolve credentials per device for the duration of one run.

    Resolution order:
    1. Environment variables (``SWBACKUP_DEFAULT_*`` or
       ``SWBACKUP_SECRET_<HOSTNAME>_*``)
    2. ``config/secrets.yml``
    3. the interactive prompter, when one is configured
    """

    secrets: Secrets
    prompter: Prompter | None = None
    _default: Credentials | None = field(default=None, init=False, repr=False)

    def default_credentials(self) -> Credentials:
        if self._default is None:
            resolved = _env_credentials(ENV_DEFAULT_PREFIX, self.secrets.default) or self.secrets.default
            if resolved is None and self.prompter is not None:
                resolved = self.prompter("default credentials")
            if resolved is None:
                raise CredentialsNotFoundError("Default credentials not configured.")
            self._default = resolved
        return self._default

    def for_device(self, device: Device) -> Credentials:
        if device.use_default_credentials:
            return self.default_credentials()

        entry = self.secrets.get(device.hostname)
        env_prefix = f"{ENV_PREFIX}{_normalize_ref(device.hostname)}_"
        resolved = _env_credentials(env_prefix, entry) or entry
        if resolved is None and self.prompter is not None:
            resolved = self.prompter(device.hostname)
        if resolved is None:
            raise CredentialsNotFoundError(f"Credentials for '{device.hostname}' not found.")
        return resolved
