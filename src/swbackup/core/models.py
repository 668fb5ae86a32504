"""Data models for device inventory and backup outcomes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


BACKUP_FUNCTION = "backup"


@dataclass(frozen=True, slots=True)
class Device:
    """One inventory row describing a switch to back up."""

    hostname: str
    address: str
    brand: str
    function: str = BACKUP_FUNCTION
    command: str | None = None
    use_default_credentials: bool = True
    port: int = 22

    @property
    def is_backup(self) -> bool:
        return self.function == BACKUP_FUNCTION


@dataclass(frozen=True, slots=True)
class Credentials:
    """Username/password pair used for a single SSH session."""

    username: str
    password: str

    def __repr__(self) -> str:
        return f"Credentials(username={self.username!r}, password='***')"


@dataclass(frozen=True, slots=True)
class CommandTemplate:
    """Backup command for a brand/function pair.

    The template carries two substitution points, the receiver address and
    the filename the device should upload as. Both the positional form
    (``{0}``, ``{1}``) and the named form (``{server}``, ``{filename}``) are
    accepted.
    """

    brand: str
    function: str
    template: str

    def render(self, server: str, filename: str) -> str:
        return self.template.format(server, filename, server=server, filename=filename)


class DeviceStatus(str, Enum):
    """Per-device outcome of a backup run."""

    SUCCESS = "success"
    SENT = "sent"
    CREDENTIALS_FAILURE = "credentials-failure"
    SESSION_FAILURE = "session-failure"
    COMMAND_FAILURE = "command-failure"
    TIMEOUT_FAILURE = "timeout-failure"
    ARCHIVE_FAILURE = "archive-failure"
    SKIPPED = "skipped"

    @property
    def failed(self) -> bool:
        return self not in (DeviceStatus.SUCCESS, DeviceStatus.SENT, DeviceStatus.SKIPPED)


@dataclass(slots=True)
class DeviceResult:
    """Outcome of processing one device."""

    hostname: str
    status: DeviceStatus
    path: Path | None = None
    error: str | None = None
    stage: str | None = None


@dataclass(frozen=True, slots=True)
class WaitResult:
    """Outcome of polling for an uploaded artifact."""

    found: bool
    path: Path
    elapsed: float
    polls: int
