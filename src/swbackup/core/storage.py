"""Storage helpers for filing received configurations."""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from swbackup.core.naming import daily_folder_name

DEVICE_COPY = "device-copy"
DAILY_MOVE = "daily-move"


class ArchiveIOError(OSError):
    """Raised when a received artifact cannot be filed.

    ``stage`` tells whether the per-device copy or the move into the daily
    folder failed; a ``daily-move`` failure means the per-device copy exists.
    """

    def __init__(self, message: str, stage: str) -> None:
        super().__init__(message)
        self.stage = stage


@dataclass(frozen=True, slots=True)
class ArchivedArtifact:
    device_path: Path
    daily_path: Path


def ensure_directory(path: Path) -> Path:
    """Ensure the target directory exists and return it."""

    path.mkdir(parents=True, exist_ok=True)
    return path


def _move_replacing(source: Path, target: Path) -> Path:
    if target.exists():
        target.unlink()
    return Path(shutil.move(str(source), str(target)))


def archive_artifact(
    source: Path,
    root: Path,
    hostname: str,
    filename: str,
    day: date,
    logger: logging.Logger | None = None,
) -> ArchivedArtifact:
    """File an uploaded artifact into the device folder and the daily folder.

    The device folder keeps a copy (same-day reruns overwrite it); the source
    itself is then moved into ``{yyMMdd} running-configs`` so nothing is left
    behind in the receiver's directory.
    """

    log_extra = {"device": hostname}

    try:
        device_dir = ensure_directory(root / hostname)
        device_path = device_dir / filename
        shutil.copyfile(source, device_path)
    except OSError as exc:
        raise ArchiveIOError(f"Unable to copy {source} into {root / hostname}: {exc}", DEVICE_COPY) from exc
    if logger:
        logger.debug("copied path=%s", device_path, extra=log_extra)

    try:
        daily_dir = ensure_directory(root / daily_folder_name(day))
        daily_path = _move_replacing(source, daily_dir / filename)
    except OSError as exc:
        raise ArchiveIOError(
            f"Unable to move {source} into {root / daily_folder_name(day)}: {exc}", DAILY_MOVE
        ) from exc
    if logger:
        logger.debug("moved path=%s", daily_path, extra=log_extra)

    return ArchivedArtifact(device_path=device_path, daily_path=daily_path)


def _probe_directory(path: Path) -> tuple[bool, str | None]:
    """Try to create and write to the directory, returning success and reason."""

    try:
        path.mkdir(parents=True, exist_ok=True)
        test_file = path / ".write-test"
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("probe")
        test_file.unlink(missing_ok=True)
        return True, None
    except OSError as exc:
        return False, str(exc)


def resolve_workdir(workdir: Path, logger: logging.Logger) -> Path:
    """Return the absolute working directory, failing if it is not writable."""

    candidate = workdir.expanduser().resolve()
    ok, reason = _probe_directory(candidate)
    if not ok:
        logger.error('workdir path=%s reason="%s"', candidate, reason or "unavailable")
        raise OSError(f"Working directory is not writable: {candidate}")

    logger.info("workdir path=%s", candidate)
    return candidate
