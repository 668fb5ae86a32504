"""Naming helpers for uploaded artifacts and archive folders."""

from __future__ import annotations

from datetime import date

DATE_FORMAT = "%y%m%d"


def date_stamp(day: date) -> str:
    """Return the ``yyMMdd`` stamp used in filenames and folder names."""

    return day.strftime(DATE_FORMAT)


def backup_filename(day: date, hostname: str) -> str:
    """Name the device is told to upload as, and the name we wait for."""

    return f"{date_stamp(day)} {hostname} running-config.txt"


def daily_folder_name(day: date) -> str:
    return f"{date_stamp(day)} running-configs"


def default_log_filename(day: date) -> str:
    return f"{date_stamp(day)} script.log"
