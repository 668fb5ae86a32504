"""Polling for files uploaded to the receiver."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable

from swbackup.core.models import WaitResult

DEFAULT_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 0.2


def _size(path: Path) -> int | None:
    try:
        return path.stat().st_size
    except OSError:
        return None


def wait_for_file(
    path: Path,
    timeout: float = DEFAULT_TIMEOUT,
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    *,
    settle: bool = False,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> WaitResult:
    """Poll until ``path`` exists or ``timeout`` seconds have elapsed.

    The bound is measured on ``clock``, not by counting polls. With ``settle``
    the file must also report the same non-zero size on two consecutive polls,
    so a transfer still in progress is not picked up early.
    """

    started = clock()
    polls = 0
    previous_size: int | None = None

    while True:
        polls += 1
        size = _size(path)
        if size is not None:
            if not settle:
                return WaitResult(found=True, path=path, elapsed=clock() - started, polls=polls)
            if size > 0 and size == previous_size:
                return WaitResult(found=True, path=path, elapsed=clock() - started, polls=polls)
        previous_size = size

        elapsed = clock() - started
        if elapsed >= timeout:
            return WaitResult(found=False, path=path, elapsed=elapsed, polls=polls)
        sleep(min(poll_interval, timeout - elapsed))
