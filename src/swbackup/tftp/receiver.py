"""Lifecycle of the external TFTP receiver process."""

from __future__ import annotations

import logging
import os
import socket
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Sequence

Launcher = Callable[..., Any]


class ReceiverError(RuntimeError):
    """Base exception for receiver lifecycle errors."""


class ReceiverConfigMissing(ReceiverError):
    """Raised when the receiver's configuration file is absent."""


class ReceiverStartError(ReceiverError):
    """Raised when the receiver process cannot be launched."""


class ReceiverStopError(ReceiverError):
    """Raised internally when stopping fails; only ever logged."""


class ReceiverState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


def _popen_options() -> dict[str, Any]:
    options: dict[str, Any] = {
        "stdin": subprocess.DEVNULL,
        "stdout": subprocess.DEVNULL,
        "stderr": subprocess.DEVNULL,
    }
    if os.name == "nt":  # pragma: no cover - platform dependent
        startupinfo = subprocess.STARTUPINFO()
        startupinfo.dwFlags |= subprocess.STARTF_USESHOWWINDOW
        startupinfo.wShowWindow = 7  # SW_SHOWMINNOACTIVE
        options["startupinfo"] = startupinfo
        options["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
    else:
        options["start_new_session"] = True
    return options


class TftpReceiver:
    """Start and stop the TFTP server the switches upload to.

    The receiver is owned by one backup run: ``start()`` once before the
    first device, ``stop()`` once after the last.
    """

    def __init__(
        self,
        command: Sequence[str],
        config_file: Path,
        cwd: Path,
        logger: logging.Logger | None = None,
        launcher: Launcher = subprocess.Popen,
        stop_timeout: float = 5.0,
    ) -> None:
        self.command = list(command)
        self.cwd = cwd
        self.config_file = config_file if config_file.is_absolute() else cwd / config_file
        self.logger = logger or logging.getLogger(__name__)
        self.stop_timeout = stop_timeout
        self.state = ReceiverState.STOPPED
        self._launcher = launcher
        self._process: Any = None

    @property
    def running(self) -> bool:
        return self.state is ReceiverState.RUNNING

    def start(self) -> None:
        if self.state is not ReceiverState.STOPPED:
            raise ReceiverStartError(f"Receiver cannot start from state {self.state.value}")

        self.state = ReceiverState.STARTING
        if not self.config_file.exists():
            self.state = ReceiverState.STOPPED
            raise ReceiverConfigMissing(f"Receiver configuration not found: {self.config_file}")
        if not self.command:
            self.state = ReceiverState.STOPPED
            raise ReceiverStartError("Receiver command is empty")

        self.logger.debug("starting receiver command=%s cwd=%s", self.command, self.cwd)
        try:
            self._process = self._launcher(self.command, cwd=str(self.cwd), **_popen_options())
        except (OSError, ValueError) as exc:
            self.state = ReceiverState.STOPPED
            raise ReceiverStartError(f"Unable to launch receiver '{self.command[0]}': {exc}") from exc

        self.state = ReceiverState.RUNNING
        self.logger.info("receiver started pid=%s", getattr(self._process, "pid", "-"))

    def stop(self) -> None:
        """Terminate the receiver. Never raises."""

        self.state = ReceiverState.STOPPING
        try:
            self._terminate()
        except ReceiverStopError as exc:
            self.logger.warning("receiver stop failed reason=\"%s\"", exc)
        finally:
            self._process = None
            self.state = ReceiverState.STOPPED

    def _terminate(self) -> None:
        process = self._process
        if process is None or process.poll() is not None:
            self.logger.warning("receiver process not running, nothing to stop")
            return

        try:
            process.terminate()
            try:
                process.wait(timeout=self.stop_timeout)
            except subprocess.TimeoutExpired:
                self.logger.warning("receiver did not exit within %.1fs, killing", self.stop_timeout)
                process.kill()
                process.wait(timeout=self.stop_timeout)
        except ProcessLookupError:
            self.logger.warning("receiver process already gone")
            return
        except (OSError, subprocess.SubprocessError) as exc:
            raise ReceiverStopError(str(exc)) from exc

        self.logger.info("receiver stopped returncode=%s", process.returncode)


def resolve_server_address(configured: str | None = None, probe_host: str = "192.0.2.1") -> str:
    """Return the address devices should upload to.

    Without a configured value, the local address of the default route is
    used; connecting a UDP socket sends no packet.
    """

    if configured:
        return configured

    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect((probe_host, 69))
            return sock.getsockname()[0]
    except OSError:
        return socket.gethostbyname(socket.gethostname())
