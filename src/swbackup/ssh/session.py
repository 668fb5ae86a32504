"""Interactive SSH shell sessions to switches."""

from __future__ import annotations

import logging
import socket
import time
from typing import Any

import paramiko

from swbackup.core.models import Credentials

FLUSH_LINE = "\r"


class DeviceSessionError(RuntimeError):
    """Base exception for device session errors."""


class ConnectError(DeviceSessionError):
    """Raised when the SSH session cannot be established."""


class CommandSendError(DeviceSessionError):
    """Raised when a line cannot be written to the shell."""


class DeviceSession:
    """SSH shell on one device.

    Commands are written to an interactive shell rather than run with
    ``exec_command``: the switches only accept the upload command from their
    CLI, and the shell has to stay open while the upload happens.
    """

    def __init__(
        self,
        address: str,
        port: int = 22,
        timeout: float = 10.0,
        logger: logging.Logger | None = None,
        log_extra: dict[str, Any] | None = None,
    ) -> None:
        self.address = address
        self.port = port
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.log_extra = log_extra or {}
        self._client: paramiko.SSHClient | None = None
        self._channel: paramiko.Channel | None = None

    def __enter__(self) -> "DeviceSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._channel is not None

    def open(self, credentials: Credentials) -> "DeviceSession":
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        try:
            self.logger.debug("opening ssh session host=%s port=%s", self.address, self.port, extra=self.log_extra)
            ssh.connect(
                self.address,
                port=self.port,
                username=credentials.username,
                password=credentials.password,
                look_for_keys=False,
                allow_agent=False,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
            )
            channel = ssh.invoke_shell()
        except paramiko.AuthenticationException as exc:
            ssh.close()
            raise ConnectError(f"SSH authentication failed for {self.address}") from exc
        except (paramiko.SSHException, socket.error, TimeoutError) as exc:
            ssh.close()
            raise ConnectError(f"SSH connection to {self.address} failed: {exc}") from exc

        self._client = ssh
        self._channel = channel
        self.logger.info("ssh ok host=%s port=%s", self.address, self.port, extra=self.log_extra)

        # switches show a banner / "press any key" prompt before the CLI
        try:
            self.send(FLUSH_LINE, terminator="")
        except CommandSendError as exc:
            self.close()
            raise ConnectError(str(exc)) from exc
        return self

    def send(self, line: str, terminator: str = "\n") -> None:
        if self._channel is None:
            raise CommandSendError("Session is not open")

        payload = line + terminator
        try:
            self._channel.sendall(payload.encode("utf-8"))
        except (OSError, paramiko.SSHException) as exc:
            raise CommandSendError(f"Unable to send command to {self.address}: {exc}") from exc

    def drain(self, wait: float = 0.0) -> str:
        """Return whatever output the shell has buffered so far."""

        if self._channel is None:
            return ""
        if wait:
            time.sleep(wait)

        chunks: list[bytes] = []
        while self._channel.recv_ready():
            chunks.append(self._channel.recv(65535))
        return b"".join(chunks).decode("utf-8", errors="replace")

    def close(self) -> None:
        channel, client = self._channel, self._client
        self._channel = None
        self._client = None
        if channel is not None:
            channel.close()
        if client is not None:
            client.close()
            self.logger.debug("ssh session closed host=%s", self.address, extra=self.log_extra)


def open_session(
    address: str,
    credentials: Credentials,
    *,
    port: int = 22,
    timeout: float = 10.0,
    logger: logging.Logger | None = None,
    log_extra: dict[str, Any] | None = None,
) -> DeviceSession:
    """Connect to ``address`` and return the open shell session."""

    session = DeviceSession(address, port=port, timeout=timeout, logger=logger, log_extra=log_extra)
    return session.open(credentials)
