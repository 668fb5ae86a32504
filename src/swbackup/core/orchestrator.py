"""Backup run: receiver lifecycle plus the sequential per-device loop."""

from __future__ import annotations

import logging
import threading
import time
from datetime import date
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Protocol, runtime_checkable

from swbackup.commands.catalog import CommandCatalog
from swbackup.core.config import RunConfig
from swbackup.core.models import CommandTemplate, Credentials, Device, DeviceResult, DeviceStatus
from swbackup.core.naming import backup_filename
from swbackup.core.secrets import CredentialStore, CredentialsNotFoundError
from swbackup.core.storage import ArchiveIOError, archive_artifact
from swbackup.ssh.session import CommandSendError, ConnectError, DeviceSession, open_session
from swbackup.tftp.receiver import ReceiverError
from swbackup.tftp.waiter import wait_for_file

SessionFactory = Callable[[Device, Credentials], DeviceSession]


@runtime_checkable
class Receiver(Protocol):
    """Upload receiver owned by one run: started once, stopped once."""

    def start(self) -> None: ...

    def stop(self) -> None: ...


def resolve_backup_command(
    device: Device, catalog: CommandCatalog, server_address: str, filename: str
) -> tuple[str | None, str | None]:
    """Return ``(command, None)`` or ``(None, reason)`` for a backup device.

    A command given in the inventory row takes the place of the catalog entry
    and is rendered with the same two slots.
    """

    if device.command:
        template = CommandTemplate(brand=device.brand, function=device.function, template=device.command)
    else:
        template = catalog.resolve(device.brand, device.function)
    if template is None:
        return None, f"unsupported device brand={device.brand} function={device.function}"

    try:
        return template.render(server_address, filename), None
    except (KeyError, IndexError, ValueError) as exc:
        return None, f"invalid command template '{template.template}': {exc!r}"


class RunState(str, Enum):
    NOT_STARTED = "not-started"
    RECEIVER_STARTING = "receiver-starting"
    RECEIVER_RUNNING = "receiver-running"
    PROCESSING_DEVICES = "processing-devices"
    RECEIVER_STOPPING = "receiver-stopping"
    DONE = "done"
    FAILED = "failed"


class BackupOrchestrator:
    """Drive one backup run over an inventory.

    The receiver is started once, devices are processed strictly one after
    the other (the receiver has no per-device namespace, so only one upload
    may be in flight), and the receiver is stopped once at the end whatever
    happened to the devices. Only a receiver start failure aborts the run.
    """

    def __init__(
        self,
        config: RunConfig,
        receiver: Receiver,
        credentials: CredentialStore,
        catalog: CommandCatalog,
        server_address: str,
        *,
        session_factory: SessionFactory | None = None,
        logger: logging.Logger | None = None,
        today: Callable[[], date] = date.today,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.config = config
        self.receiver = receiver
        self.credentials = credentials
        self.catalog = catalog
        self.server_address = server_address
        self.logger = logger or logging.getLogger(__name__)
        self.session_factory = session_factory or self._open_ssh_session
        self.state = RunState.NOT_STARTED
        self.cancel_event = cancel_event or threading.Event()
        self._today = today
        self._clock = clock
        self._sleep = sleep

    def run(self, devices: Iterable[Device]) -> list[DeviceResult]:
        day = self._today()
        results: list[DeviceResult] = []

        self.state = RunState.RECEIVER_STARTING
        try:
            self.receiver.start()
        except ReceiverError:
            self.state = RunState.FAILED
            raise
        self.state = RunState.RECEIVER_RUNNING
        self.logger.info("receiver listening address=%s incoming=%s", self.server_address, self.config.incoming_dir)

        try:
            self.state = RunState.PROCESSING_DEVICES
            for device in devices:
                if self.cancel_event.is_set():
                    self.logger.warning("run cancelled, skipping", extra={"device": device.hostname})
                    results.append(DeviceResult(device.hostname, DeviceStatus.SKIPPED, error="cancelled"))
                    continue
                results.append(self.process_device(device, day))
        finally:
            self.state = RunState.RECEIVER_STOPPING
            self.receiver.stop()
            self.state = RunState.DONE

        return results

    def process_device(self, device: Device, day: date) -> DeviceResult:
        """Back up a single device. Per-device failures are returned, not raised."""

        log_extra = {"device": device.hostname}
        self.logger.info(
            "start device=%s host=%s brand=%s function=%s",
            device.hostname,
            device.address,
            device.brand,
            device.function,
            extra=log_extra,
        )

        try:
            credentials = self.credentials.for_device(device)
        except CredentialsNotFoundError as exc:
            reason = exc.args[0] if exc.args else str(exc)
            self.logger.error("no credentials reason=\"%s\"", reason, extra=log_extra)
            return DeviceResult(device.hostname, DeviceStatus.CREDENTIALS_FAILURE, error=reason)

        try:
            session = self.session_factory(device, credentials)
        except ConnectError as exc:
            self.logger.error("ssh failed host=%s reason=\"%s\"", device.address, exc, extra=log_extra)
            return DeviceResult(device.hostname, DeviceStatus.SESSION_FAILURE, error=str(exc))

        try:
            if device.is_backup:
                return self._backup(session, device, day)
            return self._send_custom(session, device)
        except CommandSendError as exc:
            self.logger.error("send failed reason=\"%s\"", exc, extra=log_extra)
            return DeviceResult(device.hostname, DeviceStatus.COMMAND_FAILURE, error=str(exc))
        finally:
            session.close()

    def _backup(self, session: DeviceSession, device: Device, day: date) -> DeviceResult:
        log_extra = {"device": device.hostname}
        filename = backup_filename(day, device.hostname)

        command, reason = resolve_backup_command(device, self.catalog, self.server_address, filename)
        if command is None:
            self.logger.error("%s", reason, extra=log_extra)
            return DeviceResult(device.hostname, DeviceStatus.COMMAND_FAILURE, error=reason)

        artifact = self.config.incoming_dir / filename
        try:
            self._discard_stale(artifact, log_extra)
        except ArchiveIOError as exc:
            self.logger.error("%s", exc, extra=log_extra)
            return DeviceResult(device.hostname, DeviceStatus.ARCHIVE_FAILURE, error=str(exc), stage=exc.stage)

        self.logger.debug("executing command='%s'", command, extra=log_extra)
        session.send(command)

        receiver_config = self.config.receiver
        waited = wait_for_file(
            artifact,
            receiver_config.wait_timeout,
            receiver_config.poll_interval,
            settle=receiver_config.settle,
            clock=self._clock,
            sleep=self._sleep,
        )
        output = session.drain()
        if output.strip():
            self.logger.debug("shell output=%r", output.strip()[-200:], extra=log_extra)

        if not waited.found:
            self.logger.error(
                "timeout waiting for file=\"%s\" after %.1fs", filename, waited.elapsed, extra=log_extra
            )
            return DeviceResult(
                device.hostname,
                DeviceStatus.TIMEOUT_FAILURE,
                error=f"{filename} not received within {receiver_config.wait_timeout}s",
            )
        self.logger.debug("file received after %.1fs polls=%d", waited.elapsed, waited.polls, extra=log_extra)

        try:
            archived = archive_artifact(artifact, self.config.workdir, device.hostname, filename, day, self.logger)
        except ArchiveIOError as exc:
            self.logger.error("archive failed stage=%s reason=\"%s\"", exc.stage, exc, extra=log_extra)
            return DeviceResult(device.hostname, DeviceStatus.ARCHIVE_FAILURE, error=str(exc), stage=exc.stage)

        self.logger.info("backup saved path=%s", archived.device_path, extra=log_extra)
        return DeviceResult(device.hostname, DeviceStatus.SUCCESS, path=archived.daily_path)

    def _send_custom(self, session: DeviceSession, device: Device) -> DeviceResult:
        log_extra = {"device": device.hostname}
        if not device.command:
            reason = f"function={device.function} without a command"
            self.logger.error("%s", reason, extra=log_extra)
            return DeviceResult(device.hostname, DeviceStatus.COMMAND_FAILURE, error=reason)

        self.logger.debug("executing command='%s'", device.command, extra=log_extra)
        session.send(device.command)
        self.logger.info("command sent function=%s", device.function, extra=log_extra)
        return DeviceResult(device.hostname, DeviceStatus.SENT)

    def _discard_stale(self, artifact: Path, log_extra: dict[str, str]) -> None:
        if not artifact.exists():
            return
        self.logger.warning("removing stale file=\"%s\" before upload", artifact.name, extra=log_extra)
        try:
            artifact.unlink()
        except OSError as exc:
            raise ArchiveIOError(f"Unable to remove stale {artifact}: {exc}", "stale-file") from exc

    def _open_ssh_session(self, device: Device, credentials: Credentials) -> DeviceSession:
        return open_session(
            device.address,
            credentials,
            port=device.port,
            timeout=self.config.ssh.timeout,
            logger=self.logger,
            log_extra={"device": device.hostname},
        )
