import logging
import sys
import threading
import unittest
from datetime import date
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

ROOT_DIR = Path(__file__).resolve().parents[1]
SRC_DIR = ROOT_DIR / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from swbackup.commands.catalog import CommandCatalog
from swbackup.core.config import ReceiverConfig, RunConfig
from swbackup.core.models import Credentials, Device, DeviceStatus
from swbackup.core.orchestrator import BackupOrchestrator, Receiver, RunState, resolve_backup_command
from swbackup.core.secrets import CredentialStore, Secrets, prompt_credentials
from swbackup.ssh.session import CommandSendError, ConnectError
from swbackup.tftp.receiver import ReceiverConfigMissing

DAY = date(2026, 10, 18)
SERVER = "10.0.0.5"
LOGGER = logging.getLogger("orchestrator.test")


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self._pending: list[tuple[float, Path, bytes]] = []

    def __call__(self) -> float:
        return self.now

    def schedule(self, delay: float, path: Path, content: bytes) -> None:
        self._pending.append((self.now + delay, path, content))

    def sleep(self, seconds: float) -> None:
        self.now += seconds
        due = [item for item in self._pending if item[0] <= self.now]
        for item in due:
            self._pending.remove(item)
            item[1].write_bytes(item[2])


class FakeReceiver:
    def __init__(self, start_error: Exception | None = None) -> None:
        self.start_error = start_error
        self.start_calls = 0
        self.stop_calls = 0

    def start(self) -> None:
        self.start_calls += 1
        if self.start_error:
            raise self.start_error

    def stop(self) -> None:
        self.stop_calls += 1


class FakeSession:
    def __init__(self, network: "FakeNetwork", device: Device) -> None:
        self.network = network
        self.device = device
        self.sent: list[str] = []
        self.closed = False

    def send(self, line: str) -> None:
        if self.device.hostname in self.network.send_failures:
            raise CommandSendError("channel closed")
        self.sent.append(line)
        self.network.on_send(self.device, line)

    def drain(self) -> str:
        return ""

    def close(self) -> None:
        self.closed = True


class FakeNetwork:
    """Session factory that simulates switches uploading to the receiver."""

    def __init__(self, clock: FakeClock, incoming: Path) -> None:
        self.clock = clock
        self.incoming = incoming
        self.uploads: dict[str, tuple[float, bytes]] = {}
        self.unreachable: set[str] = set()
        self.send_failures: set[str] = set()
        self.sessions: list[FakeSession] = []
        self.credentials_used: dict[str, Credentials] = {}

    def __call__(self, device: Device, credentials: Credentials) -> FakeSession:
        self.credentials_used[device.hostname] = credentials
        if device.hostname in self.unreachable:
            raise ConnectError(f"SSH connection to {device.address} failed")
        session = FakeSession(self, device)
        self.sessions.append(session)
        return session

    def on_send(self, device: Device, line: str) -> None:
        if device.hostname not in self.uploads:
            return
        delay, content = self.uploads[device.hostname]
        filename = line.split('"')[1]
        self.clock.schedule(delay, self.incoming / filename, content)

    def session_for(self, hostname: str) -> FakeSession:
        return next(session for session in self.sessions if session.device.hostname == hostname)


def _device(hostname: str, brand: str = "Aruba", **kwargs) -> Device:
    return Device(hostname=hostname, address=f"192.0.2.{len(hostname)}", brand=brand, **kwargs)


class BackupOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.clock = FakeClock()
        self.network = FakeNetwork(self.clock, self.root)
        self.receiver = FakeReceiver()
        self.config = RunConfig(workdir=self.root, receiver=ReceiverConfig(wait_timeout=10.0, poll_interval=0.2))
        self.secrets = Secrets(
            default=Credentials("admin", "default-pw"),
            devices={"SW02": Credentials("sw02", "sw02-pw")},
            source_path=self.root / "secrets.yml",
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_fake_receiver_matches_receiver_interface(self) -> None:
        self.assertIsInstance(self.receiver, Receiver)

    def _orchestrator(self, **kwargs) -> BackupOrchestrator:
        return BackupOrchestrator(
            self.config,
            self.receiver,
            CredentialStore(self.secrets),
            CommandCatalog.default(),
            SERVER,
            session_factory=self.network,
            logger=LOGGER,
            today=lambda: DAY,
            clock=self.clock,
            sleep=self.clock.sleep,
            **kwargs,
        )

    def test_two_device_scenario(self) -> None:
        self.network.uploads["SW01"] = (1.0, b"hostname SW01\n")
        devices = [
            _device("SW01", "Aruba", use_default_credentials=True),
            _device("SW02", "Unknown", use_default_credentials=False),
        ]
        orchestrator = self._orchestrator()

        with self.assertLogs(LOGGER, level="INFO") as logs:
            results = orchestrator.run(devices)

        self.assertEqual([DeviceStatus.SUCCESS, DeviceStatus.COMMAND_FAILURE], [r.status for r in results])
        device_copy = self.root / "SW01" / "261018 SW01 running-config.txt"
        daily_copy = self.root / "261018 running-configs" / "261018 SW01 running-config.txt"
        self.assertEqual(b"hostname SW01\n", device_copy.read_bytes())
        self.assertEqual(b"hostname SW01\n", daily_copy.read_bytes())
        self.assertEqual(daily_copy, results[0].path)
        self.assertFalse((self.root / "SW02").exists())
        self.assertEqual([], list(self.root.glob("**/*SW02*")))
        self.assertEqual(1, self.receiver.stop_calls)
        self.assertIs(RunState.DONE, orchestrator.state)
        self.assertTrue(any("unsupported device brand=Unknown" in line for line in logs.output))

    def test_sends_rendered_command_after_banner_flush(self) -> None:
        self.network.uploads["SW01"] = (0.4, b"cfg")

        self._orchestrator().run([_device("SW01")])

        session = self.network.session_for("SW01")
        self.assertEqual(['copy running-config tftp 10.0.0.5 "261018 SW01 running-config.txt"'], session.sent)
        self.assertTrue(session.closed)

    def test_credentials_follow_default_flag(self) -> None:
        self._orchestrator().run(
            [_device("SW01", use_default_credentials=True), _device("SW02", use_default_credentials=False)]
        )

        self.assertEqual(Credentials("admin", "default-pw"), self.network.credentials_used["SW01"])
        self.assertEqual(Credentials("sw02", "sw02-pw"), self.network.credentials_used["SW02"])

    def test_missing_credentials_fail_only_that_device(self) -> None:
        self.network.uploads["SW03"] = (0.2, b"cfg")

        results = self._orchestrator().run(
            [_device("SW09", use_default_credentials=False), _device("SW03")]
        )

        self.assertEqual([DeviceStatus.CREDENTIALS_FAILURE, DeviceStatus.SUCCESS], [r.status for r in results])
        self.assertNotIn("SW09", self.network.credentials_used)

    def test_closed_prompt_fails_only_that_device(self) -> None:
        self.network.uploads["SW03"] = (0.2, b"cfg")
        orchestrator = self._orchestrator()
        orchestrator.credentials = CredentialStore(self.secrets, prompter=prompt_credentials)

        with mock.patch("builtins.input", side_effect=EOFError):
            results = orchestrator.run([_device("SW09", use_default_credentials=False), _device("SW03")])

        self.assertEqual([DeviceStatus.CREDENTIALS_FAILURE, DeviceStatus.SUCCESS], [r.status for r in results])
        self.assertEqual(1, self.receiver.stop_calls)

    def test_session_failure_does_not_stop_later_devices(self) -> None:
        self.network.unreachable.add("SW01")
        self.network.uploads["SW03"] = (0.2, b"cfg")

        results = self._orchestrator().run([_device("SW01"), _device("SW03")])

        self.assertEqual([DeviceStatus.SESSION_FAILURE, DeviceStatus.SUCCESS], [r.status for r in results])
        self.assertEqual(1, self.receiver.stop_calls)

    def test_receiver_stopped_once_when_every_device_fails(self) -> None:
        self.network.unreachable.update({"SW01", "SW03"})
        devices = [_device("SW01"), _device("SW02", "Unknown"), _device("SW03")]

        results = self._orchestrator().run(devices)

        self.assertTrue(all(result.status.failed for result in results))
        self.assertEqual(1, self.receiver.start_calls)
        self.assertEqual(1, self.receiver.stop_calls)

    def test_timeout_marks_device_failed_without_archiving(self) -> None:
        results = self._orchestrator().run([_device("SW01")])

        self.assertEqual(DeviceStatus.TIMEOUT_FAILURE, results[0].status)
        self.assertAlmostEqual(10.0, self.clock.now, places=6)
        self.assertFalse((self.root / "SW01").exists())
        self.assertFalse((self.root / "261018 running-configs").exists())
        self.assertTrue(self.network.session_for("SW01").closed)

    def test_upload_after_timeout_is_too_late(self) -> None:
        self.network.uploads["SW01"] = (12.0, b"cfg")

        results = self._orchestrator().run([_device("SW01")])

        self.assertEqual(DeviceStatus.TIMEOUT_FAILURE, results[0].status)

    def test_send_failure_closes_session_and_continues(self) -> None:
        self.network.send_failures.add("SW01")
        self.network.uploads["SW03"] = (0.2, b"cfg")

        results = self._orchestrator().run([_device("SW01"), _device("SW03")])

        self.assertEqual([DeviceStatus.COMMAND_FAILURE, DeviceStatus.SUCCESS], [r.status for r in results])
        self.assertTrue(self.network.session_for("SW01").closed)

    def test_archive_failure_is_reported_per_device(self) -> None:
        self.network.uploads["SW01"] = (0.2, b"cfg")
        self.network.uploads["SW03"] = (0.2, b"cfg")
        (self.root / "SW01").write_text("blocks the device folder", encoding="utf-8")

        results = self._orchestrator().run([_device("SW01"), _device("SW03")])

        self.assertEqual(DeviceStatus.ARCHIVE_FAILURE, results[0].status)
        self.assertEqual("device-copy", results[0].stage)
        self.assertEqual(DeviceStatus.SUCCESS, results[1].status)

    def test_same_day_rerun_overwrites_device_copy(self) -> None:
        self.network.uploads["SW01"] = (0.2, b"first")
        self._orchestrator().run([_device("SW01")])

        self.receiver = FakeReceiver()
        self.network.uploads["SW01"] = (0.2, b"second")
        self._orchestrator().run([_device("SW01")])

        self.assertEqual(b"second", (self.root / "SW01" / "261018 SW01 running-config.txt").read_bytes())
        self.assertEqual(1, len(list((self.root / "261018 running-configs").iterdir())))

    def test_stale_upload_is_not_mistaken_for_new_one(self) -> None:
        (self.root / "261018 SW01 running-config.txt").write_bytes(b"stale")

        results = self._orchestrator().run([_device("SW01")])

        self.assertEqual(DeviceStatus.TIMEOUT_FAILURE, results[0].status)
        self.assertFalse((self.root / "SW01").exists())

    def test_custom_command_is_fire_and_forget(self) -> None:
        device = _device("SW01", function="write-memory", command="write memory")

        results = self._orchestrator().run([device])

        self.assertEqual(DeviceStatus.SENT, results[0].status)
        self.assertEqual(["write memory"], self.network.session_for("SW01").sent)
        self.assertEqual(0.0, self.clock.now)
        self.assertFalse((self.root / "SW01").exists())

    def test_custom_function_without_command_fails(self) -> None:
        results = self._orchestrator().run([_device("SW01", function="write-memory")])

        self.assertEqual(DeviceStatus.COMMAND_FAILURE, results[0].status)
        self.assertEqual([], self.network.session_for("SW01").sent)

    def test_backup_command_override_replaces_catalog(self) -> None:
        device = _device("SW01", "Unknown", command='copy startup-config tftp {server} "{filename}"')
        self.network.uploads["SW01"] = (0.2, b"cfg")

        results = self._orchestrator().run([device])

        self.assertEqual(DeviceStatus.SUCCESS, results[0].status)
        self.assertEqual(
            ['copy startup-config tftp 10.0.0.5 "261018 SW01 running-config.txt"'],
            self.network.session_for("SW01").sent,
        )

    def test_receiver_start_failure_aborts_run(self) -> None:
        self.receiver = FakeReceiver(ReceiverConfigMissing("tftpd32.ini missing"))
        orchestrator = self._orchestrator()

        with self.assertRaises(ReceiverConfigMissing):
            orchestrator.run([_device("SW01")])

        self.assertIs(RunState.FAILED, orchestrator.state)
        self.assertEqual([], self.network.sessions)
        self.assertEqual(0, self.receiver.stop_calls)

    def test_unexpected_error_still_stops_receiver(self) -> None:
        def broken_factory(device, credentials):
            raise RuntimeError("boom")

        orchestrator = self._orchestrator()
        orchestrator.session_factory = broken_factory

        with self.assertRaises(RuntimeError):
            orchestrator.run([_device("SW01")])

        self.assertEqual(1, self.receiver.stop_calls)
        self.assertIs(RunState.DONE, orchestrator.state)

    def test_cancellation_skips_remaining_devices(self) -> None:
        cancel = threading.Event()
        self.network.uploads["SW01"] = (0.2, b"cfg")
        orchestrator = self._orchestrator(cancel_event=cancel)
        original_factory = orchestrator.session_factory

        def cancelling_factory(device, credentials):
            cancel.set()
            return original_factory(device, credentials)

        orchestrator.session_factory = cancelling_factory

        results = orchestrator.run([_device("SW01"), _device("SW02"), _device("SW03")])

        self.assertEqual(
            [DeviceStatus.SUCCESS, DeviceStatus.SKIPPED, DeviceStatus.SKIPPED], [r.status for r in results]
        )
        self.assertEqual(1, self.receiver.stop_calls)


class ResolveBackupCommandTests(unittest.TestCase):
    def test_invalid_override_template_is_reported(self) -> None:
        device = _device("SW01", command="copy running-config tftp {host} {2}")

        command, reason = resolve_backup_command(device, CommandCatalog.default(), SERVER, "f.txt")

        self.assertIsNone(command)
        self.assertIn("invalid command template", reason)


if __name__ == "__main__":
    unittest.main()
