"""Helpers for building and persisting machine-readable run summaries."""

from __future__ import annotations

import json
import logging
from collections import Counter
from pathlib import Path
from typing import Iterable

from swbackup.core.models import DeviceResult, DeviceStatus


def device_result_to_dict(result: DeviceResult) -> dict[str, object]:
    return {
        "hostname": result.hostname,
        "status": result.status.value,
        "path": str(result.path) if result.path else None,
        "error": result.error,
        "stage": result.stage,
    }


class RunSummaryBuilder:
    """Accumulate per-device results and store them as JSON."""

    def __init__(self, *, run_id: str, timestamp: str, devices_total: int = 0) -> None:
        self.run_id = run_id
        self.timestamp = timestamp
        self.devices_total = max(0, devices_total)
        self.status_counts: Counter[DeviceStatus] = Counter()
        self._devices: list[DeviceResult] = []

    @property
    def devices(self) -> list[DeviceResult]:
        return list(self._devices)

    @property
    def devices_failed(self) -> int:
        return sum(count for status, count in self.status_counts.items() if status.failed)

    def set_devices_total(self, total: int) -> None:
        self.devices_total = max(0, total)

    def add_device(self, result: DeviceResult) -> None:
        self._devices.append(result)
        self.status_counts[result.status] += 1

    def extend(self, results: Iterable[DeviceResult]) -> None:
        for result in results:
            self.add_device(result)

    def build(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "timestamp": self.timestamp,
            "totals": {
                "devices_total": self.devices_total,
                "devices_processed": len(self._devices) - self.status_counts[DeviceStatus.SKIPPED],
                "devices_success": self.status_counts[DeviceStatus.SUCCESS],
                "devices_sent": self.status_counts[DeviceStatus.SENT],
                "devices_failed": self.devices_failed,
                "devices_skipped": self.status_counts[DeviceStatus.SKIPPED],
            },
            "devices": [device_result_to_dict(device) for device in self._devices],
        }

    def log_totals(self, logger: logging.Logger) -> None:
        totals = self.build()["totals"]
        logger.info(
            "run finished total=%d success=%d sent=%d failed=%d skipped=%d",
            totals["devices_total"],
            totals["devices_success"],
            totals["devices_sent"],
            totals["devices_failed"],
            totals["devices_skipped"],
        )
        for result in self._devices:
            if result.status.failed:
                logger.error(
                    "failed status=%s error=\"%s\"",
                    result.status.value,
                    result.error or "-",
                    extra={"device": result.hostname},
                )

    def save(self, workdir: Path, logger: logging.Logger) -> Path:
        summary_dir = workdir / "summary"
        summary_dir.mkdir(parents=True, exist_ok=True)

        target = summary_dir / f"run_{self.run_id}.json"
        target.write_text(json.dumps(self.build(), indent=2, ensure_ascii=False), encoding="utf-8")

        logger.info("run_summary_json_saved path=%s", target)
        return target
