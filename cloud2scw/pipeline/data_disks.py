"""Data-disk clone pipeline.

Each exported data disk is copied byte for byte into a fresh Block Storage
volume attached to the migration host, then snapshotted. The snapshots are
what the target instance is later built from; the volumes are temporary and
deleted once every disk has been processed.

Per disk:
  convert (VHD only) → size → create volume → list devices → attach →
  diff devices → dd → detach → snapshot

Disks are independent: a failure is recorded on that disk and the pipeline
moves on to the next one.
"""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from cloud2scw.config import WaitConfig, WaitPolicy
from cloud2scw.converter.disk import DiskConverter, ImageFormat
from cloud2scw.pipeline.exports import DiskExport
from cloud2scw.scaleway.api import (
    ATTACHMENT_FAULT_STATES,
    SNAPSHOT_FAULT_STATES,
    VOLUME_FAULT_STATES,
    ScalewayAPI,
)
from cloud2scw.scaleway.waiter import wait_for_state
from cloud2scw.storage.blockdev import copy_raw, detect_new_device, list_block_devices
from cloud2scw.storage.nbd import NBDDevicePool
from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandRunner

logger = get_logger(__name__)

GB = 10**9


class DiskStatus(str, Enum):
    PENDING = "pending"
    COPIED = "copied"
    SNAPSHOTTED = "snapshotted"
    FAILED = "failed"


@dataclass
class MigrationDiskRecord:
    """Progress and outcome of one data disk."""

    name: str
    image_path: Path
    image_format: ImageFormat
    volume_id: Optional[str] = None
    volume_size_gb: int = 0
    snapshot_id: Optional[str] = None
    snapshot_name: Optional[str] = None
    status: DiskStatus = DiskStatus.PENDING
    error: Optional[str] = None

    @classmethod
    def from_export(cls, export: DiskExport) -> "MigrationDiskRecord":
        return cls(name=export.name, image_path=export.path, image_format=export.format)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "image_path": str(self.image_path),
            "image_format": self.image_format.value,
            "volume_id": self.volume_id,
            "volume_size_gb": self.volume_size_gb,
            "snapshot_id": self.snapshot_id,
            "snapshot_name": self.snapshot_name,
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class ImportResult:
    records: list[MigrationDiskRecord] = field(default_factory=list)
    residual_volumes: list[str] = field(default_factory=list)

    @property
    def snapshots(self) -> list[tuple[str, str]]:
        """``(snapshot_id, snapshot_name)`` of every successful disk, in input order."""
        return [
            (r.snapshot_id, r.snapshot_name)
            for r in self.records
            if r.status is DiskStatus.SNAPSHOTTED
        ]

    @property
    def failed(self) -> int:
        return sum(1 for r in self.records if r.status is DiskStatus.FAILED)


def volume_size_gb(size_bytes: int, min_size_gb: int = 1) -> int:
    """Whole GB needed to hold ``size_bytes``, never below the minimum."""
    return max(-(-size_bytes // GB), min_size_gb)


class DataDiskImporter:
    """Clones data disk images into Block Storage snapshots."""

    def __init__(
        self,
        api: ScalewayAPI,
        pool: NBDDevicePool,
        runner: CommandRunner,
        converter: Optional[DiskConverter] = None,
        *,
        zone: str,
        server_id: str,
        waits: Optional[WaitConfig] = None,
        min_volume_size_gb: int = 5,
        device_settle_delay: float = 3.0,
        parallel_disks: int = 1,
        volume_prefix: str = "bv-",
        snapshot_prefix: str = "ss-",
        perf_iops: Optional[int] = None,
        work_dir: Optional[Path] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.api = api
        self.pool = pool
        self.runner = runner
        self.converter = converter or DiskConverter(runner)
        self.zone = zone
        self.server_id = server_id
        self.waits = waits or WaitConfig()
        self.min_volume_size_gb = min_volume_size_gb
        self.device_settle_delay = device_settle_delay
        self.parallel_disks = max(1, parallel_disks)
        self.volume_prefix = volume_prefix
        self.snapshot_prefix = snapshot_prefix
        self.perf_iops = perf_iops
        self.work_dir = Path(work_dir) if work_dir else None
        self.cancel_event = cancel_event or threading.Event()

        self._attach_lock = threading.Lock()
        self._volumes_lock = threading.Lock()
        self._created_volumes: list[str] = []

    def run(self, exports: Iterable[DiskExport]) -> ImportResult:
        """Process every export, then delete the temporary volumes."""
        records = [MigrationDiskRecord.from_export(e) for e in exports]
        logger.info(f"Importing {len(records)} data disk(s) into {self.zone}")

        if self.parallel_disks > 1 and len(records) > 1:
            with ThreadPoolExecutor(max_workers=self.parallel_disks, thread_name_prefix="disk") as executor:
                list(executor.map(self._import_disk, records))
        else:
            for record in records:
                self._import_disk(record)

        result = ImportResult(records=records, residual_volumes=self._delete_volumes())

        ok = len(result.snapshots)
        if result.failed:
            logger.warning(f"Data disks: {ok} snapshotted, {result.failed} failed")
            for record in records:
                if record.status is DiskStatus.FAILED:
                    logger.warning(f"  ✗ {record.name}: {record.error}")
        else:
            logger.info(f"[green]✅ Data disks: {ok} snapshotted[/green]")
        return result

    # ── Per-disk pipeline ───────────────────────────────────────────

    def _import_disk(self, record: MigrationDiskRecord) -> None:
        logger.info(f"[cyan]▶ Data disk: {record.name}[/cyan]")
        try:
            self._process(record)
        except Exception as e:
            # One disk never aborts the others
            record.status = DiskStatus.FAILED
            record.error = str(e)
            logger.error(f"Data disk {record.name} failed: {e}")

    def _process(self, record: MigrationDiskRecord) -> None:
        source, fmt = record.image_path, record.image_format
        converted: Optional[Path] = None
        if fmt is ImageFormat.VPC:
            out_dir = self.work_dir or record.image_path.parent
            converted = self.converter.convert(
                source, out_dir / f"{record.name}.raw",
                output_format=ImageFormat.RAW, input_format=ImageFormat.VPC,
            )
            source, fmt = converted, ImageFormat.RAW

        try:
            self._clone(record, source, fmt)
        finally:
            if converted is not None:
                converted.unlink(missing_ok=True)

    def _clone(self, record: MigrationDiskRecord, source: Path, fmt: ImageFormat) -> None:
        size = self.converter.virtual_size(source)
        record.volume_size_gb = volume_size_gb(size, self.min_volume_size_gb)

        volume = self.api.create_volume(
            self.zone,
            f"{self.volume_prefix}{record.name}",
            record.volume_size_gb * GB,
            perf_iops=self.perf_iops,
        )
        volume_id = volume["id"]
        record.volume_id = volume_id
        with self._volumes_lock:
            self._created_volumes.append(volume_id)

        self._wait(
            lambda: self.api.volume_status(self.zone, volume_id),
            "available", self.waits.volume, VOLUME_FAULT_STATES, f"volume {volume_id}",
        )

        attached = False
        try:
            with self._attach_lock:
                before = list_block_devices(self.runner)
                self.api.attach_volume(self.zone, self.server_id, volume_id)
                attached = True
                self._wait(
                    lambda: self.api.attachment_status(self.zone, self.server_id, volume_id),
                    "attached", self.waits.attachment, ATTACHMENT_FAULT_STATES,
                    f"attachment of {volume_id}",
                )
                if self.device_settle_delay:
                    self.cancel_event.wait(self.device_settle_delay)
                target = detect_new_device(before, list_block_devices(self.runner))
            logger.info(f"Volume {volume_id} appeared as {target}")

            self._copy(source, fmt, target)
            record.status = DiskStatus.COPIED
        except Exception:
            if attached:
                self._detach_quietly(volume_id)
            raise

        self._detach(volume_id)

        record.snapshot_name = f"{self.snapshot_prefix}{record.name}"
        snapshot = self.api.create_snapshot(self.zone, volume_id, record.snapshot_name)
        record.snapshot_id = snapshot["id"]
        self._wait(
            lambda: self.api.snapshot_status(self.zone, record.snapshot_id),
            "available", self.waits.snapshot, SNAPSHOT_FAULT_STATES,
            f"snapshot {record.snapshot_id}",
        )
        record.status = DiskStatus.SNAPSHOTTED
        logger.info(f"[green]✅ {record.name} → snapshot {record.snapshot_name}[/green]")

    def _copy(self, source: Path, fmt: ImageFormat, target: str) -> None:
        if fmt is ImageFormat.RAW:
            copy_raw(self.runner, source, target)
            return
        self.pool.ensure_module()
        with self.pool.connected(source, fmt) as device:
            copy_raw(self.runner, device.path, target)

    def _detach(self, volume_id: str) -> None:
        self.api.detach_volume(self.zone, self.server_id, volume_id)
        self._wait(
            lambda: self.api.attachment_status(self.zone, self.server_id, volume_id),
            "detached", self.waits.attachment, ATTACHMENT_FAULT_STATES,
            f"detachment of {volume_id}",
        )

    def _detach_quietly(self, volume_id: str) -> None:
        try:
            self._detach(volume_id)
        except Exception as e:
            logger.warning(f"Failed to detach volume {volume_id} after error: {e}")

    # ── Cleanup ─────────────────────────────────────────────────────

    def _delete_volumes(self) -> list[str]:
        """Delete every volume created by this run. Returns the ones left behind."""
        with self._volumes_lock:
            volumes = list(self._created_volumes)

        residual = []
        for volume_id in volumes:
            try:
                self.api.delete_volume(self.zone, volume_id)
                self._wait(
                    lambda: self.api.volume_status(self.zone, volume_id),
                    "deleted", self.waits.volume, (), f"volume {volume_id}",
                )
            except Exception as e:
                logger.warning(f"Failed to delete volume {volume_id}: {e}")
                residual.append(volume_id)

        if volumes and not residual:
            logger.info(f"Deleted {len(volumes)} temporary volume(s)")
        return residual

    def _wait(
        self,
        fetch: Callable[[], str],
        target: str,
        policy: WaitPolicy,
        faults: Iterable[str],
        resource: str,
    ) -> str:
        return wait_for_state(
            fetch,
            target,
            poll_interval=policy.poll_interval,
            max_attempts=policy.max_attempts,
            fault_states=faults,
            cancel_event=self.cancel_event,
            resource=resource,
        )
