"""Migration workflow: coordinates boot disk and data disk stages."""

from __future__ import annotations

import json
import shutil
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from cloud2scw.config import AppConfig
from cloud2scw.converter.disk import DiskConverter, ImageFormat
from cloud2scw.converter.guest import run_configuration_script
from cloud2scw.pipeline.data_disks import DataDiskImporter, volume_size_gb
from cloud2scw.pipeline.exports import DiskExport, discover_disk_exports
from cloud2scw.pipeline.state import MigrationState, MigrationStateStore
from cloud2scw.scaleway.api import SNAPSHOT_FAULT_STATES, ScalewayAPI
from cloud2scw.scaleway.s3 import ScalewayS3
from cloud2scw.scaleway.waiter import wait_for_state
from cloud2scw.storage.mount import MountSessionManager
from cloud2scw.storage.nbd import NBDDevicePool
from cloud2scw.storage.partitions import PartitionResolver
from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandRunner, verify_required_tools

logger = get_logger(__name__)


@dataclass
class MigrationResult:
    """Result of a migration execution."""
    success: bool
    migration_id: str
    vm_name: str
    boot_snapshot_id: Optional[str] = None
    snapshots: list[tuple[str, str]] = field(default_factory=list)
    failed_disks: int = 0
    manifest_path: Optional[str] = None
    duration: str = ""
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    completed_stages: list[str] = field(default_factory=list)


class MigrationWorkflow:
    """Orchestrates the migration of one VM's exported disks.

    Stages (executed in order):
    1. prereq              — Check that the host tools are installed
    2. configure_boot_disk — Mount the boot disk and run the guest configuration script
    3. upload_boot_image   — Upload the boot image to Object Storage
    4. import_boot_image   — Import it as a Block Storage snapshot
    5. import_data_disks   — Clone every data disk into a snapshot
    6. write_manifest      — Hand-off file for instance provisioning

    A failing stage stops the run; a failing data disk does not.
    """

    STAGES = [
        "prereq",
        "configure_boot_disk",
        "upload_boot_image",
        "import_boot_image",
        "import_data_disks",
        "write_manifest",
    ]

    def __init__(
        self,
        config: AppConfig,
        runner: Optional[CommandRunner] = None,
        api: Optional[ScalewayAPI] = None,
        s3: Optional[ScalewayS3] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.config = config
        self.runner = runner or CommandRunner(use_sudo=config.nbd.use_sudo)
        self.state_store = MigrationStateStore(config.migration.work_dir)
        self.cancel_event = cancel_event or threading.Event()
        self.converter = DiskConverter(self.runner)

        nbd = config.nbd
        self.pool = NBDDevicePool(
            self.runner,
            max_devices=nbd.max_devices,
            max_partitions=nbd.max_partitions,
            connect_poll_attempts=nbd.connect_poll_attempts,
            connect_poll_interval=nbd.connect_poll_interval,
            sys_root=nbd.sys_root,
            dev_root=nbd.dev_root,
        )
        self.mounts = MountSessionManager(
            self.pool,
            PartitionResolver(self.runner, nbd.max_partitions),
            self.runner,
            mount_retries=nbd.mount_retries,
            retry_delay=nbd.mount_retry_delay,
            mount_root=nbd.mount_root,
        )
        self._api = api
        self._s3 = s3

    @property
    def api(self) -> ScalewayAPI:
        if self._api is None:
            scw = self.config.scaleway
            scw.require_credentials()
            self._api = ScalewayAPI(
                scw.secret_key.get_secret_value(),
                scw.project_id,
                api_url=scw.api_url,
                metadata_url=scw.metadata_url,
            )
        return self._api

    @property
    def s3(self) -> ScalewayS3:
        if self._s3 is None:
            scw = self.config.scaleway
            scw.require_credentials()
            if not scw.access_key:
                raise ValueError(f"Scaleway access_key not found (check {scw.access_key_env} env var)")
            self._s3 = ScalewayS3(scw.s3_region, scw.access_key, scw.secret_key.get_secret_value())
        return self._s3

    def stages_to_run(self) -> list[str]:
        settings = self.config.migration
        skipped = set()
        if settings.skip_prereq:
            skipped.add("prereq")
        if settings.skip_configure:
            skipped.add("configure_boot_disk")
        if settings.skip_boot_import:
            skipped.update({"upload_boot_image", "import_boot_image"})
        if settings.skip_data_disks:
            skipped.add("import_data_disks")
        return [s for s in self.STAGES if s not in skipped]

    def run(self, vm_name: str, export_dir: str | Path | None = None) -> MigrationResult:
        """Execute a full migration for the disks of one VM.

        Args:
            vm_name: Name used for snapshots, S3 keys and the manifest
            export_dir: Directory with the exported images (config default when omitted)
        """
        state = MigrationState(
            migration_id=str(uuid.uuid4())[:8],
            vm_name=vm_name,
            export_dir=str(export_dir or self.config.migration.export_dir),
            zone=self.config.scaleway.default_zone,
            started_at=datetime.now(),
        )
        self.state_store.save(state)

        logger.info(f"[bold]Starting migration {state.migration_id}[/bold]: "
                    f"{vm_name} from {state.export_dir} → {state.zone}")
        return self._run_stages(state, self.stages_to_run())

    def resume(self, migration_id: str) -> MigrationResult:
        """Resume a migration from the first incomplete stage.

        Data disks that failed in an earlier attempt are retried; disks that
        already have a snapshot are kept.
        """
        state = self.state_store.load(migration_id)
        if not state:
            raise ValueError(f"Migration '{migration_id}' not found")

        logger.info(f"Resuming migration {migration_id} for VM '{state.vm_name}'")
        failed_disks = state.artifacts.get("failed_disks", 0)
        if failed_disks:
            logger.info(f"Retrying {failed_disks} failed data disk(s)")
            state.completed_stages = [
                s for s in state.completed_stages if s not in ("import_data_disks", "write_manifest")
            ]
        if state.completed_stages:
            logger.info(f"Completed stages: {', '.join(state.completed_stages)}")

        remaining = [s for s in self.stages_to_run() if s not in state.completed_stages]
        state.error = None
        return self._run_stages(state, remaining, resumed=True)

    def dry_run(self, vm_name: str, export_dir: str | Path | None = None) -> None:
        """Show what a migration would do without executing any stage."""
        export_dir = Path(export_dir or self.config.migration.export_dir)
        logger.info(f"[yellow]DRY RUN for VM '{vm_name}'[/yellow]")
        boot, data = self._split_exports(discover_disk_exports(export_dir))
        logger.info(f"Boot disk: {boot.path.name if boot else 'none'}")
        for export in data:
            logger.info(f"Data disk: {export.path.name} ({export.format.value})")
        logger.info("Stages that would execute:")
        selected = self.stages_to_run()
        for i, stage in enumerate(self.STAGES, 1):
            if stage in selected:
                logger.info(f"  {i}. {stage}")
            else:
                logger.info(f"  {i}. {stage} [dim](skipped)[/dim]")

    def _run_stages(self, state: MigrationState, stages: list[str], resumed: bool = False) -> MigrationResult:
        start_time = time.time()

        for stage_name in stages:
            state.current_stage = stage_name
            self.state_store.save(state)

            suffix = " (resumed)" if resumed else ""
            logger.info(f"[cyan]▶ Stage: {stage_name}[/cyan]{suffix}")
            try:
                self._execute_stage(stage_name, state)
                state.mark_stage_complete(stage_name)
                self.state_store.save(state)
                logger.info(f"[green]✓ Stage {stage_name} complete[/green]")

            except Exception as e:
                elapsed = time.time() - start_time
                state.error = str(e)
                self.state_store.save(state)

                logger.error(f"[red]✗ Stage {stage_name} failed: {e}[/red]")
                return self._result(state, elapsed, failed_stage=stage_name, error=str(e))

        elapsed = time.time() - start_time
        logger.info(f"[bold green]Migration {state.migration_id} complete in {elapsed:.0f}s[/bold green]")
        return self._result(state, elapsed)

    def _result(
        self,
        state: MigrationState,
        elapsed: float,
        failed_stage: Optional[str] = None,
        error: Optional[str] = None,
    ) -> MigrationResult:
        return MigrationResult(
            success=failed_stage is None,
            migration_id=state.migration_id,
            vm_name=state.vm_name,
            boot_snapshot_id=state.artifacts.get("boot_snapshot_id"),
            snapshots=[(s["id"], s["name"]) for s in state.artifacts.get("data_snapshots", [])],
            failed_disks=state.artifacts.get("failed_disks", 0),
            manifest_path=state.artifacts.get("manifest_path"),
            duration=f"{elapsed:.0f}s",
            failed_stage=failed_stage,
            error=error,
            completed_stages=list(state.completed_stages),
        )

    def _execute_stage(self, stage: str, state: MigrationState) -> None:
        """Execute a single pipeline stage.

        Each stage method records its outputs in state.artifacts for use by
        subsequent stages and by resume.
        """
        handler = getattr(self, f"_stage_{stage}", None)
        if handler is None:
            raise NotImplementedError(f"Stage '{stage}' not implemented")
        handler(state)

    def _split_exports(self, exports: list[DiskExport]) -> tuple[Optional[DiskExport], list[DiskExport]]:
        """Separate the boot disk from the data disks."""
        if not exports:
            return None, []
        wanted = self.config.migration.boot_disk
        if wanted:
            for export in exports:
                if export.name == wanted or export.path.name == wanted:
                    return export, [e for e in exports if e is not export]
            raise ValueError(f"Boot disk '{wanted}' not found in exports")
        return exports[0], exports[1:]

    def _boot_export(self, state: MigrationState) -> DiskExport:
        boot, _ = self._split_exports(discover_disk_exports(state.export_dir))
        if boot is None:
            raise FileNotFoundError(f"No disk exports found in {state.export_dir}")
        return boot

    # ─── Stage implementations ───────────────────────────────────────

    def _stage_prereq(self, state: MigrationState) -> None:
        """Check that every host tool is installed and warn on low disk space."""
        results = verify_required_tools()
        missing = [tool for tool, ok in results.items() if not ok]
        if missing:
            raise RuntimeError(f"Missing required tools: {', '.join(missing)}")
        self._check_free_space()

    def _check_free_space(self) -> None:
        settings = self.config.migration
        work_dir = Path(settings.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        free_gb = shutil.disk_usage(work_dir).free / 1024**3
        if free_gb < settings.min_free_space_gb:
            logger.warning(
                f"[yellow]Only {free_gb:.1f} GB free under {work_dir}, "
                f"{settings.min_free_space_gb} GB recommended[/yellow]"
            )
        else:
            logger.info(f"Available disk space under {work_dir}: {free_gb:.0f} GB")

    def _stage_configure_boot_disk(self, state: MigrationState) -> None:
        """Mount the boot disk and apply the guest configuration script."""
        boot = self._boot_export(state)
        state.artifacts["boot_disk"] = boot.name

        script = self.config.migration.configure_script
        if not script:
            logger.info("No configuration script set, leaving boot disk unchanged")
            return

        with self.mounts.session(boot.path, boot.format) as session:
            run_configuration_script(session.mount_dir, script, self.runner)

    def _stage_upload_boot_image(self, state: MigrationState) -> None:
        """Upload the boot disk to Object Storage as qcow2."""
        boot = self._boot_export(state)
        bucket = self.config.scaleway.s3_bucket
        key = f"{state.vm_name}/{state.migration_id}/{boot.name}.qcow2"
        state.artifacts["boot_disk_size_gb"] = volume_size_gb(
            self.converter.virtual_size(boot.path), self.config.migration.min_volume_size_gb
        )

        self.s3.create_bucket_if_not_exists(bucket)
        if self.s3.check_object_exists(bucket, key):
            logger.info(f"s3://{bucket}/{key} already uploaded, skipping")
            state.artifacts["boot_s3_key"] = key
            return

        image = boot.path
        if boot.format is not ImageFormat.QCOW2:
            work_dir = Path(self.config.migration.work_dir) / state.migration_id
            image = self.converter.convert(
                boot.path, work_dir / f"{boot.name}.qcow2",
                output_format=ImageFormat.QCOW2, input_format=boot.format, compress=True,
            )
        try:
            self.s3.upload_image(image, bucket, key)
        finally:
            if image != boot.path:
                image.unlink(missing_ok=True)
        state.artifacts["boot_s3_key"] = key

    def _stage_import_boot_image(self, state: MigrationState) -> None:
        """Import the uploaded boot image as a Block Storage snapshot."""
        key = state.artifacts.get("boot_s3_key")
        if not key:
            raise RuntimeError("Boot image was not uploaded (missing boot_s3_key)")

        snapshot = self.api.import_snapshot_from_s3(
            state.zone,
            f"{state.vm_name}-boot",
            self.config.scaleway.s3_bucket,
            key,
        )
        snapshot_id = snapshot["id"]
        policy = self.config.waits.image
        wait_for_state(
            lambda: self.api.snapshot_status(state.zone, snapshot_id),
            "available",
            poll_interval=policy.poll_interval,
            max_attempts=policy.max_attempts,
            fault_states=SNAPSHOT_FAULT_STATES,
            cancel_event=self.cancel_event,
            resource=f"snapshot {snapshot_id}",
        )
        state.artifacts["boot_snapshot_id"] = snapshot_id
        state.artifacts["boot_snapshot_zone"] = state.zone
        logger.info(f"Boot snapshot {snapshot_id} is available")

        try:
            self.s3.delete_object(self.config.scaleway.s3_bucket, key)
        except Exception as e:
            logger.warning(f"Could not delete transit object {key}: {e}")

    def _stage_import_data_disks(self, state: MigrationState) -> None:
        """Clone every data disk into a Block Storage snapshot.

        Disks that already have a snapshot from an earlier attempt of the
        same migration are not cloned again.
        """
        _, data = self._split_exports(discover_disk_exports(state.export_dir))
        done = state.snapshotted_disks()
        pending = [export for export in data if export.name not in done]
        if done:
            logger.info(f"Keeping {len(done)} data disk snapshot(s) from a previous attempt")
        if not pending:
            if not data:
                logger.info("No data disks to import")
            self._record_data_disks(state, data, done, [])
            return

        server_id, zone = self.api.get_local_server()
        boot_zone = state.artifacts.get("boot_snapshot_zone")
        if boot_zone and zone and zone != boot_zone:
            raise RuntimeError(
                f"Migration host is in {zone} but the boot snapshot is in {boot_zone}; "
                f"data disks can only be cloned in the host zone"
            )
        state.zone = zone or state.zone
        settings = self.config.migration

        importer = DataDiskImporter(
            self.api,
            self.pool,
            self.runner,
            self.converter,
            zone=state.zone,
            server_id=server_id,
            waits=self.config.waits,
            min_volume_size_gb=settings.min_volume_size_gb,
            device_settle_delay=settings.device_settle_seconds,
            parallel_disks=settings.parallel_disks,
            volume_prefix=settings.volume_prefix,
            snapshot_prefix=settings.snapshot_prefix,
            perf_iops=settings.perf_iops,
            work_dir=Path(settings.work_dir) / state.migration_id,
            cancel_event=self.cancel_event,
        )
        result = importer.run(pending)

        self._record_data_disks(state, data, done, [r.to_dict() for r in result.records])
        if result.residual_volumes:
            residual = state.artifacts.get("residual_volumes", [])
            state.artifacts["residual_volumes"] = residual + result.residual_volumes

    @staticmethod
    def _record_data_disks(
        state: MigrationState,
        data: list[DiskExport],
        done: dict[str, dict],
        fresh: list[dict],
    ) -> None:
        """Merge earlier and new disk records, in export order."""
        by_name = {**done, **{record["name"]: record for record in fresh}}
        records = [by_name[export.name] for export in data if export.name in by_name]

        state.artifacts["data_disks"] = records
        state.artifacts["data_snapshots"] = [
            {"id": r["snapshot_id"], "name": r["snapshot_name"]}
            for r in records if r["status"] == "snapshotted"
        ]
        state.artifacts["failed_disks"] = sum(1 for r in records if r["status"] == "failed")

    def _stage_write_manifest(self, state: MigrationState) -> None:
        """Write the JSON hand-off consumed by instance provisioning."""
        boot_size = state.artifacts.get("boot_disk_size_gb")
        if boot_size is None or "boot_disk" not in state.artifacts:
            boot = self._boot_export(state)
            state.artifacts["boot_disk"] = boot.name
            boot_size = volume_size_gb(
                self.converter.virtual_size(boot.path), self.config.migration.min_volume_size_gb
            )

        manifest = {
            "migration_id": state.migration_id,
            "vm_name": state.vm_name,
            "zone": state.zone,
            "boot_disk": {
                "name": state.artifacts.get("boot_disk"),
                "size_gb": boot_size,
                "snapshot_id": state.artifacts.get("boot_snapshot_id"),
                "zone": state.artifacts.get("boot_snapshot_zone"),
            },
            "data_snapshots": state.artifacts.get("data_snapshots", []),
            "failed_disks": state.artifacts.get("failed_disks", 0),
        }

        manifest_dir = Path(self.config.migration.work_dir) / "manifests"
        manifest_dir.mkdir(parents=True, exist_ok=True)
        path = manifest_dir / f"{state.migration_id}.json"
        with open(path, "w") as f:
            json.dump(manifest, f, indent=2)

        state.artifacts["manifest_path"] = str(path)
        logger.info(f"Manifest written to {path}")
