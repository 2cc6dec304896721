"""CLI entry point for cloud2scw."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from cloud2scw import __version__
from cloud2scw.config import AppConfig
from cloud2scw.utils.logging import add_log_file, set_log_level

console = Console()


def load_config(config_path: str | None) -> AppConfig:
    """Load configuration from file or environment."""
    try:
        if config_path:
            return AppConfig.from_yaml(config_path)
        return AppConfig.from_env_and_args()
    except Exception as e:
        console.print(f"[red]Error loading config: {e}[/red]")
        console.print("Provide a --config file or set environment variables.")
        sys.exit(1)


@click.group()
@click.version_option(version=__version__, prog_name="cloud2scw")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write logs to this file")
def main(verbose: bool, log_file: str | None):
    """Cloud VM disk migration to Scaleway Block Storage.

    Mount exported disk images through NBD, apply guest configuration and
    clone data disks into Block Storage snapshots.
    """
    if verbose:
        set_log_level("DEBUG")
    if log_file:
        add_log_file(log_file)


@main.command()
def check():
    """Check that the host tools needed for a migration are installed."""
    from cloud2scw.utils.subprocess import REQUIRED_TOOLS, check_tool_available

    table = Table(title="Host prerequisites")
    table.add_column("Tool", style="cyan", no_wrap=True)
    table.add_column("Purpose")
    table.add_column("Status", justify="center")

    missing = 0
    for tool, purpose in REQUIRED_TOOLS.items():
        ok = check_tool_available(tool)
        missing += not ok
        table.add_row(tool, purpose, "✅" if ok else "❌")

    console.print(table)
    if missing:
        console.print(f"\n[bold red]❌ {missing} tool(s) missing[/bold red]")
        sys.exit(1)
    console.print("\n[bold green]✅ All tools available[/bold green]")


@main.command()
@click.option("--image", required=True, type=click.Path(exists=True, dir_okay=False), help="Disk image to configure")
@click.option("--script", required=True, type=click.Path(exists=True, dir_okay=False), help="Configuration script")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def configure(image: str, script: str, config_path: str | None):
    """Mount a disk image and run a guest configuration script on it."""
    config = load_config(config_path)

    from cloud2scw.converter.guest import run_configuration_script
    from cloud2scw.pipeline.migration import MigrationWorkflow

    workflow = MigrationWorkflow(config)
    try:
        with workflow.mounts.session(image) as session:
            console.print(f"Mounted [cyan]{session.partition}[/cyan] on {session.mount_dir}")
            run_configuration_script(session.mount_dir, script, workflow.runner)
    except Exception as e:
        console.print(f"\n[bold red]❌ Configuration failed: {e}[/bold red]")
        sys.exit(1)

    console.print("\n[bold green]✅ Guest configuration applied[/bold green]")


@main.command("import-disks")
@click.option("--export-dir", required=True, type=click.Path(exists=True, file_okay=False), help="Directory with exported data disks")
@click.option("--exclude", multiple=True, help="Export name to leave out (repeatable)")
@click.option("--parallel", type=int, default=None, help="Disks processed concurrently")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def import_disks(export_dir: str, exclude: tuple[str, ...], parallel: int | None, config_path: str | None):
    """Clone data disk images into Scaleway Block Storage snapshots."""
    config = load_config(config_path)
    if parallel:
        config.migration.parallel_disks = parallel

    from cloud2scw.pipeline.data_disks import DataDiskImporter
    from cloud2scw.pipeline.exports import discover_disk_exports
    from cloud2scw.pipeline.migration import MigrationWorkflow

    exports = [e for e in discover_disk_exports(export_dir) if e.name not in exclude]
    if not exports:
        console.print("[yellow]No data disks found[/yellow]")
        return

    workflow = MigrationWorkflow(config)
    settings = config.migration
    try:
        server_id, zone = workflow.api.get_local_server()
    except Exception as e:
        console.print(f"[red]Cannot identify the local Scaleway server: {e}[/red]")
        sys.exit(1)

    importer = DataDiskImporter(
        workflow.api,
        workflow.pool,
        workflow.runner,
        workflow.converter,
        zone=zone or config.scaleway.default_zone,
        server_id=server_id,
        waits=config.waits,
        min_volume_size_gb=settings.min_volume_size_gb,
        device_settle_delay=settings.device_settle_seconds,
        parallel_disks=settings.parallel_disks,
        volume_prefix=settings.volume_prefix,
        snapshot_prefix=settings.snapshot_prefix,
        perf_iops=settings.perf_iops,
        work_dir=Path(settings.work_dir) / "import",
    )
    result = importer.run(exports)

    table = Table(title="Data disk import")
    table.add_column("Disk", style="cyan", no_wrap=True)
    table.add_column("Size (GB)", justify="right")
    table.add_column("Snapshot")
    table.add_column("Status")
    for record in result.records:
        status = record.status.value if not record.error else f"[red]{record.status.value}: {record.error}[/red]"
        table.add_row(record.name, str(record.volume_size_gb), record.snapshot_id or "-", status)
    console.print(table)

    if result.residual_volumes:
        console.print(f"[yellow]Volumes left behind: {', '.join(result.residual_volumes)}[/yellow]")
    if result.failed:
        console.print(f"\n[bold red]❌ {result.failed} disk(s) failed[/bold red]")
        sys.exit(1)
    console.print(f"\n[bold green]✅ {len(result.snapshots)} snapshot(s) created[/bold green]")


@main.command()
@click.option("--vm", required=True, help="Name of the migrated VM")
@click.option("--export-dir", type=click.Path(exists=True, file_okay=False), help="Directory with exported disks")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
@click.option("--skip-configure", is_flag=True, default=False, help="Leave the boot disk unchanged")
@click.option("--skip-boot-import", is_flag=True, default=False, help="Do not upload and import the boot disk")
@click.option("--skip-data-disks", is_flag=True, default=False, help="Do not import data disks")
@click.option("--dry-run", is_flag=True, default=False, help="Simulate without executing")
def migrate(vm: str, export_dir: str | None, config_path: str | None, skip_configure: bool,
            skip_boot_import: bool, skip_data_disks: bool, dry_run: bool):
    """Migrate the exported disks of one VM to Scaleway."""
    config = load_config(config_path)
    settings = config.migration
    settings.skip_configure = settings.skip_configure or skip_configure
    settings.skip_boot_import = settings.skip_boot_import or skip_boot_import
    settings.skip_data_disks = settings.skip_data_disks or skip_data_disks

    from cloud2scw.pipeline.migration import MigrationWorkflow

    workflow = MigrationWorkflow(config)

    if dry_run:
        console.print("[yellow]DRY RUN — No changes will be made[/yellow]")
        workflow.dry_run(vm, export_dir)
        return

    result = workflow.run(vm, export_dir)
    if result.success:
        console.print("\n[bold green]✅ Migration complete![/bold green]")
        if result.boot_snapshot_id:
            console.print(f"  Boot snapshot: {result.boot_snapshot_id}")
        for snapshot_id, name in result.snapshots:
            console.print(f"  Data snapshot: {name} ({snapshot_id})")
        if result.failed_disks:
            console.print(f"  [yellow]Failed data disks: {result.failed_disks}[/yellow]")
        console.print(f"  Manifest: {result.manifest_path}")
        console.print(f"  Duration: {result.duration}")
    else:
        console.print(f"\n[bold red]❌ Migration failed at stage '{result.failed_stage}'[/bold red]")
        console.print(f"  Error: {result.error}")
        console.print(f"  Run 'cloud2scw resume --migration-id {result.migration_id}' to retry")
        sys.exit(1)


@main.command()
@click.option("--migration-id", required=True, help="Migration ID to check")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def status(migration_id: str, config_path: str | None):
    """Check the status of a migration."""
    from cloud2scw.pipeline.state import MigrationStateStore

    config = load_config(config_path)
    store = MigrationStateStore(config.migration.work_dir)
    state = store.load(migration_id)

    if not state:
        console.print(f"[red]Migration '{migration_id}' not found[/red]")
        sys.exit(1)

    console.print(f"\n[bold]Migration: {state.migration_id}[/bold]")
    console.print(f"  VM: {state.vm_name}")
    console.print(f"  Zone: {state.zone}")
    console.print(f"  Stage: {state.current_stage}")
    console.print(f"  Started: {state.started_at}")
    console.print(f"  Completed stages: {', '.join(state.completed_stages)}")
    for snapshot in state.artifacts.get("data_snapshots", []):
        console.print(f"  Data snapshot: {snapshot['name']} ({snapshot['id']})")
    if state.error:
        console.print(f"  [red]Error: {state.error}[/red]")


@main.command()
@click.option("--migration-id", required=True, help="Migration ID to resume")
@click.option("--config", "config_path", type=click.Path(exists=True), help="Configuration file")
def resume(migration_id: str, config_path: str | None):
    """Resume a failed migration from the first incomplete stage."""
    config = load_config(config_path)

    from cloud2scw.pipeline.migration import MigrationWorkflow

    workflow = MigrationWorkflow(config)
    try:
        result = workflow.resume(migration_id)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)

    if result.success:
        console.print("\n[bold green]✅ Migration resumed and completed![/bold green]")
    else:
        console.print(f"\n[bold red]❌ Migration still failing at stage '{result.failed_stage}'[/bold red]")
        sys.exit(1)


if __name__ == "__main__":
    main()
