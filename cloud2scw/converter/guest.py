"""Guest OS configuration on a mounted boot disk.

The configuration itself (network files, agents, bootloader tweaks for the
target cloud) is provided as an external script. This module only runs it
against the mounted root filesystem.
"""

from __future__ import annotations

from pathlib import Path

from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandResult, CommandRunner

logger = get_logger(__name__)

MOUNT_DIR_ENV = "CLOUD2SCW_MOUNT_DIR"


def run_configuration_script(
    mount_dir: str | Path,
    script: str | Path,
    runner: CommandRunner,
    timeout: float | None = 1800,
) -> CommandResult:
    """Run a guest configuration script against a mounted filesystem.

    Args:
        mount_dir: Root of the mounted guest filesystem
        script: Executable script; receives mount_dir as first argument
        runner: Command runner used for execution
        timeout: Script timeout in seconds

    Returns:
        CommandResult of the script

    Raises:
        FileNotFoundError: If the script or the mount directory is missing
        CommandError: If the script exits non-zero
    """
    mount_dir = Path(mount_dir)
    script = Path(script)

    if not script.is_file():
        raise FileNotFoundError(f"Configuration script not found: {script}")
    if not mount_dir.is_dir():
        raise FileNotFoundError(f"Mount directory not found: {mount_dir}")

    logger.info(f"Running guest configuration {script.name} on {mount_dir}")
    result = runner.run(
        [str(script), str(mount_dir)],
        timeout=timeout,
        env={MOUNT_DIR_ENV: str(mount_dir)},
    )

    for line in result.stdout.splitlines():
        if line.strip():
            logger.info(f"  {line}")

    logger.info("[green]✅ Guest configuration applied[/green]")
    return result
