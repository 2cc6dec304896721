"""Local block device enumeration and raw copies."""

from __future__ import annotations

from pathlib import Path

from cloud2scw.exceptions import DeviceDiffError
from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandRunner

logger = get_logger(__name__)


def list_block_devices(runner: CommandRunner) -> set[str]:
    """Names of the whole-disk block devices currently visible (``sda``, ``vdb``…)."""
    result = runner.run(["lsblk", "-dn", "-o", "NAME"])
    return {line.strip() for line in result.stdout.splitlines() if line.strip()}


def detect_new_device(before: set[str], after: set[str]) -> str:
    """Return the device path that appeared between two listings.

    Raises:
        DeviceDiffError: If zero or several devices appeared
    """
    new = sorted(after - before)
    if len(new) != 1:
        detail = ", ".join(new) if new else "none"
        raise DeviceDiffError(
            f"Expected exactly one new block device after attach, found {len(new)} ({detail})",
            new_devices=new,
        )
    return f"/dev/{new[0]}"


def copy_raw(
    runner: CommandRunner,
    source: str | Path,
    target: str,
    block_size: str = "4M",
    timeout: float | None = None,
) -> None:
    """Copy raw bytes from an image file or block device onto a block device."""
    logger.info(f"Copying {source} → {target} (bs={block_size})")
    runner.run(
        ["dd", f"if={source}", f"of={target}", f"bs={block_size}", "conv=fsync"],
        timeout=timeout,
    )
    logger.info(f"[green]✅ Copy to {target} complete[/green]")
