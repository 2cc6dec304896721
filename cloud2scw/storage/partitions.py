"""Find a mountable filesystem on a connected block device.

Logical volumes are preferred over raw partitions: a guest root on LVM sits
next to a small ``/boot`` partition that would otherwise be picked first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Union

from cloud2scw.exceptions import CommandError, PartitionNotFoundError
from cloud2scw.storage.nbd import DEFAULT_MAX_PARTITIONS, NBDDevice
from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandRunner

logger = get_logger(__name__)

# Substrings of LV names that usually hold the guest root filesystem
ROOT_LV_HINTS = ("root", "system")


@dataclass
class LogicalVolume:
    name: str
    vg_name: str
    path: str

    @property
    def looks_like_root(self) -> bool:
        lowered = self.name.lower()
        return any(hint in lowered for hint in ROOT_LV_HINTS)


@dataclass
class LogicalVolumeSet:
    """Volume groups activated for one device and the LVs they contain."""

    volume_groups: list[str] = field(default_factory=list)
    volumes: list[LogicalVolume] = field(default_factory=list)


@dataclass
class PartitionResolution:
    """A path that can be mounted, plus the VGs that must be deactivated later."""

    path: str
    volume_groups: list[str] = field(default_factory=list)
    logical_volume: bool = False


class PartitionResolver:
    """Resolves the best mountable path on a device.

    Search order:
    1. logical volumes whose name looks like a root volume
    2. any other logical volume with a filesystem
    3. raw partitions ``p1, 1, p2, 2, …`` up to ``max_partitions``
    4. the whole device
    """

    def __init__(self, runner: CommandRunner, max_partitions: int = DEFAULT_MAX_PARTITIONS):
        self.runner = runner
        self.max_partitions = max_partitions

    def has_filesystem(self, path: str) -> bool:
        """True when blkid reports a filesystem type for the path."""
        try:
            result = self.runner.run(["blkid", "-o", "value", "-s", "TYPE", path], check=False)
        except (CommandError, TimeoutError) as e:
            logger.debug(f"blkid failed on {path}: {e}")
            return False
        return result.success and bool(result.stdout.strip())

    def find_mountable_partition(self, device: Union[NBDDevice, str]) -> PartitionResolution:
        """Return the first mountable path on the device.

        Raises:
            PartitionNotFoundError: If nothing on the device carries a filesystem
        """
        dev_path = device.path if isinstance(device, NBDDevice) else str(device)

        lvm = self.activate_volume_groups(dev_path)
        ordered = sorted(lvm.volumes, key=lambda lv: not lv.looks_like_root)
        for lv in ordered:
            if self.has_filesystem(lv.path):
                logger.info(f"Using logical volume {lv.vg_name}/{lv.name} ({lv.path})")
                return PartitionResolution(lv.path, list(lvm.volume_groups), logical_volume=True)

        for candidate in self.partition_candidates(dev_path):
            if self.has_filesystem(candidate):
                logger.info(f"Using partition {candidate}")
                return PartitionResolution(candidate, list(lvm.volume_groups))

        self.deactivate(lvm.volume_groups)
        raise PartitionNotFoundError(f"No mountable filesystem found on {dev_path}")

    def partition_candidates(self, dev_path: str) -> list[str]:
        candidates = []
        for n in range(1, self.max_partitions + 1):
            candidates.append(f"{dev_path}p{n}")
            candidates.append(f"{dev_path}{n}")
        candidates.append(dev_path)
        return candidates

    # ── LVM ─────────────────────────────────────────────────────────

    def activate_volume_groups(self, dev_path: str) -> LogicalVolumeSet:
        """Activate every VG with a PV on this device and list its LVs."""
        lvm = LogicalVolumeSet()

        try:
            self.runner.run(["pvscan", "--cache"], check=False)
        except (CommandError, TimeoutError) as e:
            logger.debug(f"pvscan unavailable: {e}")
            return lvm

        for vg in self._volume_groups_on(dev_path):
            try:
                self.runner.run(["vgchange", "-ay", vg])
            except (CommandError, TimeoutError) as e:
                logger.warning(f"Failed to activate volume group {vg}: {e}")
                continue
            lvm.volume_groups.append(vg)

        if lvm.volume_groups:
            lvm.volumes = self._logical_volumes(lvm.volume_groups)
            logger.debug(
                f"Activated {', '.join(lvm.volume_groups)} on {dev_path}: "
                f"{[lv.name for lv in lvm.volumes]}"
            )
        return lvm

    def deactivate(self, volume_groups: list[str]) -> None:
        """Deactivate volume groups. Failures are logged, never raised."""
        for vg in volume_groups:
            try:
                self.runner.run(["vgchange", "-an", vg])
            except (CommandError, TimeoutError) as e:
                logger.warning(f"Failed to deactivate volume group {vg}: {e}")

    def _volume_groups_on(self, dev_path: str) -> list[str]:
        try:
            result = self.runner.run(
                ["pvs", "--noheadings", "--separator", "|", "-o", "pv_name,vg_name"],
                check=False,
            )
        except (CommandError, TimeoutError) as e:
            logger.debug(f"pvs unavailable: {e}")
            return []
        if not result.success:
            return []

        # Kernel naming: nbd0 → nbd0p1, sda → sda1
        part = r"p\d+" if dev_path[-1:].isdigit() else r"\d+"
        on_device = re.compile(rf"^{re.escape(dev_path)}({part})?$")
        vgs: list[str] = []
        for line in result.stdout.splitlines():
            parts = [p.strip() for p in line.split("|")]
            if len(parts) < 2 or not parts[1]:
                continue
            pv, vg = parts[0], parts[1]
            if on_device.match(pv) and vg not in vgs:
                vgs.append(vg)
        return vgs

    def _logical_volumes(self, volume_groups: list[str]) -> list[LogicalVolume]:
        try:
            result = self.runner.run(
                ["lvs", "--noheadings", "--separator", "|",
                 "-o", "lv_name,vg_name,lv_path", *volume_groups],
                check=False,
            )
        except (CommandError, TimeoutError) as e:
            logger.warning(f"lvs failed: {e}")
            return []
        if not result.success:
            return []

        volumes = []
        for line in result.stdout.splitlines():
            parts = [p.strip() for p in line.split("|")]
            if len(parts) < 2 or not parts[0]:
                continue
            name, vg = parts[0], parts[1]
            if vg not in volume_groups:
                continue
            path = parts[2] if len(parts) > 2 and parts[2] else f"/dev/{vg}/{name}"
            volumes.append(LogicalVolume(name=name, vg_name=vg, path=path))
        return volumes
