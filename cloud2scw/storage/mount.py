"""Mount disk images through the NBD pool.

A mount session walks Idle → DeviceAcquired → Connected → PartitionResolved →
Mounted. Any failure on the way tears down exactly what was built in that
attempt, so a failed ``mount`` leaves no connected device, active volume group
or stray directory behind.
"""

from __future__ import annotations

import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional

from cloud2scw.converter.disk import ImageFormat
from cloud2scw.exceptions import Cloud2ScwError, MountError, NBDDisconnectError
from cloud2scw.storage.nbd import NBDDevice, NBDDevicePool
from cloud2scw.storage.partitions import PartitionResolver
from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandRunner

logger = get_logger(__name__)


@dataclass
class MountSession:
    """A mounted image. Close it with ``MountSessionManager.unmount``."""

    device: NBDDevice
    image: Path
    partition: Optional[str] = None
    mount_dir: Optional[Path] = None
    volume_groups: list[str] = field(default_factory=list)
    connected: bool = False
    mounted: bool = False
    cleaned_up: bool = False


class MountSessionManager:
    """Mounts images with bounded retries across the whole device pool."""

    def __init__(
        self,
        pool: NBDDevicePool,
        resolver: PartitionResolver,
        runner: CommandRunner,
        mount_retries: int = 3,
        retry_delay: float = 2.0,
        mount_root: str | Path | None = None,
    ):
        self.pool = pool
        self.resolver = resolver
        self.runner = runner
        self.mount_retries = max(1, mount_retries)
        self.retry_delay = retry_delay
        self.mount_root = Path(mount_root) if mount_root else None

    def mount(self, image: str | Path, fmt: ImageFormat | None = None) -> MountSession:
        """Mount the first usable filesystem of an image.

        Each device of the pool gets ``mount_retries`` attempts before the
        next one is tried; devices already in use are skipped.

        Raises:
            FileNotFoundError: If the image does not exist
            MountError: If every device and attempt failed
        """
        image = Path(image)
        if not image.exists():
            raise FileNotFoundError(f"Image not found: {image}")
        fmt = fmt or ImageFormat.from_path(image)

        self.pool.ensure_module()
        if self.mount_root:
            self.mount_root.mkdir(parents=True, exist_ok=True)

        last_error: Exception | None = None
        devices = self.pool.devices()
        for device in devices:
            for attempt in range(1, self.mount_retries + 1):
                session = MountSession(device=device, image=image)
                try:
                    if not self.pool.claim(device, image, fmt):
                        logger.debug(f"{device.path} is busy, trying next device")
                        break
                    session.connected = True
                    session.mount_dir = Path(
                        tempfile.mkdtemp(prefix="cloud2scw-mount-", dir=self.mount_root)
                    )
                    resolution = self.resolver.find_mountable_partition(device)
                    session.partition = resolution.path
                    session.volume_groups = resolution.volume_groups

                    self.runner.run(["mount", session.partition, str(session.mount_dir)])
                    session.mounted = True
                    logger.info(
                        f"Mounted {image.name} ({session.partition}) on {session.mount_dir}"
                    )
                    return session
                except (Cloud2ScwError, OSError) as e:
                    last_error = e
                    logger.warning(
                        f"Mount attempt {attempt}/{self.mount_retries} on {device.path} failed: {e}"
                    )
                    self.unmount(session)
                    is_last = device is devices[-1] and attempt == self.mount_retries
                    if self.retry_delay and not is_last:
                        time.sleep(self.retry_delay)

        raise MountError(
            f"Could not mount {image} on any of {self.pool.max_devices} NBD devices"
        ) from last_error

    def unmount(self, session: MountSession) -> None:
        """Tear a session down. Safe to call more than once.

        Every step runs even if an earlier one failed; failures are logged.
        """
        if session.cleaned_up:
            return

        if session.mounted and session.mount_dir:
            try:
                self.runner.run(["umount", str(session.mount_dir)])
                session.mounted = False
            except (Cloud2ScwError, TimeoutError) as e:
                logger.warning(f"Failed to unmount {session.mount_dir}: {e}")

        if session.volume_groups:
            self.resolver.deactivate(session.volume_groups)

        # A device this session never connected may belong to another caller.
        if session.connected:
            try:
                self.pool.disconnect(session.device)
                session.connected = False
            except NBDDisconnectError as e:
                logger.warning(f"Failed to disconnect {session.device.path}: {e}")

        if session.mount_dir:
            try:
                os.rmdir(session.mount_dir)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove mount directory {session.mount_dir}: {e}")

        session.cleaned_up = True
        logger.debug(f"Released mount session for {session.image.name}")

    @contextmanager
    def session(self, image: str | Path, fmt: ImageFormat | None = None) -> Iterator[MountSession]:
        """Mount an image for the duration of the block."""
        session = self.mount(image, fmt)
        try:
            yield session
        finally:
            self.unmount(session)
