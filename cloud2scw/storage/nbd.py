"""NBD device pool: expose disk image files as local block devices.

Images are attached with ``qemu-nbd``. The connection state of a device is
never cached: it is always read from ``/sys/block/nbdN/size``, which is zero
while the device is free. The pool lock only covers the "pick a free device
and connect it" decision so two workers can never end up on the same device.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from cloud2scw.converter.disk import ImageFormat
from cloud2scw.exceptions import (
    CommandError,
    NBDConnectError,
    NBDDisconnectError,
    NBDError,
    NoFreeDeviceError,
)
from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandRunner

logger = get_logger(__name__)

DEFAULT_MAX_DEVICES = 8
DEFAULT_MAX_PARTITIONS = 4


@dataclass
class NBDDevice:
    """One slot of the pool (``/dev/nbd<index>``)."""

    index: int
    path: str
    image: Optional[Path] = None
    format: Optional[ImageFormat] = None

    @property
    def name(self) -> str:
        return f"nbd{self.index}"

    def __str__(self) -> str:
        return self.path


class NBDDevicePool:
    """Fixed pool of NBD devices shared by every mount and copy in the process."""

    def __init__(
        self,
        runner: CommandRunner,
        max_devices: int = DEFAULT_MAX_DEVICES,
        max_partitions: int = DEFAULT_MAX_PARTITIONS,
        connect_poll_attempts: int = 10,
        connect_poll_interval: float = 0.5,
        sys_root: str | Path = "/sys",
        dev_root: str | Path = "/dev",
    ):
        if max_devices < 1:
            raise ValueError("max_devices must be at least 1")
        self.runner = runner
        self.max_devices = max_devices
        self.max_partitions = max_partitions
        self.connect_poll_attempts = connect_poll_attempts
        self.connect_poll_interval = connect_poll_interval
        self.sys_root = Path(sys_root)
        self.dev_root = Path(dev_root)

        self._lock = threading.Lock()
        self._module_loaded = False
        self._devices = [
            NBDDevice(index=i, path=str(self.dev_root / f"nbd{i}"))
            for i in range(max_devices)
        ]

    # ── Kernel module ───────────────────────────────────────────────

    def ensure_module(self) -> None:
        """Load the nbd kernel module with the pool geometry if needed."""
        with self._lock:
            if self._module_loaded:
                return
            module_dir = self.sys_root / "module" / "nbd"
            if not module_dir.exists():
                logger.info(
                    f"Loading nbd module (nbds_max={self.max_devices}, "
                    f"max_part={self.max_partitions})"
                )
                self.runner.run([
                    "modprobe", "nbd",
                    f"nbds_max={self.max_devices}",
                    f"max_part={self.max_partitions}",
                ])
                if not self._poll(module_dir.exists):
                    raise NBDError("nbd module did not appear after modprobe")
            self._module_loaded = True

    # ── Device state ────────────────────────────────────────────────

    def devices(self) -> list[NBDDevice]:
        return list(self._devices)

    def _size_file(self, device: NBDDevice) -> Path:
        return self.sys_root / "block" / device.name / "size"

    def is_connected(self, device: NBDDevice) -> bool:
        """Live probe: a non-zero sysfs size means an image is attached."""
        try:
            return int(self._size_file(device).read_text().strip() or 0) > 0
        except FileNotFoundError:
            return False
        except ValueError:
            logger.warning(f"Unreadable size for {device.path}, treating as busy")
            return True

    def acquire_free_device(self) -> NBDDevice:
        """Return the first free device in index order.

        The result is only advisory unless the caller holds the pool lock;
        use ``connect_free`` or ``claim`` to reserve a device.
        """
        for device in self._devices:
            if not self.is_connected(device):
                return device
        raise NoFreeDeviceError(f"All {self.max_devices} NBD devices are in use")

    # ── Connect / disconnect ────────────────────────────────────────

    def connect(self, device: NBDDevice, image: str | Path, fmt: ImageFormat) -> None:
        """Attach an image to a device and wait until the kernel sees it.

        Raises:
            NBDConnectError: If qemu-nbd fails or the device never becomes ready
        """
        image = Path(image)
        logger.debug(f"Connecting {image.name} ({fmt.value}) to {device.path}")
        try:
            self.runner.run([
                "qemu-nbd", f"--connect={device.path}", "-f", fmt.value, str(image),
            ])
        except (CommandError, TimeoutError) as e:
            self._release_half_connected(device)
            raise NBDConnectError(f"qemu-nbd failed to connect {image} to {device.path}: {e}") from e

        if not self._poll(lambda: self.is_connected(device)):
            self._release_half_connected(device)
            raise NBDConnectError(
                f"{device.path} not ready after {self.connect_poll_attempts} checks"
            )

        device.image = image
        device.format = fmt

        try:
            self.runner.run(["partprobe", device.path], check=False)
        except CommandError as e:
            logger.debug(f"partprobe unavailable: {e}")

        logger.info(f"Connected {image.name} to {device.path}")

    def claim(self, device: NBDDevice, image: str | Path, fmt: ImageFormat) -> bool:
        """Connect an image to this specific device if it is free.

        Returns False when the device is already in use.
        """
        with self._lock:
            if self.is_connected(device):
                return False
            self.connect(device, image, fmt)
            return True

    def connect_free(self, image: str | Path, fmt: ImageFormat) -> NBDDevice:
        """Atomically pick the first free device and connect the image to it."""
        with self._lock:
            device = self.acquire_free_device()
            self.connect(device, image, fmt)
            return device

    @contextmanager
    def connected(self, image: str | Path, fmt: ImageFormat) -> Iterator[NBDDevice]:
        """Expose an image as a block device for the duration of the block."""
        device = self.connect_free(image, fmt)
        try:
            yield device
        finally:
            try:
                self.disconnect(device)
            except NBDDisconnectError as e:
                logger.warning(f"Failed to release {device.path}: {e}")

    def disconnect(self, device: NBDDevice) -> None:
        """Detach whatever image is connected to the device. No-op if free.

        Raises:
            NBDDisconnectError: If the device stays connected
        """
        if not self.is_connected(device):
            device.image = None
            device.format = None
            return

        logger.debug(f"Disconnecting {device.path}")
        try:
            self.runner.run(["qemu-nbd", "--disconnect", device.path])
        except (CommandError, TimeoutError) as e:
            raise NBDDisconnectError(f"qemu-nbd failed to disconnect {device.path}: {e}") from e

        if not self._poll(lambda: not self.is_connected(device)):
            raise NBDDisconnectError(f"{device.path} still connected after disconnect")

        device.image = None
        device.format = None
        logger.debug(f"Disconnected {device.path}")

    def _release_half_connected(self, device: NBDDevice) -> None:
        try:
            self.runner.run(["qemu-nbd", "--disconnect", device.path], check=False)
        except (CommandError, TimeoutError) as e:
            logger.warning(f"Cleanup disconnect of {device.path} failed: {e}")

    def _poll(self, predicate) -> bool:
        for attempt in range(self.connect_poll_attempts):
            if predicate():
                return True
            if attempt < self.connect_poll_attempts - 1:
                time.sleep(self.connect_poll_interval)
        return predicate()
