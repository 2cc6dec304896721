"""Disk image inspection and conversion using qemu-img."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path

from cloud2scw.utils.logging import get_logger
from cloud2scw.utils.subprocess import CommandRunner

logger = get_logger(__name__)


class ImageFormat(str, Enum):
    """Image formats understood by qemu-img and qemu-nbd."""

    RAW = "raw"
    QCOW2 = "qcow2"
    VPC = "vpc"

    @classmethod
    def from_path(cls, path: str | Path) -> "ImageFormat":
        """Derive the format from a file suffix.

        Raises:
            ValueError: If the suffix is not a known image extension
        """
        suffix = Path(path).suffix.lower()
        try:
            return _SUFFIXES[suffix]
        except KeyError:
            raise ValueError(f"Unknown disk image format for {path} (suffix '{suffix}')")

    @property
    def is_copy_on_write(self) -> bool:
        return self is not ImageFormat.RAW


_SUFFIXES = {
    ".raw": ImageFormat.RAW,
    ".img": ImageFormat.RAW,
    ".qcow2": ImageFormat.QCOW2,
    ".vhd": ImageFormat.VPC,
    ".vpc": ImageFormat.VPC,
}


class DiskConverter:
    """Inspects and converts exported disk images.

    Uses qemu-img which supports:
    - fixed and dynamic VHD (``vpc``) as exported by Azure
    - qcow2 with optional compression for Object Storage upload
    - raw images for block-level copies
    """

    def __init__(self, runner: CommandRunner | None = None):
        self.runner = runner or CommandRunner()

    def convert(
        self,
        input_path: str | Path,
        output_path: str | Path,
        output_format: ImageFormat = ImageFormat.RAW,
        input_format: ImageFormat | None = None,
        compress: bool = False,
    ) -> Path:
        """Convert a disk image to another format.

        Args:
            input_path: Path to source image
            output_path: Path for the converted image
            output_format: Target format (raw or qcow2)
            input_format: Source format, derived from the suffix when omitted
            compress: Enable qcow2 compression (ignored for raw output)

        Returns:
            Path to the created image

        Raises:
            FileNotFoundError: If input file doesn't exist
            CommandError: If qemu-img fails
        """
        input_path = Path(input_path)
        output_path = Path(output_path)

        if not input_path.exists():
            raise FileNotFoundError(f"Input image not found: {input_path}")

        input_format = input_format or ImageFormat.from_path(input_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        cmd = [
            "qemu-img", "convert",
            "-f", input_format.value,
            "-O", output_format.value,
        ]
        if compress and output_format is ImageFormat.QCOW2:
            cmd.append("-c")
        cmd.extend([str(input_path), str(output_path)])

        logger.info(
            f"Converting {input_path.name} ({input_format.value}) → "
            f"{output_path.name} ({output_format.value})"
        )
        self.runner.run(cmd)

        logger.info(f"Conversion complete: {output_path}")
        return output_path

    def get_info(self, image_path: str | Path) -> dict:
        """Get image metadata using qemu-img info.

        Returns dict with keys: filename, format, virtual-size, actual-size, etc.
        """
        image_path = Path(image_path)
        if not image_path.exists():
            raise FileNotFoundError(f"Image not found: {image_path}")

        result = self.runner.run(["qemu-img", "info", "--output=json", str(image_path)])

        try:
            return json.loads(result.stdout)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse qemu-img info output: {e}")
            return {"filename": str(image_path), "format": "unknown"}

    def virtual_size(self, image_path: str | Path) -> int:
        """Logical size of the guest disk in bytes.

        Falls back to the file size when qemu-img cannot report it.
        """
        image_path = Path(image_path)
        try:
            size = int(self.get_info(image_path).get("virtual-size", 0))
        except (RuntimeError, TimeoutError, ValueError) as e:
            logger.warning(f"qemu-img info failed for {image_path.name}: {e}")
            size = 0

        if size <= 0:
            size = image_path.stat().st_size
            logger.debug(f"Using file size for {image_path.name}: {size} bytes")
        return size

    def check(self, image_path: str | Path) -> bool:
        """Verify integrity of a qcow2 image.

        Returns True if image is healthy.
        """
        image_path = Path(image_path)
        if not image_path.exists():
            return False

        result = self.runner.run(["qemu-img", "check", str(image_path)], check=False)
        # 0 = clean, 1 = leaked clusters (not fatal), 2+ = corruption
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            logger.warning(f"Image has leaks (fixable): {image_path}")
            return True
        logger.error(f"Image check failed (code {result.returncode}): {result.stderr}")
        return False
