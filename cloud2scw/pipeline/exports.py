"""Disk images exported from the source cloud."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from cloud2scw.converter.disk import ImageFormat
from cloud2scw.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DiskExport:
    """One exported disk image file."""

    name: str
    path: Path
    format: ImageFormat

    @classmethod
    def from_path(cls, path: str | Path) -> "DiskExport":
        path = Path(path)
        return cls(name=path.stem, path=path, format=ImageFormat.from_path(path))


def discover_disk_exports(export_dir: str | Path) -> list[DiskExport]:
    """List the disk images of an export directory, sorted by name.

    Files with an unknown suffix are skipped.
    """
    export_dir = Path(export_dir)
    if not export_dir.is_dir():
        raise FileNotFoundError(f"Export directory not found: {export_dir}")

    exports = []
    for path in sorted(export_dir.iterdir()):
        if not path.is_file():
            continue
        try:
            exports.append(DiskExport.from_path(path))
        except ValueError:
            logger.debug(f"Skipping {path.name}: not a disk image")

    logger.info(f"Found {len(exports)} disk export(s) in {export_dir}")
    return exports
