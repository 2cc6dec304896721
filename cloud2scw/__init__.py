"""Migrate cloud VM disks into Scaleway Block Storage."""

__version__ = "0.1.0"
