"""Configuration models for cloud2scw using Pydantic v2."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, SecretStr, model_validator


class ScalewayConfig(BaseModel):
    """Scaleway API and S3 configuration.

    Credentials are resolved from the environment when not given inline.
    They are only required by commands that talk to the Scaleway API.
    """

    access_key: Optional[str] = Field(None)
    access_key_env: Optional[str] = Field("SCW_ACCESS_KEY")
    secret_key: Optional[SecretStr] = Field(None)
    secret_key_env: Optional[str] = Field("SCW_SECRET_KEY")
    project_id: str = Field("", description="Scaleway Project ID")
    default_zone: str = Field("fr-par-1", description="Zone of the migration host and target volumes")
    s3_region: str = Field("fr-par", description="S3 region for object storage")
    s3_bucket: str = Field("cloud2scw-transit", description="S3 bucket for boot image transit")
    api_url: str = Field("https://api.scaleway.com", description="Scaleway API base URL")
    metadata_url: str = Field("http://169.254.42.42", description="Instance metadata service URL")

    @model_validator(mode="after")
    def resolve_credentials(self) -> "ScalewayConfig":
        if self.access_key is None and self.access_key_env:
            self.access_key = os.environ.get(self.access_key_env)
        if self.secret_key is None and self.secret_key_env:
            env_val = os.environ.get(self.secret_key_env)
            if env_val:
                self.secret_key = SecretStr(env_val)
        return self

    def require_credentials(self) -> None:
        """Raise ValueError when API credentials are missing."""
        if not self.secret_key:
            raise ValueError(f"Scaleway secret_key not found (check {self.secret_key_env} env var)")
        if not self.project_id:
            raise ValueError("Scaleway project_id is required (check SCW_DEFAULT_PROJECT_ID env var)")


class NBDConfig(BaseModel):
    """NBD device pool and mount settings."""

    max_devices: int = Field(8, ge=1, le=128, description="Number of /dev/nbdN devices (nbds_max)")
    max_partitions: int = Field(4, ge=1, le=64, description="Partitions per device (max_part)")
    connect_poll_attempts: int = Field(10, ge=1, description="Readiness checks after qemu-nbd --connect")
    connect_poll_interval: float = Field(0.5, ge=0, description="Seconds between readiness checks")
    mount_retries: int = Field(3, ge=1, description="Mount attempts per device")
    mount_retry_delay: float = Field(2.0, ge=0, description="Seconds between mount attempts")
    sys_root: Path = Field(Path("/sys"), description="sysfs root")
    dev_root: Path = Field(Path("/dev"), description="Device node root")
    mount_root: Optional[Path] = Field(None, description="Parent of temporary mount directories")
    use_sudo: bool = Field(False, description="Prefix system commands with sudo")


class WaitPolicy(BaseModel):
    """Polling bounds for one kind of asynchronous cloud operation."""

    poll_interval: float = Field(5.0, ge=0)
    max_attempts: int = Field(60, ge=1)


class WaitConfig(BaseModel):
    volume: WaitPolicy = Field(default_factory=lambda: WaitPolicy(poll_interval=5, max_attempts=60))
    attachment: WaitPolicy = Field(default_factory=lambda: WaitPolicy(poll_interval=5, max_attempts=60))
    snapshot: WaitPolicy = Field(default_factory=lambda: WaitPolicy(poll_interval=5, max_attempts=120))
    image: WaitPolicy = Field(default_factory=lambda: WaitPolicy(poll_interval=15, max_attempts=120))


class MigrationSettings(BaseModel):
    """Global migration behavior settings."""

    work_dir: Path = Field(Path("/var/lib/cloud2scw/work"), description="Working directory for state and temp files")
    export_dir: Path = Field(Path("/var/lib/cloud2scw/exports"), description="Directory holding exported disk images")
    boot_disk: Optional[str] = Field(None, description="Name of the boot disk export (first export when unset)")
    configure_script: Optional[Path] = Field(None, description="Guest configuration script run on the mounted boot disk")
    parallel_disks: int = Field(1, ge=1, le=8, description="Data disks processed concurrently")
    min_volume_size_gb: int = Field(5, ge=1, description="Smallest Block Storage volume to create")
    min_free_space_gb: int = Field(50, ge=0, description="Free space under work_dir below which prereq warns")
    device_settle_seconds: float = Field(3.0, ge=0, description="Delay between attach and block device listing")
    volume_prefix: str = Field("bv-", description="Prefix of temporary data volumes")
    snapshot_prefix: str = Field("ss-", description="Prefix of data disk snapshots")
    perf_iops: Optional[int] = Field(None, description="Block Storage IOPS class (5000 or 15000)")
    skip_prereq: bool = False
    skip_configure: bool = False
    skip_boot_import: bool = False
    skip_data_disks: bool = False


class AppConfig(BaseModel):
    """Root application configuration."""

    scaleway: ScalewayConfig = Field(default_factory=ScalewayConfig)
    nbd: NBDConfig = Field(default_factory=NBDConfig)
    waits: WaitConfig = Field(default_factory=WaitConfig)
    migration: MigrationSettings = Field(default_factory=MigrationSettings)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "AppConfig":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls(**data)

    @classmethod
    def from_env_and_args(cls, **overrides) -> "AppConfig":
        """Build config from environment variables with CLI overrides."""
        base: dict = {
            "scaleway": {
                "project_id": os.environ.get("SCW_DEFAULT_PROJECT_ID", ""),
                "default_zone": os.environ.get("SCW_DEFAULT_ZONE", "fr-par-1"),
                "s3_region": os.environ.get("SCW_S3_REGION", "fr-par"),
                "s3_bucket": os.environ.get("SCW_S3_BUCKET", "cloud2scw-transit"),
            },
        }
        if os.environ.get("CLOUD2SCW_WORK_DIR"):
            base["migration"] = {"work_dir": os.environ["CLOUD2SCW_WORK_DIR"]}
        # Deep merge overrides
        for key, value in overrides.items():
            if isinstance(value, dict) and key in base:
                base[key].update(value)
            else:
                base[key] = value
        return cls(**base)
