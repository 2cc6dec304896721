"""Scaleway Object Storage transit for boot images."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config
from botocore.exceptions import ClientError

from cloud2scw.utils.logging import get_logger

logger = get_logger(__name__)


class UploadProgress:
    """boto3 transfer callback that logs every 5%."""

    def __init__(self, total_size: int, callback: Optional[Callable[[int], None]] = None):
        self.total_size = max(total_size, 1)
        self.transferred = 0
        self.callback = callback
        self.last_logged_pct = -5.0

    def __call__(self, bytes_amount: int) -> None:
        self.transferred += bytes_amount
        if self.callback:
            self.callback(self.transferred)
        pct = self.transferred / self.total_size * 100
        if pct - self.last_logged_pct >= 5:
            logger.info(f"Upload progress: {pct:.0f}% ({self.transferred / (1024**3):.2f} GB)")
            self.last_logged_pct = pct


class ScalewayS3:
    """Uploads images to Scaleway Object Storage (S3-compatible, via boto3)."""

    def __init__(self, region: str, access_key: str, secret_key: str, client=None):
        self.region = region
        self.endpoint_url = f"https://s3.{region}.scw.cloud"

        self.client = client or boto3.client(
            "s3",
            endpoint_url=self.endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=Config(
                retries={"max_attempts": 3, "mode": "adaptive"},
                max_pool_connections=10,
            ),
        )

    def create_bucket_if_not_exists(self, bucket: str) -> None:
        """Create the transit bucket if it doesn't exist."""
        try:
            self.client.head_bucket(Bucket=bucket)
            logger.debug(f"Bucket '{bucket}' already exists")
        except ClientError as e:
            error_code = e.response["Error"]["Code"]
            if error_code in ("404", "NoSuchBucket"):
                logger.info(f"Creating bucket '{bucket}'...")
                self.client.create_bucket(Bucket=bucket)
            else:
                raise

    def upload_image(
        self,
        local_path: str | Path,
        bucket: str,
        key: str,
        progress_callback: Optional[Callable[[int], None]] = None,
    ) -> str:
        """Upload an image using boto3's managed multipart upload.

        Args:
            local_path: Path to local image file
            bucket: S3 bucket name
            key: Object key (path within bucket)
            progress_callback: Optional callback(bytes_transferred)

        Returns:
            S3 URL of the uploaded image
        """
        local_path = Path(local_path)
        if not local_path.exists():
            raise FileNotFoundError(f"Image file not found: {local_path}")

        file_size = local_path.stat().st_size
        logger.info(
            f"Uploading {local_path.name} ({file_size / (1024**3):.2f} GB) "
            f"to s3://{bucket}/{key}"
        )

        transfer_config = TransferConfig(
            multipart_threshold=64 * 1024 * 1024,
            multipart_chunksize=64 * 1024 * 1024,
            max_concurrency=4,
            use_threads=True,
        )

        self.client.upload_file(
            str(local_path),
            bucket,
            key,
            Config=transfer_config,
            Callback=UploadProgress(file_size, progress_callback),
        )

        url = f"{self.endpoint_url}/{bucket}/{key}"
        logger.info(f"Upload complete: {url}")
        return url

    def check_object_exists(self, bucket: str, key: str) -> bool:
        """Check if an object already exists in S3."""
        try:
            self.client.head_object(Bucket=bucket, Key=key)
            return True
        except ClientError:
            return False

    def delete_object(self, bucket: str, key: str) -> None:
        logger.info(f"Deleting s3://{bucket}/{key}")
        self.client.delete_object(Bucket=bucket, Key=key)
