"""Scaleway API operations for volumes, attachments and snapshots.

Uses the Block Storage API (v1) for volumes and snapshots, the Instance API
to attach Block Storage volumes (``sbs_volume``) to the migration host, and
the local metadata service to find out which server we are running on.

Every mutating call only initiates an operation. Callers observe completion
through the ``*_status`` helpers and ``wait_for_state``.
"""

from __future__ import annotations

from typing import Any, Optional

import requests

from cloud2scw.utils.logging import get_logger

logger = get_logger(__name__)

SCW_API_BASE = "https://api.scaleway.com"
SCW_METADATA_URL = "http://169.254.42.42"

VOLUME_FAULT_STATES = ("error", "deleted")
SNAPSHOT_FAULT_STATES = ("error", "deleted")
ATTACHMENT_FAULT_STATES = ("error",)


class ScalewayAPI:
    """Interact with Scaleway APIs for data-disk volumes and snapshots."""

    def __init__(
        self,
        secret_key: str,
        project_id: str,
        api_url: str = SCW_API_BASE,
        metadata_url: str = SCW_METADATA_URL,
        timeout: float = 30,
    ):
        self.project_id = project_id
        self.api_url = api_url.rstrip("/")
        self.metadata_url = metadata_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "X-Auth-Token": secret_key,
            "Content-Type": "application/json",
        })

    def _url_block(self, zone: str, path: str) -> str:
        """Block Storage API URL."""
        return f"{self.api_url}/block/v1/zones/{zone}{path}"

    def _url_instance(self, zone: str, path: str) -> str:
        """Instance API URL."""
        return f"{self.api_url}/instance/v1/zones/{zone}{path}"

    def _request(
        self, method: str, url: str, allow_missing: bool = False, **kwargs
    ) -> Optional[dict[str, Any]]:
        kwargs.setdefault("timeout", self.timeout)
        resp = self.session.request(method, url, **kwargs)
        if allow_missing and resp.status_code == 404:
            return None
        if not resp.ok:
            logger.error(f"API error {resp.status_code}: {resp.text[:500]}")
            resp.raise_for_status()
        if resp.status_code == 204 or not resp.content:
            return {}
        return resp.json()

    # ── Local identity ───────────────────────────────────────────

    def get_local_server(self) -> tuple[str, str]:
        """Return ``(server_id, zone)`` of the instance running this process."""
        resp = requests.get(
            f"{self.metadata_url}/conf", params={"format": "json"}, timeout=self.timeout
        )
        resp.raise_for_status()
        meta = resp.json()
        zone = meta.get("location", {}).get("zone_id") or meta.get("zone", "")
        logger.debug(f"Running on server {meta['id']} in {zone}")
        return meta["id"], zone

    # ── Volumes (Block Storage API) ──────────────────────────────

    def create_volume(
        self,
        zone: str,
        name: str,
        size_bytes: int,
        perf_iops: Optional[int] = None,
    ) -> dict:
        """Create an empty Block Storage volume.

        Args:
            zone: Scaleway zone (e.g. "fr-par-1")
            name: Volume name
            size_bytes: Volume size in bytes (whole GB)
            perf_iops: IOPS class (5000 or 15000), API default when omitted
        """
        url = self._url_block(zone, "/volumes")
        payload: dict[str, Any] = {
            "name": name,
            "project_id": self.project_id,
            "from_empty": {"size": size_bytes},
        }
        if perf_iops:
            payload["perf_iops"] = perf_iops

        logger.info(f"Creating volume '{name}' ({size_bytes // 10**9} GB) in {zone}")
        result = self._request("POST", url, json=payload)
        volume = result.get("volume", result)
        logger.info(f"Volume created: {volume.get('id', 'unknown')} "
                    f"(status: {volume.get('status', 'unknown')})")
        return volume

    def get_volume(self, zone: str, volume_id: str) -> Optional[dict]:
        """Get Block Storage volume details, or None if it no longer exists."""
        url = self._url_block(zone, f"/volumes/{volume_id}")
        result = self._request("GET", url, allow_missing=True)
        if result is None:
            return None
        return result.get("volume", result)

    def volume_status(self, zone: str, volume_id: str) -> str:
        volume = self.get_volume(zone, volume_id)
        if volume is None:
            return "deleted"
        return volume.get("status", "unknown")

    def delete_volume(self, zone: str, volume_id: str) -> None:
        url = self._url_block(zone, f"/volumes/{volume_id}")
        logger.info(f"Deleting volume {volume_id}")
        self._request("DELETE", url, allow_missing=True)

    # ── Attachments (Instance API) ───────────────────────────────

    def attach_volume(self, zone: str, server_id: str, volume_id: str) -> dict:
        url = self._url_instance(zone, f"/servers/{server_id}/attach-volume")
        payload = {"volume_id": volume_id, "volume_type": "sbs_volume"}
        logger.info(f"Attaching volume {volume_id} to server {server_id}")
        result = self._request("POST", url, json=payload)
        return result.get("server", result)

    def detach_volume(self, zone: str, server_id: str, volume_id: str) -> dict:
        url = self._url_instance(zone, f"/servers/{server_id}/detach-volume")
        logger.info(f"Detaching volume {volume_id} from server {server_id}")
        result = self._request("POST", url, json={"volume_id": volume_id})
        return result.get("server", result)

    def attachment_status(self, zone: str, server_id: str, volume_id: str) -> str:
        """State of the volume's attachment to a server.

        Derived from the volume ``references``; no reference to the server
        means the volume is detached from it.
        """
        volume = self.get_volume(zone, volume_id)
        if volume is None:
            return "detached"
        for ref in volume.get("references", []):
            if ref.get("product_resource_id") == server_id:
                return ref.get("status", "unknown")
        return "detached"

    # ── Snapshots (Block Storage API) ────────────────────────────

    def create_snapshot(self, zone: str, volume_id: str, name: str) -> dict:
        url = self._url_block(zone, "/snapshots")
        payload = {"volume_id": volume_id, "name": name, "project_id": self.project_id}
        logger.info(f"Creating snapshot '{name}' of volume {volume_id}")
        result = self._request("POST", url, json=payload)
        snapshot = result.get("snapshot", result)
        logger.info(f"Snapshot created: {snapshot.get('id', 'unknown')}")
        return snapshot

    def get_snapshot(self, zone: str, snapshot_id: str) -> Optional[dict]:
        """Get Block Storage snapshot details, or None if it no longer exists."""
        url = self._url_block(zone, f"/snapshots/{snapshot_id}")
        result = self._request("GET", url, allow_missing=True)
        if result is None:
            return None
        return result.get("snapshot", result)

    def snapshot_status(self, zone: str, snapshot_id: str) -> str:
        snapshot = self.get_snapshot(zone, snapshot_id)
        if snapshot is None:
            return "deleted"
        return snapshot.get("status", "unknown")

    def import_snapshot_from_s3(
        self,
        zone: str,
        name: str,
        bucket: str,
        key: str,
        size: Optional[int] = None,
    ) -> dict:
        """Import a qcow2 from Object Storage as a Block Storage snapshot.

        Uses: POST /block/v1/zones/{zone}/snapshots/import-from-object-storage

        Args:
            zone: Scaleway zone (e.g. "fr-par-1")
            name: Snapshot name
            bucket: S3 bucket name (must be same region)
            key: S3 object key
            size: Volume size in bytes (optional, defaults to qcow2 virtual size)
        """
        url = self._url_block(zone, "/snapshots/import-from-object-storage")
        payload: dict[str, Any] = {
            "name": name,
            "project_id": self.project_id,
            "bucket": bucket,
            "key": key,
        }
        if size:
            payload["size"] = size

        logger.info(f"Importing snapshot via Block Storage API from s3://{bucket}/{key}")
        result = self._request("POST", url, json=payload)
        snapshot = result.get("snapshot", result)
        logger.info(f"Snapshot import initiated: {snapshot.get('id', 'unknown')} "
                    f"(status: {snapshot.get('status', 'unknown')})")
        return snapshot
