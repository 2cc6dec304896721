"""Tests for the NBD device pool.

Covers:
  - Live free/busy probing through sysfs
  - Connect readiness polling and cleanup of half-connected devices
  - Idempotent disconnect
  - Kernel module loading
  - Exclusive device selection under concurrency
"""

import threading

import pytest

from cloud2scw.converter.disk import ImageFormat
from cloud2scw.exceptions import NBDConnectError, NoFreeDeviceError


# ═══════════════════════════════════════════════════════════════════
#  Device State Tests
# ═══════════════════════════════════════════════════════════════════

class TestDeviceState:
    def test_devices_in_index_order(self, nbd_host):
        pool = nbd_host.pool()
        assert [d.path for d in pool.devices()] == [
            str(nbd_host.dev_root / f"nbd{i}") for i in range(8)
        ]

    def test_acquire_skips_busy_devices(self, nbd_host):
        pool = nbd_host.pool()
        nbd_host.set_size("/dev/nbd0", 1024)
        nbd_host.set_size("/dev/nbd1", 1024)
        assert pool.acquire_free_device().index == 2

    def test_no_free_device(self, nbd_host):
        pool = nbd_host.pool()
        for i in range(8):
            nbd_host.set_size(f"/dev/nbd{i}", 1024)
        with pytest.raises(NoFreeDeviceError):
            pool.acquire_free_device()

    def test_missing_sysfs_entry_is_free(self, tmp_path, runner):
        from cloud2scw.storage.nbd import NBDDevicePool

        pool = NBDDevicePool(runner, max_devices=2, sys_root=tmp_path / "sys")
        assert not pool.is_connected(pool.devices()[0])


# ═══════════════════════════════════════════════════════════════════
#  Connect / Disconnect Tests
# ═══════════════════════════════════════════════════════════════════

class TestConnect:
    def test_connect_marks_device_busy(self, nbd_host, runner, tmp_path):
        pool = nbd_host.pool()
        image = tmp_path / "disk.qcow2"
        device = pool.devices()[0]

        pool.connect(device, image, ImageFormat.QCOW2)

        assert pool.is_connected(device)
        assert device.image == image
        assert device.format is ImageFormat.QCOW2
        assert runner.commands("qemu-nbd")[0] == [
            "qemu-nbd", f"--connect={device.path}", "-f", "qcow2", str(image),
        ]
        assert runner.commands("partprobe", device.path)

    def test_connect_timeout_releases_device(self, nbd_host, runner, tmp_path):
        pool = nbd_host.pool(connect_poll_attempts=3)
        device = pool.devices()[0]
        nbd_host.never_ready.add(device.path)

        with pytest.raises(NBDConnectError):
            pool.connect(device, tmp_path / "disk.raw", ImageFormat.RAW)

        assert runner.commands("qemu-nbd", "--disconnect", device.path)
        assert device.image is None

    def test_qemu_nbd_failure(self, nbd_host, tmp_path):
        pool = nbd_host.pool()
        device = pool.devices()[0]
        nbd_host.failing.add(device.path)

        with pytest.raises(NBDConnectError):
            pool.connect(device, tmp_path / "disk.raw", ImageFormat.RAW)
        assert nbd_host.connected() == []

    def test_disconnect_free_device_is_noop(self, nbd_host, runner):
        pool = nbd_host.pool()
        pool.disconnect(pool.devices()[3])
        pool.disconnect(pool.devices()[3])
        assert runner.commands("qemu-nbd") == []

    def test_disconnect_twice(self, nbd_host, runner, tmp_path):
        pool = nbd_host.pool()
        device = pool.connect_free(tmp_path / "disk.raw", ImageFormat.RAW)

        pool.disconnect(device)
        pool.disconnect(device)

        assert len(runner.commands("qemu-nbd", "--disconnect")) == 1
        assert nbd_host.connected() == []

    def test_claim_busy_device(self, nbd_host, tmp_path):
        pool = nbd_host.pool()
        device = pool.devices()[0]
        nbd_host.set_size(device.path, 1024)
        assert pool.claim(device, tmp_path / "disk.raw", ImageFormat.RAW) is False

    def test_connected_context_always_disconnects(self, nbd_host, tmp_path):
        pool = nbd_host.pool()
        with pytest.raises(RuntimeError):
            with pool.connected(tmp_path / "disk.raw", ImageFormat.RAW) as device:
                assert nbd_host.connected() == [device.name]
                raise RuntimeError("copy failed")
        assert nbd_host.connected() == []


# ═══════════════════════════════════════════════════════════════════
#  Kernel Module Tests
# ═══════════════════════════════════════════════════════════════════

class TestKernelModule:
    def test_modprobe_with_pool_geometry(self, tmp_path, runner):
        from cloud2scw.tests.conftest import FakeNBDHost

        host = FakeNBDHost(tmp_path, runner, module_loaded=False)
        pool = host.pool()

        pool.ensure_module()
        pool.ensure_module()

        assert runner.commands("modprobe") == [["modprobe", "nbd", "nbds_max=8", "max_part=4"]]

    def test_loaded_module_not_reloaded(self, nbd_host, runner):
        nbd_host.pool().ensure_module()
        assert runner.commands("modprobe") == []


# ═══════════════════════════════════════════════════════════════════
#  Concurrency Tests
# ═══════════════════════════════════════════════════════════════════

class TestConcurrency:
    def test_parallel_connects_get_distinct_devices(self, nbd_host, tmp_path):
        pool = nbd_host.pool()
        results, errors = [], []
        start = threading.Barrier(8)

        def worker(n):
            start.wait()
            try:
                results.append(pool.connect_free(tmp_path / f"disk{n}.raw", ImageFormat.RAW).index)
            except Exception as e:  # pragma: no cover - surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sorted(results) == list(range(8))

    def test_pool_exhaustion_after_all_connected(self, nbd_host, tmp_path):
        pool = nbd_host.pool(max_devices=2)
        pool.connect_free(tmp_path / "a.raw", ImageFormat.RAW)
        pool.connect_free(tmp_path / "b.raw", ImageFormat.RAW)
        with pytest.raises(NoFreeDeviceError):
            pool.connect_free(tmp_path / "c.raw", ImageFormat.RAW)
