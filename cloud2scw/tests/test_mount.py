"""Tests for mount sessions over the NBD pool.

Covers:
  - Successful mount and idempotent teardown
  - Bounded retries across the whole pool
  - No leaked devices, volume groups or directories after failure
"""

import pytest

from cloud2scw.exceptions import MountError
from cloud2scw.storage.mount import MountSessionManager
from cloud2scw.storage.partitions import PartitionResolver


def _manager(nbd_host, runner, tmp_path, devices=8, retries=3):
    pool = nbd_host.pool(max_devices=devices)
    return MountSessionManager(
        pool,
        PartitionResolver(runner),
        runner,
        mount_retries=retries,
        retry_delay=0,
        mount_root=tmp_path / "mnt",
    )


@pytest.fixture
def image(tmp_path):
    path = tmp_path / "boot.qcow2"
    path.write_bytes(b"QFI\xfb")
    return path


# ═══════════════════════════════════════════════════════════════════
#  Mount / Unmount Tests
# ═══════════════════════════════════════════════════════════════════

class TestMountSession:
    def test_mount_first_partition(self, nbd_host, runner, filesystems, tmp_path, image):
        partition = str(nbd_host.dev_root / "nbd0p1")
        filesystems.types[partition] = "ext4"
        manager = _manager(nbd_host, runner, tmp_path)

        session = manager.mount(image)

        assert session.mounted
        assert session.device.index == 0
        assert session.partition == partition
        assert session.mount_dir.is_dir()
        assert session.mount_dir.parent == tmp_path / "mnt"
        assert runner.commands("mount")[0] == ["mount", session.partition, str(session.mount_dir)]
        manager.unmount(session)

    def test_unmount_releases_everything_once(self, nbd_host, runner, filesystems, tmp_path, image):
        filesystems.types["/dev/vg0/root"] = "xfs"
        filesystems.pvs = [(str(nbd_host.dev_root / "nbd0p2"), "vg0")]
        filesystems.lvs = [("root", "vg0", "/dev/vg0/root")]
        manager = _manager(nbd_host, runner, tmp_path)

        session = manager.mount(image)
        manager.unmount(session)
        calls_after_first = len(runner.calls)
        manager.unmount(session)

        assert session.cleaned_up
        assert not session.mount_dir.exists()
        assert nbd_host.connected() == []
        assert runner.commands("umount") == [["umount", str(session.mount_dir)]]
        assert runner.commands("vgchange", "-an") == [["vgchange", "-an", "vg0"]]
        assert len(runner.calls) == calls_after_first

    def test_session_context_manager(self, nbd_host, runner, filesystems, tmp_path, image):
        filesystems.types[str(nbd_host.dev_root / "nbd0")] = "ext4"
        manager = _manager(nbd_host, runner, tmp_path)

        with manager.session(image) as session:
            assert nbd_host.connected() == ["nbd0"]

        assert session.cleaned_up
        assert nbd_host.connected() == []

    def test_unmount_continues_after_umount_failure(self, nbd_host, runner, filesystems, tmp_path, image):
        filesystems.types[str(nbd_host.dev_root / "nbd0p1")] = "ext4"
        runner.on("umount", returncode=32, stderr="target is busy")
        manager = _manager(nbd_host, runner, tmp_path)

        session = manager.mount(image)
        manager.unmount(session)

        assert session.cleaned_up
        assert nbd_host.connected() == []

    def test_busy_devices_are_skipped(self, nbd_host, runner, filesystems, tmp_path, image):
        nbd_host.set_size("/dev/nbd0", 1024)
        filesystems.types[str(nbd_host.dev_root / "nbd1p1")] = "ext4"
        manager = _manager(nbd_host, runner, tmp_path)

        session = manager.mount(image)

        assert session.device.index == 1
        manager.unmount(session)
        assert nbd_host.connected() == ["nbd0"]

    def test_missing_image(self, nbd_host, runner, tmp_path):
        manager = _manager(nbd_host, runner, tmp_path)
        with pytest.raises(FileNotFoundError):
            manager.mount(tmp_path / "missing.qcow2")
        assert runner.calls == []


# ═══════════════════════════════════════════════════════════════════
#  Retry Bound Tests
# ═══════════════════════════════════════════════════════════════════

class TestMountRetries:
    def test_always_failing_mount_is_bounded(self, nbd_host, runner, filesystems, tmp_path, image):
        filesystems.types.update({
            str(nbd_host.dev_root / f"nbd{i}p1"): "ext4" for i in range(3)
        })
        runner.on("mount", returncode=32, stderr="wrong fs type")
        manager = _manager(nbd_host, runner, tmp_path, devices=3, retries=2)

        with pytest.raises(MountError) as exc_info:
            manager.mount(image)

        connects = [c for c in runner.commands("qemu-nbd") if c[1].startswith("--connect=")]
        assert len(connects) == 6
        assert nbd_host.connected() == []
        assert list((tmp_path / "mnt").iterdir()) == []
        assert exc_info.value.__cause__ is not None

    def test_no_filesystem_anywhere(self, nbd_host, runner, filesystems, tmp_path, image):
        manager = _manager(nbd_host, runner, tmp_path, devices=2, retries=3)

        with pytest.raises(MountError):
            manager.mount(image)

        assert runner.commands("mount") == []
        assert nbd_host.connected() == []
        assert list((tmp_path / "mnt").iterdir()) == []

    def test_recovers_on_second_attempt(self, nbd_host, runner, filesystems, tmp_path, image):
        from cloud2scw.utils.subprocess import CommandResult

        filesystems.types[str(nbd_host.dev_root / "nbd0p1")] = "ext4"
        attempts = []

        def flaky_mount(cmd):
            attempts.append(cmd)
            return CommandResult(32 if len(attempts) == 1 else 0)

        runner.on("mount", flaky_mount)
        manager = _manager(nbd_host, runner, tmp_path)

        session = manager.mount(image)

        assert session.mounted
        assert session.device.index == 0
        assert len(attempts) == 2
        manager.unmount(session)

    def test_no_sleep_after_final_attempt(self, nbd_host, runner, filesystems, tmp_path, image, monkeypatch):
        from cloud2scw.storage import mount as mount_module

        sleeps = []
        monkeypatch.setattr(mount_module.time, "sleep", sleeps.append)
        manager = _manager(nbd_host, runner, tmp_path, devices=2, retries=2)
        manager.retry_delay = 1.5

        with pytest.raises(MountError):
            manager.mount(image)

        assert [s for s in sleeps if s] == [1.5, 1.5, 1.5]


# ═══════════════════════════════════════════════════════════════════
#  Concurrent Caller Tests
# ═══════════════════════════════════════════════════════════════════

class TestConcurrentMounts:
    def test_parallel_mounts_get_distinct_devices(self, nbd_host, runner, filesystems, tmp_path):
        import threading

        filesystems.types.update({
            str(nbd_host.dev_root / f"nbd{i}p1"): "ext4" for i in range(2)
        })
        manager = _manager(nbd_host, runner, tmp_path, devices=2)
        images = []
        for name in ("a.raw", "b.raw"):
            path = tmp_path / name
            path.write_bytes(b"")
            images.append(path)

        sessions = []
        threads = [threading.Thread(target=lambda p=p: sessions.append(manager.mount(p))) for p in images]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(s.device.index for s in sessions) == [0, 1]
        assert nbd_host.connected() == ["nbd0", "nbd1"]
        for session in sessions:
            manager.unmount(session)
        assert nbd_host.connected() == []

    def test_failed_connect_never_releases_another_callers_device(
        self, nbd_host, runner, filesystems, tmp_path
    ):
        from cloud2scw.converter.disk import ImageFormat
        from cloud2scw.utils.subprocess import CommandResult

        first = tmp_path / "a.raw"
        second = tmp_path / "b.raw"
        first.write_bytes(b"")
        second.write_bytes(b"")

        def qemu_nbd(cmd):
            if cmd[1].startswith("--connect=") and cmd[-1] == str(first):
                return CommandResult(1, stderr="Failed to open a.raw")
            return nbd_host._qemu_nbd(cmd)
        runner.on("qemu-nbd", qemu_nbd)

        manager = _manager(nbd_host, runner, tmp_path, devices=1, retries=1)
        device = manager.pool.devices()[0]
        cleanup = manager.unmount
        claimed = []

        def unmount_after_other_caller_claims(session):
            # Runs once the pool lock is released: another caller takes the slot.
            if not claimed:
                claimed.append(manager.pool.claim(device, second, ImageFormat.RAW))
            cleanup(session)
        manager.unmount = unmount_after_other_caller_claims

        with pytest.raises(MountError):
            manager.mount(first)

        assert claimed == [True]
        assert nbd_host.connected() == ["nbd0"]
        assert device.image == second
