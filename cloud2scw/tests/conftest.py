"""Shared fakes: a scripted command runner, an NBD sysfs tree and a Scaleway API."""

import json
import threading
from pathlib import Path

import pytest

from cloud2scw.exceptions import CommandError
from cloud2scw.utils.subprocess import CommandResult

GiB = 1024**3


class FakeRunner:
    """Records every command and answers from handlers keyed by command prefix.

    Unmatched commands succeed with empty output.
    """

    def __init__(self):
        self.calls = []
        self.envs = []
        self._handlers = []
        self._lock = threading.Lock()

    def on(self, prefix, handler=None, *, stdout="", stderr="", returncode=0):
        if isinstance(prefix, str):
            prefix = (prefix,)
        if handler is None:
            result = CommandResult(returncode, stdout, stderr)
            handler = lambda cmd: result  # noqa: E731
        self._handlers.append((tuple(prefix), handler))

    def run(self, cmd, check=True, timeout=None, env=None):
        cmd = [str(c) for c in cmd]
        with self._lock:
            self.calls.append(cmd)
            self.envs.append(env)

        result = None
        for prefix, handler in reversed(self._handlers):
            if tuple(cmd[:len(prefix)]) == prefix:
                result = handler(cmd)
                break
        if result is None:
            result = CommandResult(0)

        if check and not result.success:
            raise CommandError(
                f"Command failed ({' '.join(cmd)}): {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result

    def commands(self, *prefix):
        return [c for c in self.calls if tuple(c[:len(prefix)]) == prefix]


class FakeNBDHost:
    """sysfs tree whose nbd size files follow qemu-nbd connect/disconnect."""

    CONNECTED_SIZE = "20971520"

    def __init__(self, root: Path, runner: FakeRunner, devices: int = 8, module_loaded: bool = True):
        self.runner = runner
        self.sys_root = root / "sys"
        self.dev_root = root / "dev"
        self.devices = devices
        self.never_ready = set()
        self.failing = set()

        for i in range(devices):
            block = self.sys_root / "block" / f"nbd{i}"
            block.mkdir(parents=True)
            (block / "size").write_text("0\n")
        self.module_dir = self.sys_root / "module" / "nbd"
        if module_loaded:
            self.module_dir.mkdir(parents=True)

        runner.on("qemu-nbd", self._qemu_nbd)
        runner.on("modprobe", self._modprobe)

    def _qemu_nbd(self, cmd):
        if cmd[1].startswith("--connect="):
            dev = cmd[1].split("=", 1)[1]
            if dev in self.failing:
                return CommandResult(1, stderr="Failed to open /dev/nbd: Device busy")
            if dev not in self.never_ready:
                self.set_size(dev, self.CONNECTED_SIZE)
        elif cmd[1] == "--disconnect":
            self.set_size(cmd[2], "0")
        return CommandResult(0)

    def _modprobe(self, cmd):
        self.module_dir.mkdir(parents=True, exist_ok=True)
        return CommandResult(0)

    def set_size(self, dev_path, value):
        (self.sys_root / "block" / Path(dev_path).name / "size").write_text(f"{value}\n")

    def connected(self):
        return [
            f"nbd{i}" for i in range(self.devices)
            if (self.sys_root / "block" / f"nbd{i}" / "size").read_text().strip() != "0"
        ]

    def pool(self, **kwargs):
        from cloud2scw.storage.nbd import NBDDevicePool

        kwargs.setdefault("max_devices", self.devices)
        kwargs.setdefault("connect_poll_interval", 0)
        return NBDDevicePool(self.runner, sys_root=self.sys_root, dev_root=self.dev_root, **kwargs)


class FakeFilesystems:
    """Answers blkid, pvs and lvs from in-memory tables."""

    def __init__(self, runner: FakeRunner):
        self.types = {}
        self.pvs = []
        self.lvs = []
        runner.on("blkid", self._blkid)
        runner.on("pvs", lambda cmd: CommandResult(
            0, "".join(f"  {pv}|{vg}\n" for pv, vg in self.pvs)))
        runner.on("lvs", lambda cmd: CommandResult(
            0, "".join(f"  {lv}|{vg}|{path}\n" for lv, vg, path in self.lvs)))

    def _blkid(self, cmd):
        fs = self.types.get(cmd[-1])
        if fs is None:
            return CommandResult(2)
        return CommandResult(0, f"{fs}\n")


class FakeScalewayAPI:
    """In-memory Scaleway: volumes, attachments as local block devices, snapshots."""

    def __init__(self, runner: FakeRunner, local_devices=("vda",)):
        self.devices = list(local_devices)
        self.volumes = {}
        self.snapshots = {}
        self.attachments = {}
        self.deleted = []
        self.extra_devices_on_attach = 0
        self.failing_snapshots = set()
        self.stuck_volumes = set()
        self._counter = 0
        self._dev_counter = 0
        self._lock = threading.Lock()
        runner.on(("lsblk",), self._lsblk)

    def _next_id(self, kind):
        with self._lock:
            self._counter += 1
            return f"{kind}-{self._counter:04d}"

    def _next_device(self):
        with self._lock:
            self._dev_counter += 1
            return f"sd{chr(ord('a') + self._dev_counter)}"

    def _lsblk(self, cmd):
        with self._lock:
            devices = list(self.devices)
        return CommandResult(0, "".join(f"{d}\n" for d in devices))

    def get_local_server(self):
        return "server-1", "fr-par-1"

    def create_volume(self, zone, name, size_bytes, perf_iops=None):
        volume_id = self._next_id("vol")
        status = "creating" if name in self.stuck_volumes else "available"
        self.volumes[volume_id] = {"id": volume_id, "name": name, "size": size_bytes, "status": status}
        return dict(self.volumes[volume_id])

    def volume_status(self, zone, volume_id):
        volume = self.volumes.get(volume_id)
        return volume["status"] if volume else "deleted"

    def delete_volume(self, zone, volume_id):
        self.volumes.pop(volume_id, None)
        self.deleted.append(volume_id)

    def attach_volume(self, zone, server_id, volume_id):
        new = [self._next_device() for _ in range(1 + self.extra_devices_on_attach)]
        with self._lock:
            self.attachments[volume_id] = new[0]
            self.devices.extend(new)
        return {}

    def detach_volume(self, zone, server_id, volume_id):
        with self._lock:
            device = self.attachments.pop(volume_id)
            self.devices.remove(device)
        return {}

    def attachment_status(self, zone, server_id, volume_id):
        return "attached" if volume_id in self.attachments else "detached"

    def create_snapshot(self, zone, volume_id, name):
        snapshot_id = self._next_id("snap")
        volume = self.volumes[volume_id]
        status = "error" if name in self.failing_snapshots else "available"
        self.snapshots[snapshot_id] = {
            "id": snapshot_id, "name": name, "size": volume["size"], "status": status,
        }
        return dict(self.snapshots[snapshot_id])

    def snapshot_status(self, zone, snapshot_id):
        snapshot = self.snapshots.get(snapshot_id)
        return snapshot["status"] if snapshot else "deleted"

    def import_snapshot_from_s3(self, zone, name, bucket, key, size=None):
        snapshot_id = self._next_id("snap")
        self.snapshots[snapshot_id] = {"id": snapshot_id, "name": name, "size": size, "status": "available",
                                       "key": key}
        return dict(self.snapshots[snapshot_id])


def register_image_sizes(runner: FakeRunner, sizes: dict):
    """Answer ``qemu-img info`` with the virtual size of each image file name."""
    def info(cmd):
        path = Path(cmd[-1])
        return CommandResult(0, json.dumps({
            "filename": str(path), "format": "raw", "virtual-size": sizes.get(path.name, 0),
        }))
    runner.on(("qemu-img", "info"), info)

    def convert(cmd):
        Path(cmd[-1]).write_bytes(b"")
        return CommandResult(0)
    runner.on(("qemu-img", "convert"), convert)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def nbd_host(tmp_path, runner):
    return FakeNBDHost(tmp_path, runner)


@pytest.fixture
def filesystems(runner):
    return FakeFilesystems(runner)


@pytest.fixture
def scw(runner):
    return FakeScalewayAPI(runner)
