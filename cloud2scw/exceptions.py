"""Exception hierarchy for cloud2scw.

Errors fall into five families:

- resource exhaustion: no free NBD device, no mountable partition, pool
  exhausted while mounting
- operational failures: a single external command, connect or disconnect
  failed (retried locally by callers where a retry bound exists)
- asynchronous faults: a cloud resource reached a bad terminal state
- timeouts and cancellation of bounded waits
- invariant violations, such as an ambiguous block device diff
"""

from __future__ import annotations


class Cloud2ScwError(Exception):
    """Base class for all cloud2scw errors."""


class CommandError(Cloud2ScwError, RuntimeError):
    """An external command failed or could not be started."""

    def __init__(self, message: str, returncode: int | None = None, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


# ─── Block devices ───────────────────────────────────────────────


class NBDError(Cloud2ScwError):
    """Base class for NBD device failures."""


class NoFreeDeviceError(NBDError):
    """Every NBD device in the pool is connected."""


class NBDConnectError(NBDError):
    """An image could not be attached to an NBD device."""


class NBDDisconnectError(NBDError):
    """An NBD device did not return to the free state."""


class PartitionNotFoundError(Cloud2ScwError):
    """No partition or logical volume with a filesystem was found."""


class MountError(Cloud2ScwError):
    """An image could not be mounted on any device of the pool."""


class DeviceDiffError(Cloud2ScwError):
    """Attaching a volume did not produce exactly one new local block device."""

    def __init__(self, message: str, new_devices: list[str] | None = None):
        super().__init__(message)
        self.new_devices = list(new_devices or [])


# ─── Cloud resources ─────────────────────────────────────────────


class ResourceWaitError(Cloud2ScwError):
    """Base class for failed waits on asynchronous cloud resources."""

    def __init__(self, message: str, resource: str = "", state: str | None = None):
        super().__init__(message)
        self.resource = resource
        self.state = state


class ResourceFaultedError(ResourceWaitError):
    """The resource reached a terminal error state. Never retried."""


class ResourceTimeoutError(ResourceWaitError, TimeoutError):
    """The resource did not reach its target state within the allowed number of attempts."""


class WaitCancelledError(ResourceWaitError):
    """The wait was interrupted by the caller's cancellation signal."""
