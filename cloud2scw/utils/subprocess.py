"""Subprocess wrapper with logging, redaction and a pluggable runner."""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import Optional

from cloud2scw.exceptions import CommandError
from cloud2scw.utils.logging import get_logger

logger = get_logger(__name__)


class CommandResult:
    """Result of a subprocess execution."""

    def __init__(self, returncode: int, stdout: str = "", stderr: str = ""):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def __repr__(self) -> str:
        return f"CommandResult(returncode={self.returncode})"


def run_command(
    cmd: list[str],
    capture_output: bool = True,
    check: bool = True,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    cwd: str | None = None,
) -> CommandResult:
    """Run a system command with logging.

    Args:
        cmd: Command and arguments as list
        capture_output: Capture stdout/stderr instead of streaming
        check: Raise on non-zero exit code
        timeout: Command timeout in seconds
        env: Additional environment variables (merged with current env)
        cwd: Working directory

    Returns:
        CommandResult with returncode, stdout, stderr

    Raises:
        CommandError: If check=True and command fails, or the binary is missing
        TimeoutError: If command exceeds timeout
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    safe_cmd = _redact_sensitive(cmd)
    logger.debug(f"Running: {' '.join(safe_cmd)}")

    try:
        result = subprocess.run(
            cmd,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
            env=full_env,
            cwd=cwd,
        )
    except subprocess.TimeoutExpired:
        raise TimeoutError(f"Command timed out after {timeout}s: {' '.join(safe_cmd)}")
    except FileNotFoundError:
        raise CommandError(f"Command not found: {cmd[0]}")

    cmd_result = CommandResult(result.returncode, result.stdout or "", result.stderr or "")

    if check and not cmd_result.success:
        error_msg = cmd_result.stderr.strip() if cmd_result.stderr else f"exit code {cmd_result.returncode}"
        raise CommandError(
            f"Command failed ({' '.join(safe_cmd)}): {error_msg}",
            returncode=cmd_result.returncode,
            stderr=cmd_result.stderr,
        )

    return cmd_result


class CommandRunner:
    """Executes external tools on behalf of the device and pipeline layers.

    This is the only way the NBD broker, the partition resolver and the
    data-disk pipeline touch the host. Tests substitute an object with the
    same ``run`` signature.
    """

    def __init__(self, use_sudo: bool = False, default_timeout: Optional[float] = None):
        self.use_sudo = use_sudo
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: list[str],
        check: bool = True,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        if self.use_sudo and cmd and cmd[0] != "sudo":
            cmd = ["sudo", "--preserve-env", *cmd] if env else ["sudo", *cmd]
        return run_command(
            cmd,
            capture_output=True,
            check=check,
            timeout=timeout if timeout is not None else self.default_timeout,
            env=env,
        )


def check_tool_available(tool: str) -> bool:
    """Check if a system tool is available in PATH."""
    return shutil.which(tool) is not None


REQUIRED_TOOLS = {
    "qemu-img": "Disk image inspection and conversion",
    "qemu-nbd": "Expose disk images as NBD block devices",
    "blkid": "Filesystem signature detection",
    "lsblk": "Local block device enumeration",
    "dd": "Raw block copy into attached volumes",
    "mount": "Mount guest filesystems",
    "lvs": "LVM logical volume discovery (lvm2)",
}


def verify_required_tools(tools: dict[str, str] | None = None) -> dict[str, bool]:
    """Verify all required system tools are available.

    Returns dict of {tool_name: is_available}.
    """
    results = {}
    for tool, description in (tools or REQUIRED_TOOLS).items():
        available = check_tool_available(tool)
        results[tool] = available
        status = "✅" if available else "❌"
        logger.info(f"  {status} {tool}: {description}")

    return results


def _redact_sensitive(cmd: list[str]) -> list[str]:
    """Redact passwords and secrets from command args for logging."""
    sensitive_keys = {"password", "pwd", "secret", "token", "key"}
    redacted = []
    skip_next = False

    for i, arg in enumerate(cmd):
        if skip_next:
            redacted.append("[REDACTED]")
            skip_next = False
            continue

        lower = arg.lower()
        if any(k in lower for k in sensitive_keys) and "=" in arg:
            key, _ = arg.split("=", 1)
            redacted.append(f"{key}=[REDACTED]")
        elif any(k in lower for k in sensitive_keys) and i + 1 < len(cmd):
            redacted.append(arg)
            skip_next = True
        else:
            redacted.append(arg)

    return redacted
