"""Tests for the command runner."""

import pytest

from cloud2scw.exceptions import CommandError
from cloud2scw.utils import subprocess as sp
from cloud2scw.utils.subprocess import CommandResult, CommandRunner, _redact_sensitive


class TestRedaction:
    def test_key_value(self):
        assert _redact_sensitive(["tool", "--token=abc"]) == ["tool", "--token=[REDACTED]"]

    def test_separate_value(self):
        assert _redact_sensitive(["tool", "--secret", "abc", "x"]) == ["tool", "--secret", "[REDACTED]", "x"]

    def test_plain_args_untouched(self):
        cmd = ["qemu-nbd", "--connect=/dev/nbd0", "-f", "qcow2", "disk.qcow2"]
        assert _redact_sensitive(cmd) == cmd


class TestCommandRunner:
    def test_sudo_prefix(self, monkeypatch):
        seen = []
        monkeypatch.setattr(sp, "run_command", lambda cmd, **kw: seen.append(cmd) or CommandResult(0))

        CommandRunner(use_sudo=True).run(["modprobe", "nbd"])
        CommandRunner(use_sudo=True).run(["script.sh"], env={"A": "1"})
        CommandRunner().run(["blkid"])

        assert seen == [
            ["sudo", "modprobe", "nbd"],
            ["sudo", "--preserve-env", "script.sh"],
            ["blkid"],
        ]

    def test_default_timeout(self, monkeypatch):
        seen = {}

        def fake(cmd, **kw):
            seen.update(kw)
            return CommandResult(0)
        monkeypatch.setattr(sp, "run_command", fake)

        CommandRunner(default_timeout=30).run(["dd"])
        assert seen["timeout"] == 30
        CommandRunner(default_timeout=30).run(["dd"], timeout=5)
        assert seen["timeout"] == 5

    def test_missing_binary(self):
        with pytest.raises(CommandError, match="Command not found"):
            sp.run_command(["cloud2scw-no-such-binary"])

    def test_failure_is_runtime_error(self, monkeypatch):
        class Completed:
            returncode = 3
            stdout = ""
            stderr = "bad things\n"

        monkeypatch.setattr(sp.subprocess, "run", lambda *a, **kw: Completed())

        with pytest.raises(RuntimeError) as exc_info:
            sp.run_command(["tool"])
        assert exc_info.value.returncode == 3
        assert "bad things" in str(exc_info.value)

        assert sp.run_command(["tool"], check=False).returncode == 3
