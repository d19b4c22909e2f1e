"""Tests for ssh argv construction and the command runners."""

from __future__ import annotations

import sys

import pytest

from conftest import FakeRunner, make_profile
from dockreach.commands import (
    CommandResult,
    LocalCommandRunner,
    SshCommandRunner,
    build_ssh_argv,
    read_remote_file,
)
from dockreach.errors import OperationTimeoutError, RemoteCommandError

_SSH_MOD = "dockreach.commands"


class TestBuildSshArgv:
    def test_key_auth(self):
        profile = make_profile(identity_file="/home/me/.ssh/id_ed25519")
        argv, env = build_ssh_argv(profile, "docker ps")
        assert argv[0] == "ssh"
        assert "StrictHostKeyChecking=no" in argv
        assert "UserKnownHostsFile=/dev/null" in argv
        assert "BatchMode=yes" in argv
        assert argv[argv.index("-i") + 1] == "/home/me/.ssh/id_ed25519"
        assert argv[-2:] == ["deployer@prod.example.com", "docker ps"]
        assert env == {}

    def test_default_port_omitted(self):
        argv, _ = build_ssh_argv(make_profile())
        assert "-p" not in argv
        assert argv[-1] == "deployer@prod.example.com"

    def test_custom_port(self):
        argv, _ = build_ssh_argv(make_profile(port=2222))
        assert argv[argv.index("-p") + 1] == "2222"

    def test_connect_timeout(self):
        argv, _ = build_ssh_argv(make_profile(), connect_timeout=3)
        assert "ConnectTimeout=3" in argv

    def test_password_uses_sshpass_env(self):
        argv, env = build_ssh_argv(make_profile(password="hunter2"), "true")
        assert argv[:3] == ["sshpass", "-e", "ssh"]
        assert "BatchMode=yes" not in argv
        assert "hunter2" not in argv
        assert env == {"SSHPASS": "hunter2"}

    def test_extra_options_before_destination(self):
        argv, _ = build_ssh_argv(make_profile(), extra_options=["-nNT", "-L", "/tmp/a:/b"])
        assert argv.index("-L") < argv.index("deployer@prod.example.com")


class TestSshCommandRunner:
    @pytest.mark.asyncio
    async def test_cwd_is_quoted_into_remote_command(self, monkeypatch):
        captured = {}

        async def fake_run(argv, *, timeout_ms, env=None, cwd=None):
            captured["argv"] = argv
            return CommandResult("ok", "", 0)

        monkeypatch.setattr(f"{_SSH_MOD}._run_captured", fake_run)
        runner = SshCommandRunner(make_profile())
        result = await runner.execute("ls", cwd="/srv/my app")
        assert result.ok
        assert captured["argv"][-1] == "cd '/srv/my app' && ls"


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
class TestLocalCommandRunner:
    @pytest.mark.asyncio
    async def test_captures_output_and_exit_code(self):
        result = await LocalCommandRunner().execute("echo out; echo err >&2; exit 3")
        assert result.stdout == "out"
        assert result.stderr == "err"
        assert result.exit_code == 3
        assert not result.ok

    @pytest.mark.asyncio
    async def test_cwd(self, tmp_path):
        result = await LocalCommandRunner().execute("pwd", cwd=str(tmp_path))
        assert result.stdout.endswith(tmp_path.name)

    @pytest.mark.asyncio
    async def test_timeout(self):
        with pytest.raises(OperationTimeoutError):
            await LocalCommandRunner().execute("sleep 5", timeout_ms=50)


class TestReadRemoteFile:
    @pytest.mark.asyncio
    async def test_returns_contents(self):
        runner = FakeRunner({"cat -- /srv/app/compose.yml": CommandResult("services: {}", "", 0)})
        assert await read_remote_file(runner, "/srv/app/compose.yml") == "services: {}"

    @pytest.mark.asyncio
    async def test_path_is_quoted(self):
        runner = FakeRunner()
        with pytest.raises(RemoteCommandError):
            await read_remote_file(runner, "/srv/a b/x.yml")
        assert runner.commands == ["cat -- '/srv/a b/x.yml'"]

    @pytest.mark.asyncio
    async def test_failure_carries_result(self):
        with pytest.raises(RemoteCommandError) as exc_info:
            await read_remote_file(FakeRunner(), "/nope")
        assert exc_info.value.result.exit_code == 1
