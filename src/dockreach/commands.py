"""Command runners: execute shell commands on the engine host.

:class:`RemoteCommandRunner` is the narrow contract discovery depends on:
``execute(command, cwd=..., timeout_ms=...) -> CommandResult``. Non-zero exits
are results, not exceptions. Two implementations:

- :class:`SshCommandRunner` runs the command on a remote host through ``ssh``
- :class:`LocalCommandRunner` runs it through ``sh -c`` on this machine

Host-key verification is disabled for remote commands and tunnels
(``StrictHostKeyChecking=no``, known-hosts file ``/dev/null``). That is an
operational trade-off for ephemeral hosts, not a recommendation.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from dockreach.errors import OperationTimeoutError, RemoteCommandError
from dockreach.logger import logger

if TYPE_CHECKING:
    from dockreach.profiles import ConnectionProfile

DEFAULT_COMMAND_TIMEOUT_MS = 30000


@dataclass(frozen=True)
class CommandResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class RemoteCommandRunner(Protocol):
    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
    ) -> CommandResult: ...


# ---------------------------------------------------------------------------
# ssh argv construction (shared with the tunnel)
# ---------------------------------------------------------------------------


def ssh_options(profile: ConnectionProfile, *, connect_timeout: int = 10) -> list[str]:
    """Hardening and auth flags common to every ssh invocation."""
    opts = [
        "-o", "StrictHostKeyChecking=no",
        "-o", "UserKnownHostsFile=/dev/null",
        "-o", f"ConnectTimeout={connect_timeout}",
        "-o", "LogLevel=ERROR",
    ]  # fmt: skip
    if profile.password is None:
        # Fail instead of prompting; there is no terminal to prompt on.
        opts += ["-o", "BatchMode=yes"]
    if profile.port != 22:
        opts += ["-p", str(profile.port)]
    if profile.identity_file:
        opts += ["-i", profile.identity_file, "-o", "IdentitiesOnly=yes"]
    return opts


def wrap_password_auth(
    argv: Sequence[str], profile: ConnectionProfile
) -> tuple[list[str], dict[str, str]]:
    """Route password profiles through ``sshpass -e``; returns (argv, extra env)."""
    if profile.password is None:
        return list(argv), {}
    return ["sshpass", "-e", *argv], {"SSHPASS": profile.password}


def build_ssh_argv(
    profile: ConnectionProfile,
    remote_command: str | None = None,
    *,
    extra_options: Sequence[str] = (),
    connect_timeout: int = 10,
) -> tuple[list[str], dict[str, str]]:
    argv = ["ssh", *ssh_options(profile, connect_timeout=connect_timeout), *extra_options]
    argv.append(profile.destination)
    if remote_command is not None:
        argv.append(remote_command)
    return wrap_password_auth(argv, profile)


# ---------------------------------------------------------------------------
# Runners
# ---------------------------------------------------------------------------


async def _run_captured(
    argv: Sequence[str],
    *,
    timeout_ms: int,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> CommandResult:
    full_env = {**os.environ, **env} if env else None
    proc = await asyncio.create_subprocess_exec(
        *argv,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=full_env,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            proc.kill()
        with contextlib.suppress(Exception):
            await proc.wait()
        raise OperationTimeoutError(
            f"Command timed out after {timeout_ms}ms: {argv[0]}"
        ) from None
    return CommandResult(
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
        exit_code=proc.returncode if proc.returncode is not None else 1,
    )


class SshCommandRunner:
    """Run shell commands on a remote host via the ``ssh`` binary."""

    def __init__(self, profile: ConnectionProfile, *, connect_timeout: int = 10) -> None:
        self._profile = profile
        self._connect_timeout = connect_timeout
        if profile.passphrase and profile.password is None:
            logger.warning(
                "Passphrase-protected keys must be loaded into ssh-agent",
                profile=profile.name,
            )

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
    ) -> CommandResult:
        remote_command = f"cd {shlex.quote(cwd)} && {command}" if cwd else command
        argv, env = build_ssh_argv(
            self._profile, remote_command, connect_timeout=self._connect_timeout
        )
        logger.debug("Executing remote command", host=self._profile.host, command=remote_command)
        return await _run_captured(argv, timeout_ms=timeout_ms, env=env)


class LocalCommandRunner:
    """Run shell commands on this machine; the local counterpart of ssh."""

    async def execute(
        self,
        command: str,
        *,
        cwd: str | None = None,
        timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
    ) -> CommandResult:
        logger.debug("Executing local command", command=command, cwd=cwd)
        return await _run_captured(["sh", "-c", command], timeout_ms=timeout_ms, cwd=cwd)


async def read_remote_file(
    runner: RemoteCommandRunner,
    path: str,
    *,
    timeout_ms: int = DEFAULT_COMMAND_TIMEOUT_MS,
) -> str:
    """Return the contents of ``path`` on the runner's host."""
    result = await runner.execute(f"cat -- {shlex.quote(path)}", timeout_ms=timeout_ms)
    if not result.ok:
        raise RemoteCommandError(
            f"Failed to read {path}: {result.stderr or 'unknown error'}", result
        )
    return result.stdout
