"""Background process spawning, the seam between tunnel logic and real processes.

The tunnel code only needs to start a long-lived process, learn its pid,
notice whether it died, read what it printed, and stop it. Tests substitute
a fake spawner; production uses :class:`AsyncioProcessSpawner`.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from collections.abc import Mapping, Sequence
from typing import Protocol, runtime_checkable

from dockreach.logger import logger

_MAX_OUTPUT = 8192


@runtime_checkable
class SpawnedProcess(Protocol):
    pid: int

    @property
    def returncode(self) -> int | None: ...

    async def read_output(self, timeout: float = 1.0) -> str: ...

    def terminate(self) -> None: ...


@runtime_checkable
class ProcessSpawner(Protocol):
    async def spawn(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> SpawnedProcess: ...


class _AsyncioProcess:
    """Adapter over :class:`asyncio.subprocess.Process` with merged output.

    A background task drains the output pipe for the life of the process so
    a chatty ssh never blocks on a full pipe. Only the last ``_MAX_OUTPUT``
    bytes are kept, for error messages.
    """

    def __init__(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        self.pid = proc.pid
        self._tail = bytearray()
        self._drain: asyncio.Future[None] | None = None
        if proc.stdout is not None:
            self._drain = asyncio.ensure_future(self._drain_output(proc.stdout))

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def _drain_output(self, stream: asyncio.StreamReader) -> None:
        while chunk := await stream.read(_MAX_OUTPUT):
            self._tail += chunk
            if len(self._tail) > _MAX_OUTPUT:
                del self._tail[:-_MAX_OUTPUT]

    async def read_output(self, timeout: float = 1.0) -> str:
        """Tail of what the process printed, waiting briefly for the pipe to close."""
        if self._drain is not None:
            with contextlib.suppress(TimeoutError):
                async with asyncio.timeout(timeout):
                    await asyncio.shield(self._drain)
        return self._tail.decode(errors="replace").strip()

    def terminate(self) -> None:
        if self._proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()


class AsyncioProcessSpawner:
    """Start processes with :func:`asyncio.create_subprocess_exec`.

    stdout and stderr are merged into one pipe. The child runs in its own
    session so it survives if the parent crashes; ``cleanup`` stops it
    explicitly otherwise.
    """

    async def spawn(
        self,
        argv: Sequence[str],
        *,
        env: Mapping[str, str] | None = None,
    ) -> SpawnedProcess:
        full_env = {**os.environ, **env} if env else None
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=full_env,
            start_new_session=True,
        )
        logger.debug("Spawned background process", pid=proc.pid, program=argv[0])
        return _AsyncioProcess(proc)
