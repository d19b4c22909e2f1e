"""Error taxonomy shared by every dockreach component.

Tunnel and timeout errors also subclass the matching builtins so callers
that only know about ``ConnectionError`` / ``TimeoutError`` still catch them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dockreach.commands import CommandResult


class DockreachError(Exception):
    """Base class for all dockreach errors."""


class ConfigurationError(DockreachError):
    """Profile file or profile name problem. Never downgraded to local mode."""


class TunnelError(DockreachError, ConnectionError):
    """The SSH tunnel to a remote engine could not be established."""


class UnsupportedPlatformError(TunnelError):
    """Unix-socket forwarding is not available on this platform."""


class OperationTimeoutError(DockreachError, TimeoutError):
    """An operation did not finish before its deadline."""


class RetryExhaustedError(DockreachError):
    """Every retry attempt failed; carries the attempt count and last cause."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class RemoteCommandError(DockreachError):
    """A remote command exited non-zero where success was required."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result
