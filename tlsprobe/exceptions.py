"""
Exceptions raised by tlsprobe.

Errors on a single intercepted connection are never raised to the caller:
they close that connection and are reported through its hooks. The classes
below cover the failures that are meant to abort whatever triggered them.
"""
from __future__ import annotations

from collections.abc import Sequence


class TlsProbeException(Exception):
    """
    Base class for all exceptions thrown by tlsprobe.
    """

    def __init__(self, message=None):
        super().__init__(message)


class OptionsError(TlsProbeException):
    pass


class RedirectionError(TlsProbeException):
    """
    Installing or removing a traffic redirection rule failed.
    """


class InstallationError(RedirectionError):
    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        msg = f"Command {' '.join(self.command)!r} exited with status {returncode}"
        if output:
            msg += f": {output}"
        super().__init__(msg)


class RemovalError(RedirectionError):
    """
    Raised after all removals were attempted. Each failure is the command and
    either its exit status or the OSError that kept it from running.
    """

    def __init__(self, failures: Sequence[tuple[Sequence[str], int | OSError]]):
        self.failures = [(list(cmd), reason) for cmd, reason in failures]
        super().__init__(
            "Failed to remove redirection rules: "
            + "; ".join(
                f"{' '.join(cmd)!r} exited with status {reason}"
                if isinstance(reason, int)
                else f"{' '.join(cmd)!r} could not be run: {reason}"
                for cmd, reason in self.failures
            )
        )
