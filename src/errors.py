"""
Exception types raised by the PE HA upgrade tool.

Every error derives from UpgradeError so the CLI can report any aborted run
with a single handler. Precondition errors are raised before any remote
mutation takes place.
"""

from typing import Iterable, Optional


class UpgradeError(RuntimeError):
    """Base class for all fatal upgrade errors."""


class PreconditionError(UpgradeError):
    """The environment or inputs do not allow the upgrade to start."""


class MissingTrustedFactsError(PreconditionError):
    """One or more nodes lack the certificate extensions needed for role data."""

    def __init__(self, certnames: Iterable[str]):
        self.certnames = sorted(certnames)
        super().__init__(
            "Required trusted facts are not present on: "
            f"{', '.join(self.certnames)}. Upgrade cannot be completed. If this "
            "infrastructure was provisioned with an older tool, convert it so "
            "every node carries a role and availability group extension."
        )


class UnsupportedTopologyError(PreconditionError):
    """The declared and discovered nodes match no single supported architecture."""


class UnsupportedTransportError(PreconditionError):
    """A node uses a connection protocol that its role cannot be upgraded over."""


class UnsupportedVersionError(PreconditionError):
    """The requested version cannot be upgraded to from the installed version."""


class RemoteCommandError(UpgradeError):
    """A command run on a node returned a non-zero exit code."""

    def __init__(self, result, message: Optional[str] = None):
        self.result = result
        detail = (result.stderr or result.stdout or "").strip()[-500:]
        super().__init__(
            message
            or f"Command on {result.host} failed with exit code "
            f"{result.exit_code}: {result.command}"
            + (f"\n{detail}" if detail else "")
        )


class TransferError(UpgradeError):
    """The upgrade artifact could not be staged on every target."""


class ReadinessTimeoutError(UpgradeError):
    """A service or node did not become ready before the deadline."""


class InstallerError(UpgradeError):
    """The PE installer failed on a node."""

    def __init__(self, host: str, exit_code: int, output: str = ""):
        self.host = host
        self.exit_code = exit_code
        tail = output.strip()[-1000:]
        super().__init__(
            f"PE installer failed on {host} with exit code {exit_code}"
            + (f"\n{tail}" if tail else "")
        )


class ApiError(UpgradeError):
    """A PE HTTP API call returned an unexpected response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)
