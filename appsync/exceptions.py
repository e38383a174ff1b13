"""
Exception hierarchy for appsync
"""


class AppSyncError(Exception):
    """Base class for every error raised by appsync."""


class ValidationError(AppSyncError):
    """The target app or a local path is not eligible for syncing."""


class SSHConnectionError(AppSyncError):
    """Dialing or authenticating the SSH endpoint failed."""


class HostKeyError(SSHConnectionError):
    """The host key presented by the endpoint did not verify."""

    def __init__(self, message: str, fingerprint: str = ""):
        super().__init__(message)
        self.fingerprint = fingerprint


class TransferError(AppSyncError):
    """A single remote operation failed."""


class WatchError(AppSyncError):
    """The local filesystem watch could not be started."""


class PlatformError(AppSyncError):
    """The platform CLI returned something we could not use."""
