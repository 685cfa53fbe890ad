"""
cknfs: Error Kinds

Two families. ProbeError subclasses describe why a server was declared dead
and never leave the prober. WalkFailure subclasses drop a single path and
never leave the walker. UsageError and MountTableError are fatal for the run.
"""

from __future__ import annotations
from typing import Optional

from .models import FailureReason


class CknfsError(Exception):
    """Base for every error raised by cknfs."""


class UsageError(CknfsError):
    pass


class MountTableError(CknfsError):
    """The mount table could not be read. No path can be evaluated."""


# ============================================================
# Probe Errors
# ============================================================

class ProbeError(CknfsError):
    reason = FailureReason.RPC_FAILURE


class AddressResolutionFailure(ProbeError):
    reason = FailureReason.ADDRESS_RESOLUTION


class ConnectTimeout(ProbeError):
    reason = FailureReason.CONNECT_TIMEOUT


class ServiceNotRegistered(ProbeError):
    reason = FailureReason.SERVICE_NOT_REGISTERED


class RPCFailure(ProbeError):
    """Transport error, RPC-level rejection, or no reply before the deadline."""
    reason = FailureReason.RPC_FAILURE


# ============================================================
# Walk Failures
# ============================================================

class WalkFailure(CknfsError):
    reason = FailureReason.FILESYSTEM_ACCESS

    def __init__(self, message: str, missing: bool = False,
                 host: Optional[str] = None,
                 reason: Optional[FailureReason] = None):
        super().__init__(message)
        self.missing = missing
        self.host = host
        if reason is not None:
            self.reason = reason


class WatchdogTimeout(WalkFailure):
    reason = FailureReason.WATCHDOG_TIMEOUT


class SymlinkDepthExceeded(WalkFailure):
    reason = FailureReason.SYMLINK_DEPTH_EXCEEDED


class FilesystemAccessError(WalkFailure):
    reason = FailureReason.FILESYSTEM_ACCESS

    @classmethod
    def from_os_error(cls, name: str, exc: Exception) -> FilesystemAccessError:
        return cls(f"{name}: {getattr(exc, 'strerror', None) or exc}",
                   missing=isinstance(exc, FileNotFoundError))


class ServerDead(WalkFailure):
    """The mount's server (or local daemon) failed its liveness probe."""
