"""
cknfs: Core Data Models

Mount-table records, probe outcomes and per-path verdicts.

The question at every path component:
  Is it a network mount? -> Is its server alive? -> Is it a link? -> Can we enter it?
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


# ============================================================
# Transport & Liveness
# ============================================================

class Transport(Enum):
    TCP = "tcp"
    UDP = "udp"
    ANY = "any"                         # try TCP, then UDP

    @property
    def ipproto(self) -> int:
        """IP protocol number as the portmapper expects it."""
        return 17 if self is Transport.UDP else 6


class Liveness(Enum):
    UNCHECKED = "unchecked"
    ALIVE = "alive"
    DEAD = "dead"


class FailureReason(Enum):
    """Why a path was dropped, or why a server was declared dead."""
    ADDRESS_RESOLUTION = "address-resolution"
    CONNECT_TIMEOUT = "connect-timeout"
    SERVICE_NOT_REGISTERED = "service-not-registered"
    RPC_FAILURE = "rpc-failure"
    WATCHDOG_TIMEOUT = "watchdog-timeout"
    SYMLINK_DEPTH_EXCEEDED = "symlink-depth-exceeded"
    FILESYSTEM_ACCESS = "filesystem-access"
    LOCAL_DAEMON_DEAD = "local-daemon-dead"


# ============================================================
# Mount Table
# ============================================================

@dataclass(frozen=True)
class ServerSpec:
    """The server half of a mount source, e.g. ``newton:/export/bin``."""
    host: str                           # identity: hostname lower-cased, or bare address literal
    export: str = ""                    # remote path / device string after the colon
    bracketed: bool = False             # written as [addr] in the mount table

    def __str__(self) -> str:
        host = f"[{self.host}]" if self.bracketed else self.host
        return f"{host}:{self.export}" if self.export else host


NETWORK_FS_TYPES = ("nfs", "nfs4")


@dataclass
class MountRecord:
    directory: str                      # canonical mount point, no trailing slash
    server: ServerSpec
    fs_type: str = ""
    is_networked: bool = False
    transport: Transport = Transport.ANY
    version: int = 0                    # 0 = unspecified
    address: Optional[str] = None       # addr= hint, or filled by the prober
    local_pid: Optional[int] = None     # automount daemon guarding this directory

    @property
    def needs_probe(self) -> bool:
        return self.is_networked or self.local_pid is not None

    @property
    def host_key(self) -> str:
        """Key for the liveness cache. Daemon records are keyed by pid."""
        if self.local_pid is not None:
            return f"pid:{self.local_pid}"
        return self.server.host


# ============================================================
# Probe Outcome
# ============================================================

@dataclass
class AttemptRecord:
    """One step of a probe: resolve, connect, getport or null call."""
    step: str
    address: str = ""
    port: int = 0
    transport: str = ""
    ok: bool = False
    detail: str = ""
    duration_ms: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "step": self.step,
            "address": self.address,
            "port": self.port,
            "transport": self.transport,
            "ok": self.ok,
            "detail": self.detail,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ProbeResult:
    host: str
    liveness: Liveness = Liveness.UNCHECKED
    reason: Optional[FailureReason] = None
    detail: str = ""
    address: Optional[str] = None       # the address that answered
    port: int = 0
    transport: Optional[Transport] = None
    duration_ms: Optional[float] = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @property
    def alive(self) -> bool:
        return self.liveness == Liveness.ALIVE


# ============================================================
# Walk Verdict
# ============================================================

@dataclass
class WalkResult:
    """Verdict for one top-level input path."""
    path: str
    ok: bool = False
    canonical: Optional[str] = None     # fully resolved path, set on success
    reason: Optional[FailureReason] = None
    detail: str = ""
    host: Optional[str] = None          # server whose probe failed
    missing: bool = False               # failure was a nonexistent entry
    prefix: Optional[str] = None        # resolved prefix where a failed walk stopped

    @classmethod
    def success(cls, path: str, canonical: str) -> WalkResult:
        return cls(path=path, ok=True, canonical=canonical)
