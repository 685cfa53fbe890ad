"""
cknfs: check paths for dead NFS servers.

Filters a list of paths down to the ones that can be entered without
hanging on an unreachable NFS server.
"""

__version__ = "1.7.0"

from .models import (
    Transport, Liveness, FailureReason,
    ServerSpec, MountRecord,
    AttemptRecord, ProbeResult, WalkResult,
)

from .errors import (
    CknfsError, UsageError, MountTableError,
    ProbeError, AddressResolutionFailure, ConnectTimeout,
    ServiceNotRegistered, RPCFailure,
    WalkFailure, WatchdogTimeout, SymlinkDepthExceeded,
    FilesystemAccessError, ServerDead,
)
from .mounts import MountCatalog, parse_server_spec, read_proc_mounts
from .prober import LivenessProber, HostLivenessCache
from .walker import PathWalker, WalkerConfig
from .checker import PathChecker, main
