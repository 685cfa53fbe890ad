"""
Path Walker: component-by-component resolution that never touches a dead mount.

Sequence per component:
    1. "."  -> skip
       ".." -> pop the resolved prefix, re-open the parent
    2. Append the name to the resolved prefix
    3. Catalog lookup on the new prefix. Network mount (or automounter)?
       -> liveness via HostLivenessCache -> LivenessProber
       -> dead: the whole path fails HERE, before any filesystem call
    4. lstat() under the watchdog
       symlink  -> pop, readlink(), walk the target with depth - 1
       dir      -> enter it (search permission + open)
       other    -> fail, or stop successfully with accept_any_type

Working-directory context:
    The walker never calls chdir(). The "current directory" of a walk is an
    O_PATH descriptor owned by the WalkState, and every lstat/readlink/open is
    issued relative to it (the *at() syscalls). The process cwd is the same
    before and after every walk, however the walk ends, and the descriptor is
    closed on every exit path.

Symlink budget:
    Carried as an argument down the recursion, never stored. A chain of N
    links resolves iff N <= max_depth.

Literal paths:
    An argument whose first character is "." (".", "./bin", "../lib") is
    trusted as-is: no probes, no filesystem calls.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Optional
import logging
import os
import stat

from .errors import (
    FilesystemAccessError, ServerDead, SymlinkDepthExceeded, WalkFailure,
)
from .events import EventCallback
from .models import FailureReason, Liveness, MountRecord, WalkResult
from .mounts import MountCatalog, normalize_directory
from .prober import DEFAULT_TIMEOUT, HostLivenessCache, LivenessProber
from .rpc import PMAP_PORT
from .watchdog import Watchdog

logger = logging.getLogger("cknfs.walker")

MAX_SYMLINK_DEPTH = 64
WATCHDOG_EPSILON = 1.0                  # seconds on top of the probe timeout

_DIR_FLAGS = (os.O_RDONLY | os.O_DIRECTORY
              | getattr(os, "O_PATH", 0) | getattr(os, "O_CLOEXEC", 0))


# ============================================================
# Walker Configuration
# ============================================================

@dataclass
class WalkerConfig:
    # Probing
    timeout: float = DEFAULT_TIMEOUT
    portmapper_port: int = PMAP_PORT
    watchdog_epsilon: float = WATCHDOG_EPSILON

    # Walk behavior
    max_symlink_depth: int = MAX_SYMLINK_DEPTH
    accept_any_type: bool = False       # a non-directory may end the path

    # Output
    silent: bool = False
    canonical: bool = False             # print symlink-expanded paths
    unique: bool = False                # drop paths with an already-seen canonical form
    delimiter: str = " "

    # Diagnostics
    verbose: bool = False
    debug: bool = False
    show_host: bool = False             # name each host as it is probed
    quiet_missing: bool = False         # don't report nonexistent entries
    log_file: Optional[str] = None
    json_log: Optional[str] = None

    # Prober event callback; the CLI uses it for show_host
    event_callback: Optional[EventCallback] = None

    @property
    def watchdog_limit(self) -> float:
        return self.timeout + self.watchdog_epsilon


# ============================================================
# Walk State
# ============================================================

@dataclass
class WalkState:
    """Mutable state of one top-level walk, shared by its symlink recursion."""
    watchdog: Watchdog
    prefix: str = "/"
    fd: Optional[int] = None            # working-directory context
    stopped: bool = False               # accept_any_type terminal reached

    def push(self, name: str) -> None:
        self.prefix = f"/{name}" if self.prefix == "/" else f"{self.prefix}/{name}"

    def pop(self) -> None:
        self.prefix = self.prefix.rpartition("/")[0] or "/"

    def join(self, name: str) -> str:
        return f"/{name}" if self.prefix == "/" else f"{self.prefix}/{name}"

    def replace_fd(self, fd: int) -> None:
        old, self.fd = self.fd, fd
        if old is not None:
            os.close(old)

    def close(self) -> None:
        if self.fd is not None:
            os.close(self.fd)
            self.fd = None


# ============================================================
# Path Walker
# ============================================================

class PathWalker:
    """
    Usage:
        walker = PathWalker(MountCatalog(), HostLivenessCache(),
                            LivenessProber(timeout=5), WalkerConfig(timeout=5))
        result = walker.walk("/net/newton/bin")
        result.ok          # False if newton is dead
        result.canonical   # "/net/newton/bin" with every symlink expanded
    """

    def __init__(self, catalog: MountCatalog, cache: HostLivenessCache,
                 prober: LivenessProber, config: Optional[WalkerConfig] = None):
        self.catalog = catalog
        self.cache = cache
        self.prober = prober
        self.config = config or WalkerConfig()

    def walk(self, path: str, max_depth: Optional[int] = None) -> WalkResult:
        if max_depth is None:
            max_depth = self.config.max_symlink_depth

        if path.startswith("."):
            canonical = os.path.normpath(os.path.join(os.getcwd(), path))
            logger.debug(f"{path}: local relative reference, accepted as is")
            return WalkResult.success(path, canonical)

        state = WalkState(watchdog=Watchdog(self.config.watchdog_limit))
        try:
            with state.watchdog:
                try:
                    if not path.startswith("/"):
                        self._seed_from_cwd(state)
                    self._walk(path, state, max_depth)
                finally:
                    state.close()
        except WalkFailure as e:
            logger.debug(f"{path}: {e} [{e.reason.value}]")
            return WalkResult(path=path, ok=False, reason=e.reason,
                              detail=str(e), host=e.host, missing=e.missing,
                              prefix=state.prefix)

        logger.debug(f"{path}: ok -> {state.prefix}")
        return WalkResult.success(path, state.prefix)

    # ────────────────────────────────────────────
    # Recursion
    # ────────────────────────────────────────────

    def _walk(self, path: str, state: WalkState, depth: int) -> None:
        if path.startswith("/"):
            state.watchdog.arm()
            state.replace_fd(self._call(state, "/", os.open, "/", _DIR_FLAGS,
                                        discard=os.close))
            state.prefix = "/"

        for name in path.split("/"):
            if not name or name == ".":
                continue

            if name == "..":
                state.watchdog.arm()
                state.replace_fd(self._call(
                    state, state.prefix, os.open, "..", _DIR_FLAGS,
                    dir_fd=state.fd, discard=os.close,
                ))
                state.pop()
                continue

            state.push(name)

            # No filesystem call on a mount until its server is confirmed alive.
            record = self.catalog.lookup(state.prefix)
            if record is not None and record.needs_probe:
                self._require_alive(record)

            state.watchdog.arm()
            st = self._call(state, state.prefix, os.lstat, name, dir_fd=state.fd)

            if stat.S_ISLNK(st.st_mode):
                state.pop()
                link = state.join(name)
                if depth <= 0:
                    raise SymlinkDepthExceeded(
                        f"{link}: too many levels of symbolic links"
                    )
                state.watchdog.arm()
                target = self._call(state, link, os.readlink, name, dir_fd=state.fd)
                logger.debug(f"{link} -> {target}")
                self._walk(target, state, depth - 1)
                if state.stopped:
                    return
                continue

            if not stat.S_ISDIR(st.st_mode):
                if self.config.accept_any_type:
                    logger.debug(f"{state.prefix}: not a directory, accepted as terminal")
                    state.stopped = True
                    return
                raise FilesystemAccessError(f"{state.prefix}: Not a directory")

            self._enter(state, name)

    def _enter(self, state: WalkState, name: str) -> None:
        state.watchdog.arm()
        if not self._call(state, state.prefix, os.access, name, os.X_OK,
                          dir_fd=state.fd):
            raise FilesystemAccessError(f"{state.prefix}: Permission denied")
        state.watchdog.arm()
        state.replace_fd(self._call(state, state.prefix, os.open, name, _DIR_FLAGS,
                                    dir_fd=state.fd, discard=os.close))

    def _seed_from_cwd(self, state: WalkState) -> None:
        """Relative path: start at the cwd, after vetting the mounts above it."""
        cwd = normalize_directory(self._call(state, ".", os.getcwd))
        prefix = "/"
        for part in cwd.split("/"):
            if not part:
                continue
            prefix = f"/{part}" if prefix == "/" else f"{prefix}/{part}"
            record = self.catalog.lookup(prefix)
            if record is not None and record.needs_probe:
                self._require_alive(record)

        state.watchdog.arm()
        state.replace_fd(self._call(state, cwd, os.open, ".", _DIR_FLAGS,
                                    discard=os.close))
        state.prefix = cwd

    # ────────────────────────────────────────────
    # Guards
    # ────────────────────────────────────────────

    def _require_alive(self, record: MountRecord) -> None:
        key = record.host_key
        liveness = self.cache.resolve(key, lambda: self.prober.probe_record(record))
        if liveness == Liveness.ALIVE:
            return

        result = self.cache.result(key)
        reason = (result.reason if result is not None and result.reason
                  else FailureReason.RPC_FAILURE)
        detail = result.detail if result is not None and result.detail else "not responding"
        raise ServerDead(
            f"{record.directory}: server {key} is dead ({detail})",
            host=key, reason=reason,
        )

    @staticmethod
    def _call(state: WalkState, display: str, func: Callable, *args, **kwargs):
        """Filesystem call under the watchdog; OSError -> FilesystemAccessError."""
        try:
            return state.watchdog.call(func, *args, **kwargs)
        except (OSError, ValueError) as e:
            raise FilesystemAccessError.from_os_error(display, e) from e
