"""
cknfs: Liveness Prober

Is this NFS server alive enough to traverse? One bounded round trip decides.

Sequence per server:
    1. Resolve the host (addr= hint, literal, or DNS) -> candidate addresses
    2. For each candidate, in order: portmapper GETPORT over TCP
       (NFSv4 skips this and uses port 2049)
    3. NULL call to the returned port, preferred transport first
    4. Any failure -> DEAD. Success -> ALIVE.

All steps share one Deadline of ``timeout`` seconds. Each candidate address
gets an equal share of what is left when its turn comes, so a multi-homed
server with a dead first interface still leaves time for the second, and no
number of candidates can stretch the probe past the deadline.

Mount records that belong to a local automount daemon are not probed over
the network: the daemon's process is inspected instead.

HostLivenessCache memoizes verdicts per host for the life of the process.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Union
import logging
import os
import socket
import time

from .errors import (
    AddressResolutionFailure, ProbeError, RPCFailure, ServiceNotRegistered,
    WatchdogTimeout,
)
from .events import EventCallback, ProbeEvent
from .models import (
    AttemptRecord, FailureReason, Liveness, MountRecord, ProbeResult,
    Transport,
)
from .mounts import normalize_host
from .rpc import (
    Deadline, NFS_PORT, NFS_PROGRAM, PMAP_PORT, pmap_getport, rpc_null,
)
from .watchdog import Watchdog

logger = logging.getLogger("cknfs.prober")

DEFAULT_TIMEOUT = 10.0
DEFAULT_NFS_VERSION = 3                 # what to ask for when the mount doesn't say

# /proc/<pid>/stat states that mean the daemon can't answer
_STALLED_STATES = {
    "D": "stalled in uninterruptible wait",
    "Z": "zombie",
    "X": "dead",
    "T": "stopped",
    "t": "stopped by debugger",
}


# ============================================================
# Local Automount Daemon
# ============================================================

def _proc_state(pid: int, proc_root: str) -> Optional[str]:
    try:
        with open(os.path.join(proc_root, str(pid), "stat"), "r") as f:
            stat = f.read()
    except OSError:
        return None
    # "1234 (automount) S 1 ..." -- comm may itself contain ") "
    _, _, rest = stat.rpartition(")")
    fields = rest.split()
    return fields[0] if fields else None


def check_local_process(pid: int, proc_root: str = "/proc") -> tuple[bool, str]:
    """Is ``pid`` alive and not stuck? Returns (ok, detail). No network I/O."""
    if pid <= 0:
        return False, f"invalid pid {pid}"
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False, f"pid {pid}: no such process"
    except PermissionError:
        pass                            # exists, belongs to someone else

    state = _proc_state(pid, proc_root)
    if state in _STALLED_STATES:
        return False, f"pid {pid}: {_STALLED_STATES[state]}"
    return True, f"pid {pid}: state {state or 'unknown'}"


# ============================================================
# Prober
# ============================================================

class LivenessProber:
    """
    Usage:
        prober = LivenessProber(timeout=5)
        result = prober.probe("newton", Transport.ANY, version=3)
        result.liveness   # ALIVE or DEAD
        result.reason     # FailureReason when DEAD
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT,
                 portmapper_port: int = PMAP_PORT,
                 nfs_port: int = NFS_PORT,
                 event_callback: Optional[EventCallback] = None,
                 proc_root: str = "/proc"):
        self.timeout = timeout
        self.portmapper_port = portmapper_port
        self.nfs_port = nfs_port
        self.event_callback = event_callback
        self.proc_root = proc_root

    # ────────────────────────────────────────────
    # Event Emission
    # ────────────────────────────────────────────

    def _emit(self, event: ProbeEvent) -> None:
        cb = self.event_callback
        if cb is not None:
            try:
                cb(event)
            except Exception as e:
                logger.debug(f"Event callback error: {e}")

    # ────────────────────────────────────────────
    # Entry Points
    # ────────────────────────────────────────────

    def probe_record(self, record: MountRecord) -> ProbeResult:
        """Probe whatever governs this mount: local daemon or remote server."""
        if record.local_pid is not None:
            return self.check_daemon(record.local_pid, directory=record.directory)
        result = self.probe(record.server.host, record.transport, record.version,
                            address=record.address, directory=record.directory)
        if result.alive and result.address:
            record.address = result.address
        return result

    def check_daemon(self, pid: int, directory: str = "") -> ProbeResult:
        host = f"pid:{pid}"
        self._emit(ProbeEvent(event="probe_start", host=host,
                              directory=directory, local_pid=pid))
        started = time.monotonic()
        ok, detail = check_local_process(pid, self.proc_root)
        result = ProbeResult(
            host=host,
            liveness=Liveness.ALIVE if ok else Liveness.DEAD,
            reason=None if ok else FailureReason.LOCAL_DAEMON_DEAD,
            detail=detail,
            duration_ms=(time.monotonic() - started) * 1000,
        )
        logger.info(f"automount daemon {detail}")
        self._finish(result, directory)
        return result

    def probe(self, host: str, transport: Transport = Transport.ANY,
              version: int = 0, address: Optional[str] = None,
              directory: str = "") -> ProbeResult:
        host = normalize_host(host)
        deadline = Deadline(self.timeout)
        started = time.monotonic()
        result = ProbeResult(host=host)

        logger.info(f"Checking {host}..")
        self._emit(ProbeEvent(event="probe_start", host=host, directory=directory))

        try:
            candidates = self._resolve(host, address, deadline, result)
            vers = version or DEFAULT_NFS_VERSION
            if vers >= 4:
                self._probe_v4(candidates, vers, deadline, result)
            else:
                self._probe_portmapped(candidates, vers, transport, deadline, result)
            result.liveness = Liveness.ALIVE
        except ProbeError as e:
            result.liveness = Liveness.DEAD
            result.reason = e.reason
            result.detail = str(e)
        finally:
            result.duration_ms = (time.monotonic() - started) * 1000

        if result.alive:
            logger.info(f"{host} ok ({result.address} port {result.port}, "
                        f"{result.transport.value}, {result.duration_ms:.0f}ms)")
        else:
            logger.info(f"{host}: {result.detail} [{result.reason.value}]")
        self._finish(result, directory)
        return result

    def _finish(self, result: ProbeResult, directory: str) -> None:
        self._emit(ProbeEvent(
            event="probe_done",
            host=result.host,
            directory=directory,
            liveness=result.liveness,
            reason=result.reason,
            address=result.address,
            duration_ms=result.duration_ms,
        ))

    # ────────────────────────────────────────────
    # Steps
    # ────────────────────────────────────────────

    @contextmanager
    def _attempt(self, result: ProbeResult, step: str, address: str = "",
                 port: int = 0, transport: str = "") -> Iterator[AttemptRecord]:
        record = AttemptRecord(step=step, address=address, port=port,
                               transport=transport)
        result.attempts.append(record)
        started = time.monotonic()
        try:
            yield record
            record.ok = True
        except ProbeError as e:
            record.detail = str(e)
            logger.debug(f"{result.host}: {step} {address} failed: {e}")
            raise
        except OSError as e:
            # local resource failure (EMFILE, EAFNOSUPPORT, ...)
            record.detail = f"{e.strerror or e}"
            logger.debug(f"{result.host}: {step} {address} failed: {e}")
            raise RPCFailure(f"{step} {address}: {e.strerror or e}") from e
        finally:
            record.duration_ms = (time.monotonic() - started) * 1000

    def _resolve(self, host: str, address: Optional[str], deadline: Deadline,
                 result: ProbeResult) -> list[tuple[int, tuple]]:
        """Candidate (family, sockaddr) pairs in resolver order, no duplicates."""
        name = address or host
        with self._attempt(result, "resolve", address=name) as attempt:
            # getaddrinfo has no timeout of its own
            guard = Watchdog(deadline.remaining())
            try:
                with guard:
                    infos = guard.call(socket.getaddrinfo, name, None,
                                       type=socket.SOCK_STREAM)
            except WatchdogTimeout as e:
                raise AddressResolutionFailure(f"{name}: lookup timed out") from e
            except (socket.gaierror, UnicodeError) as e:
                raise AddressResolutionFailure(f"{name}: unknown host ({e})") from e

            candidates = []
            seen = set()
            for family, _type, _proto, _canon, sockaddr in infos:
                if family not in (socket.AF_INET, socket.AF_INET6):
                    continue
                if sockaddr[0] in seen:
                    continue
                seen.add(sockaddr[0])
                candidates.append((family, sockaddr))
            if not candidates:
                raise AddressResolutionFailure(f"{name}: no usable address")
            attempt.detail = ", ".join(s[0] for _, s in candidates)
        return candidates

    def _share(self, deadline: Deadline, left: int) -> Deadline:
        return deadline.slice(deadline.remaining() / max(1, left))

    def _probe_portmapped(self, candidates: list[tuple[int, tuple]], vers: int,
                          transport: Transport, deadline: Deadline,
                          result: ProbeResult) -> None:
        wanted = [transport] if transport != Transport.ANY else [Transport.TCP, Transport.UDP]

        # First candidate whose portmapper answers wins.
        last_error: Optional[ProbeError] = None
        located = None
        for i, (family, sockaddr) in enumerate(candidates):
            share = self._share(deadline, len(candidates) - i)
            try:
                ports = self._getports(family, sockaddr, vers, wanted,
                                       share, result)
            except ProbeError as e:
                last_error = e
                continue
            located = (family, sockaddr, ports)
            break
        if located is None:
            raise last_error

        family, sockaddr, ports = located
        result.address = sockaddr[0]
        for j, (t, port) in enumerate(ports):
            try:
                with self._attempt(result, "null", sockaddr[0], port, t.value):
                    rpc_null(family, sockaddr, port, NFS_PROGRAM, vers, t,
                             self._share(deadline, len(ports) - j))
            except ProbeError as e:
                last_error = e
                continue
            result.port = port
            result.transport = t
            return
        raise last_error

    def _getports(self, family: int, sockaddr: tuple, vers: int,
                  wanted: list[Transport], deadline: Deadline,
                  result: ProbeResult) -> list[tuple[Transport, int]]:
        ports = []
        for t in wanted:
            try:
                with self._attempt(result, "getport", sockaddr[0],
                                   self.portmapper_port, t.value) as attempt:
                    port = pmap_getport(family, sockaddr, NFS_PROGRAM, vers, t,
                                        deadline, pmap_port=self.portmapper_port)
                    attempt.detail = f"port {port}"
            except ProbeError:
                if not ports:
                    raise
                break                   # keep what the first query found
            if port:
                ports.append((t, port))
        if not ports:
            raise ServiceNotRegistered(
                f"{sockaddr[0]}: NFS v{vers} not registered with portmapper"
            )
        return ports

    def _probe_v4(self, candidates: list[tuple[int, tuple]], vers: int,
                  deadline: Deadline, result: ProbeResult) -> None:
        last_error: Optional[ProbeError] = None
        for i, (family, sockaddr) in enumerate(candidates):
            try:
                with self._attempt(result, "null", sockaddr[0], self.nfs_port,
                                   Transport.TCP.value):
                    rpc_null(family, sockaddr, self.nfs_port, NFS_PROGRAM, vers,
                             Transport.TCP, self._share(deadline, len(candidates) - i))
            except ProbeError as e:
                last_error = e
                continue
            result.address = sockaddr[0]
            result.port = self.nfs_port
            result.transport = Transport.TCP
            return
        raise last_error


# ============================================================
# Host Liveness Cache
# ============================================================

ProbeOutcome = Union[ProbeResult, Liveness]


class HostLivenessCache:
    """
    Per-host verdicts for the life of the process. Never invalidated.

    Keyed by the normalized server identity, not the mount point, so
    /net/newton/bin and /net/newton/src cost one probe between them.
    """

    def __init__(self):
        self._results: dict[str, ProbeResult] = {}
        self.probes = 0

    def resolve(self, identity: str,
                probe_fn: Callable[[], ProbeOutcome]) -> Liveness:
        key = normalize_host(identity)
        cached = self._results.get(key)
        if cached is not None:
            logger.debug(f"{key}: cached {cached.liveness.value}")
            return cached.liveness

        outcome = probe_fn()
        self.probes += 1
        if isinstance(outcome, Liveness):
            outcome = ProbeResult(host=key, liveness=outcome)
        if outcome.liveness == Liveness.UNCHECKED:
            # a probe that can't decide counts as a failed one
            outcome.liveness = Liveness.DEAD
        self._results[key] = outcome
        return outcome.liveness

    def state(self, identity: str) -> Liveness:
        cached = self._results.get(normalize_host(identity))
        return cached.liveness if cached else Liveness.UNCHECKED

    def result(self, identity: str) -> Optional[ProbeResult]:
        return self._results.get(normalize_host(identity))

    def results(self) -> list[ProbeResult]:
        return list(self._results.values())

    def __contains__(self, identity: str) -> bool:
        return normalize_host(identity) in self._results

    def __len__(self) -> int:
        return len(self._results)
