"""
Pytest configuration and shared fixtures.

FakeRpcServer speaks just enough ONC RPC (portmapper GETPORT plus the NFS
NULL procedure) on 127.0.0.1 for the prober to talk to. StubProber stands in
for the network when testing the walker and the driver.
"""

import errno
import logging
import os
import socket
import struct
import threading

import pytest

from cknfs.models import FailureReason, Liveness, MountRecord, ProbeResult, ServerSpec
from cknfs.mounts import MountCatalog
from cknfs.prober import HostLivenessCache, LivenessProber
from cknfs.rpc import NFS_PROGRAM, PMAP_PROG, PMAPPROC_GETPORT
from cknfs.walker import PathWalker, WalkerConfig


# ============================================================
# Fake RPC server
# ============================================================

def _pad(n):
    return (n + 3) & ~3


def _accepted(xid, body=b"", stat=0):
    # xid, REPLY, MSG_ACCEPTED, verf(AUTH_NONE, len 0), accept_stat
    return struct.pack(">IIIIII", xid, 1, 0, 0, 0, stat) + body


class FakeRpcServer:
    """
    Portmapper and NFS service on one TCP port (plus an optional UDP port).

    nfs_versions: versions the NFS NULL call accepts
    registered:   versions the portmapper admits to; defaults to nfs_versions
    """

    def __init__(self, nfs_versions=(3,), registered=None, udp=False):
        self.nfs_versions = set(nfs_versions)
        self.registered = set(nfs_versions if registered is None else registered)
        self.calls = []
        self._lock = threading.Lock()
        self._stop = threading.Event()

        self.tcp = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.tcp.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.tcp.bind(("127.0.0.1", 0))
        self.tcp.listen(16)
        self.tcp.settimeout(0.05)
        self.port = self.tcp.getsockname()[1]

        self.udp = None
        self.udp_port = 0
        if udp:
            self.udp = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
            self.udp.bind(("127.0.0.1", 0))
            self.udp.settimeout(0.05)
            self.udp_port = self.udp.getsockname()[1]

        self._threads = [threading.Thread(target=self._serve_tcp, daemon=True)]
        if self.udp is not None:
            self._threads.append(threading.Thread(target=self._serve_udp, daemon=True))
        for t in self._threads:
            t.start()

    def close(self):
        self._stop.set()
        for t in self._threads:
            t.join(1)
        self.tcp.close()
        if self.udp is not None:
            self.udp.close()

    # ── dispatch ──

    def dispatch(self, msg):
        xid, _mtype, _rpcvers, prog, vers, proc = struct.unpack_from(">6I", msg, 0)
        off = 24
        _flavor, clen = struct.unpack_from(">II", msg, off)
        off += 8 + _pad(clen)
        _flavor, vlen = struct.unpack_from(">II", msg, off)
        off += 8 + _pad(vlen)
        args = msg[off:]
        with self._lock:
            self.calls.append((prog, vers, proc))

        if prog == PMAP_PROG and proc == PMAPPROC_GETPORT:
            p, v, prot, _ = struct.unpack_from(">4I", args, 0)
            port = 0
            if p == NFS_PROGRAM and v in self.registered:
                if prot == 6:
                    port = self.port
                elif prot == 17 and self.udp_port:
                    port = self.udp_port
            return _accepted(xid, struct.pack(">I", port))

        if prog == NFS_PROGRAM:
            if vers not in self.nfs_versions:
                low, high = min(self.nfs_versions), max(self.nfs_versions)
                return _accepted(xid, struct.pack(">II", low, high), stat=2)
            return _accepted(xid)

        return _accepted(xid, stat=1)

    # ── transports ──

    def _serve_tcp(self):
        while not self._stop.is_set():
            try:
                conn, _ = self.tcp.accept()
            except (socket.timeout, OSError):
                continue
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn):
        conn.settimeout(5)
        with conn:
            try:
                while True:
                    mark = self._recv_exact(conn, 4)
                    if mark is None:
                        return
                    (n,) = struct.unpack(">I", mark)
                    msg = self._recv_exact(conn, n & 0x7FFFFFFF)
                    if msg is None:
                        return
                    reply = self.dispatch(msg)
                    conn.sendall(struct.pack(">I", 0x80000000 | len(reply)) + reply)
            except OSError:
                return

    @staticmethod
    def _recv_exact(conn, n):
        buf = b""
        while len(buf) < n:
            chunk = conn.recv(n - len(buf))
            if not chunk:
                return None
            buf += chunk
        return buf

    def _serve_udp(self):
        while not self._stop.is_set():
            try:
                data, peer = self.udp.recvfrom(9000)
            except (socket.timeout, OSError):
                continue
            self.udp.sendto(self.dispatch(data), peer)


@pytest.fixture
def rpc_server():
    server = FakeRpcServer()
    yield server
    server.close()


@pytest.fixture
def silent_endpoint():
    """A port that accepts connections (kernel backlog) and never answers."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(16)
    yield sock.getsockname()[1]
    sock.close()


@pytest.fixture
def no_ipv6_sockets(monkeypatch):
    """socket.socket() fails for AF_INET6, as on a host with IPv6 disabled."""
    real_socket = socket.socket

    def make_socket(family=socket.AF_INET, *args, **kwargs):
        if family == socket.AF_INET6:
            raise OSError(errno.EAFNOSUPPORT, os.strerror(errno.EAFNOSUPPORT))
        return real_socket(family, *args, **kwargs)

    monkeypatch.setattr(socket, "socket", make_socket)


@pytest.fixture
def closed_port():
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return port


# ============================================================
# Stub prober and walker wiring
# ============================================================

class StubProber(LivenessProber):
    """Answers from a table instead of the network. Counts every probe."""

    def __init__(self, dead=(), reason=FailureReason.CONNECT_TIMEOUT):
        super().__init__(timeout=1.0)
        self.dead = set(dead)
        self.reason = reason
        self.probed = []

    def probe_record(self, record):
        self.probed.append(record.host_key)
        if record.host_key in self.dead:
            return ProbeResult(host=record.host_key, liveness=Liveness.DEAD,
                               reason=self.reason, detail="stub says dead")
        return ProbeResult(host=record.host_key, liveness=Liveness.ALIVE)


def nfs_record(directory, host, **kwargs):
    return MountRecord(
        directory=str(directory),
        server=ServerSpec(host=host, export="/export"),
        fs_type="nfs",
        is_networked=True,
        **kwargs,
    )


@pytest.fixture
def base(tmp_path):
    """tmp_path with every symlink in its own ancestry resolved."""
    return tmp_path.resolve()


@pytest.fixture
def make_walker():
    def factory(records=(), dead=(), **config):
        catalog = MountCatalog.from_records(records)
        cache = HostLivenessCache()
        prober = StubProber(dead=dead)
        walker = PathWalker(catalog, cache, prober, WalkerConfig(**config))
        return walker, prober, cache
    return factory


@pytest.fixture(autouse=True)
def reset_logging():
    """main() reconfigures the cknfs logger; put it back for caplog."""
    yield
    logger = logging.getLogger("cknfs")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture(autouse=True)
def keep_cwd():
    """Every test leaves the process cwd where it found it."""
    cwd = os.getcwd()
    yield
    os.chdir(cwd)
