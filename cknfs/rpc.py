"""
cknfs: Minimal ONC RPC Client

Just enough of RFC 5531 (RPC) and RFC 1833 (portmapper) to ask a server two
questions without ever blocking past a deadline:

    1. portmapper GETPORT   "which port serves NFS vN over tcp/udp?"
    2. NULL procedure       "are you there?"

Every socket is non-blocking. Connects, sends and receives wait on a selector
with the time left on a shared Deadline, so the caller's budget is the only
thing that decides how long a dead server can hold us.

Wire format (XDR, big-endian 32-bit words):

    call:  xid | CALL(0) | rpcvers(2) | prog | vers | proc | cred | verf | args
    reply: xid | REPLY(1) | MSG_ACCEPTED(0) | verf | accept_stat | results
                          | MSG_DENIED(1)   | reject_stat | ...

Over TCP every message is preceded by a record mark: high bit = last
fragment, low 31 bits = fragment length.
"""

from __future__ import annotations
from typing import Optional
import errno
import logging
import random
import selectors
import socket
import struct
import time

from .errors import ConnectTimeout, RPCFailure
from .models import Transport

logger = logging.getLogger("cknfs.rpc")


# ============================================================
# Protocol Constants
# ============================================================

PMAP_PROG = 100000
PMAP_VERS = 2
PMAP_PORT = 111
PMAPPROC_GETPORT = 3

NFS_PROGRAM = 100003
NFS_PORT = 2049                         # fixed for v4, no portmapper
NULLPROC = 0

RPC_VERSION = 2
CALL = 0
REPLY = 1
MSG_ACCEPTED = 0
MSG_DENIED = 1
AUTH_NONE = 0

UDP_RETRY_INTERVAL = 2.0                # seconds between UDP retransmits
MAX_UDP_REPLY = 8800
MAX_RECORD = MAX_UDP_REPLY * 8          # largest TCP reply we will buffer
_LAST_FRAGMENT = 0x80000000

_ACCEPT_STAT = {
    1: "program unavailable",
    2: "program version mismatch",
    3: "procedure unavailable",
    4: "garbage arguments",
    5: "system error",
}

_REJECT_STAT = {
    0: "RPC version mismatch",
    1: "authentication error",
}


# ============================================================
# Deadline
# ============================================================

class Deadline:
    """A point in monotonic time. Shared by every step of one probe."""

    def __init__(self, seconds: float):
        self.expires = time.monotonic() + max(0.0, seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def slice(self, seconds: float) -> Deadline:
        """A deadline no later than this one and at most ``seconds`` away."""
        sub = Deadline(seconds)
        sub.expires = min(sub.expires, self.expires)
        return sub


# ============================================================
# XDR Encoding
# ============================================================

def _new_xid() -> int:
    return random.getrandbits(32)


def encode_call(xid: int, prog: int, vers: int, proc: int,
                args: bytes = b"") -> bytes:
    # AUTH_NONE credential and verifier: flavor 0, zero-length body
    header = struct.pack(">IIIIII", xid, CALL, RPC_VERSION, prog, vers, proc)
    auth = struct.pack(">IIII", AUTH_NONE, 0, AUTH_NONE, 0)
    return header + auth + args


def decode_reply(data: bytes, xid: int) -> Optional[bytes]:
    """
    Return the result body of an accepted, successful reply.

    Returns None if the reply belongs to another call (stale retransmit);
    raises RPCFailure for anything else that is not a success.
    """
    try:
        rxid, mtype = struct.unpack_from(">II", data, 0)
        if rxid != xid:
            return None
        if mtype != REPLY:
            raise RPCFailure(f"unexpected message type {mtype}")

        (reply_stat,) = struct.unpack_from(">I", data, 8)
        if reply_stat == MSG_DENIED:
            (reject_stat,) = struct.unpack_from(">I", data, 12)
            raise RPCFailure(
                f"call rejected: {_REJECT_STAT.get(reject_stat, reject_stat)}"
            )
        if reply_stat != MSG_ACCEPTED:
            raise RPCFailure(f"bad reply status {reply_stat}")

        # verifier: flavor, length, opaque body padded to 4 bytes
        _flavor, verf_len = struct.unpack_from(">II", data, 12)
        offset = 20 + ((verf_len + 3) & ~3)
        (accept_stat,) = struct.unpack_from(">I", data, offset)
        offset += 4
    except struct.error as e:
        raise RPCFailure(f"truncated reply: {e}") from e

    if accept_stat != 0:
        detail = _ACCEPT_STAT.get(accept_stat, f"accept status {accept_stat}")
        if accept_stat == 2 and len(data) >= offset + 8:
            low, high = struct.unpack_from(">II", data, offset)
            detail += f" (supported {low}..{high})"
        raise RPCFailure(detail)
    return data[offset:]


# ============================================================
# Non-blocking Socket Helpers
# ============================================================

def _wait(sock: socket.socket, events: int, deadline: Deadline) -> bool:
    """Wait until sock is ready for ``events`` or the deadline passes."""
    with selectors.DefaultSelector() as sel:
        sel.register(sock, events)
        return bool(sel.select(deadline.remaining()))


def connect_nonblocking(family: int, socktype: int, sockaddr: tuple,
                        deadline: Deadline) -> socket.socket:
    """
    Start a connect and wait for it with an explicit timeout.

    Never calls a blocking connect(): a server that drops SYNs costs exactly
    the time left on ``deadline`` and not the kernel's retry schedule.
    """
    try:
        sock = socket.socket(family, socktype)
    except OSError as e:
        raise RPCFailure(f"socket: {e.strerror or e}") from e
    try:
        sock.setblocking(False)
        err = sock.connect_ex(sockaddr)
        if err in (errno.EINPROGRESS, errno.EWOULDBLOCK, errno.EALREADY):
            if not _wait(sock, selectors.EVENT_WRITE, deadline):
                raise ConnectTimeout(
                    f"connect to {sockaddr[0]} port {sockaddr[1]} timed out"
                )
            err = sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if err:
            raise RPCFailure(
                f"connect to {sockaddr[0]} port {sockaddr[1]}: {errno.errorcode.get(err, err)}"
            )
        return sock
    except BaseException:
        sock.close()
        raise


def _send_all(sock: socket.socket, data: bytes, deadline: Deadline) -> None:
    view = memoryview(data)
    while view:
        if not _wait(sock, selectors.EVENT_WRITE, deadline):
            raise RPCFailure("send timed out")
        try:
            sent = sock.send(view)
        except BlockingIOError:
            continue
        except OSError as e:
            raise RPCFailure(f"send: {e.strerror or e}") from e
        view = view[sent:]


def _recv_exact(sock: socket.socket, n: int, deadline: Deadline) -> bytes:
    chunks = []
    while n > 0:
        if not _wait(sock, selectors.EVENT_READ, deadline):
            raise RPCFailure("no reply before timeout")
        try:
            chunk = sock.recv(n)
        except BlockingIOError:
            continue
        except OSError as e:
            raise RPCFailure(f"recv: {e.strerror or e}") from e
        if not chunk:
            raise RPCFailure("connection closed by server")
        chunks.append(chunk)
        n -= len(chunk)
    return b"".join(chunks)


# ============================================================
# RPC Client
# ============================================================

class RpcClient:
    """
    One connection to one RPC endpoint.

    Usage:
        deadline = Deadline(10)
        with RpcClient(family, ("10.0.0.5", 111), Transport.TCP, deadline) as c:
            body = c.call(PMAP_PROG, PMAP_VERS, PMAPPROC_GETPORT, args)
    """

    def __init__(self, family: int, sockaddr: tuple, transport: Transport,
                 deadline: Deadline, connect_deadline: Optional[Deadline] = None):
        if transport == Transport.ANY:
            raise ValueError("RpcClient needs a concrete transport")
        self.family = family
        self.sockaddr = sockaddr
        self.transport = transport
        self.deadline = deadline
        self.connect_deadline = connect_deadline or deadline
        self._sock: Optional[socket.socket] = None

    def __enter__(self) -> RpcClient:
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def connect(self) -> None:
        if self.transport == Transport.TCP:
            self._sock = connect_nonblocking(
                self.family, socket.SOCK_STREAM, self.sockaddr,
                self.connect_deadline,
            )
        else:
            # UDP connect() only records the peer; it cannot block.
            try:
                sock = socket.socket(self.family, socket.SOCK_DGRAM)
            except OSError as e:
                raise RPCFailure(f"socket: {e.strerror or e}") from e
            try:
                sock.setblocking(False)
                sock.connect(self.sockaddr)
            except OSError as e:
                sock.close()
                raise RPCFailure(f"udp socket: {e.strerror or e}") from e
            self._sock = sock

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    def call(self, prog: int, vers: int, proc: int, args: bytes = b"") -> bytes:
        if self._sock is None:
            self.connect()
        xid = _new_xid()
        message = encode_call(xid, prog, vers, proc, args)
        logger.debug(f"rpc call xid={xid:#010x} prog={prog} vers={vers} "
                     f"proc={proc} via {self.transport.value} to {self.sockaddr[0]}")
        if self.transport == Transport.TCP:
            return self._call_tcp(xid, message)
        return self._call_udp(xid, message)

    def _call_tcp(self, xid: int, message: bytes) -> bytes:
        sock = self._sock
        _send_all(sock, struct.pack(">I", _LAST_FRAGMENT | len(message)) + message,
                  self.deadline)
        while True:
            record = []
            size = 0
            last = False
            while not last:
                (mark,) = struct.unpack(">I", _recv_exact(sock, 4, self.deadline))
                last = bool(mark & _LAST_FRAGMENT)
                size += mark & ~_LAST_FRAGMENT
                if size > MAX_RECORD:
                    raise RPCFailure(f"reply of {size} bytes is too large for RPC")
                record.append(_recv_exact(sock, mark & ~_LAST_FRAGMENT, self.deadline))
            body = decode_reply(b"".join(record), xid)
            if body is not None:
                return body

    def _call_udp(self, xid: int, message: bytes) -> bytes:
        sock = self._sock
        while True:
            try:
                sock.send(message)
            except OSError as e:
                raise RPCFailure(f"send: {e.strerror or e}") from e

            retry = self.deadline.slice(UDP_RETRY_INTERVAL)
            while _wait(sock, selectors.EVENT_READ, retry):
                try:
                    data = sock.recv(MAX_UDP_REPLY)
                except BlockingIOError:
                    continue
                except OSError as e:
                    # ICMP port unreachable surfaces here as ECONNREFUSED
                    raise RPCFailure(f"recv: {e.strerror or e}") from e
                body = decode_reply(data, xid)
                if body is not None:
                    return body

            if self.deadline.expired:
                raise RPCFailure("no reply before timeout")
            logger.debug(f"rpc xid={xid:#010x}: retransmitting to {self.sockaddr[0]}")


# ============================================================
# The Two Calls We Make
# ============================================================

def pmap_getport(family: int, sockaddr: tuple, prog: int, vers: int,
                 transport: Transport, deadline: Deadline,
                 connect_deadline: Optional[Deadline] = None,
                 pmap_port: int = PMAP_PORT) -> int:
    """Ask the portmapper (over TCP) which port serves prog/vers/transport."""
    args = struct.pack(">IIII", prog, vers, transport.ipproto, 0)
    with RpcClient(family, with_port(sockaddr, pmap_port), Transport.TCP, deadline,
                   connect_deadline=connect_deadline) as client:
        body = client.call(PMAP_PROG, PMAP_VERS, PMAPPROC_GETPORT, args)
    try:
        (port,) = struct.unpack_from(">I", body, 0)
    except struct.error as e:
        raise RPCFailure(f"truncated GETPORT result: {e}") from e
    return port


def rpc_null(family: int, sockaddr: tuple, port: int, prog: int, vers: int,
             transport: Transport, deadline: Deadline) -> None:
    """Ping prog/vers with the no-argument NULL procedure."""
    with RpcClient(family, with_port(sockaddr, port), transport, deadline) as client:
        client.call(prog, vers, NULLPROC)


def with_port(sockaddr: tuple, port: int) -> tuple:
    """Same address (and IPv6 flow/scope), different port."""
    return (sockaddr[0], port) + tuple(sockaddr[2:])
