"""
cknfs: Mount Catalog

Index of mounted filesystems, keyed by mount point.

The catalog is built once, lazily, from a loader that returns MountRecords.
The default loader reads the kernel mount table (/proc/self/mounts). Lookups
are exact-match on the normalized directory string, which is the same form
the walker builds its resolved prefix in:

    "/net/newton/bin"   absolute
    "/"                 root stays root
    no trailing slash, no "." or ".." segments

Duplicate mount points: the record added LAST wins. For the kernel table this
is the filesystem stacked on top, which is the one a path lookup would land on.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional
import logging
import posixpath
import re

from .errors import MountTableError
from .models import MountRecord, NETWORK_FS_TYPES, ServerSpec, Transport

logger = logging.getLogger("cknfs.mounts")

PROC_MOUNTS = "/proc/self/mounts"

MountLoader = Callable[[], Iterable[MountRecord]]


# ============================================================
# Normalization
# ============================================================

def normalize_directory(path: str) -> str:
    """Absolute, no trailing slash, root as "/"."""
    if not path:
        return "/"
    path = posixpath.normpath(path)
    if path.startswith("//"):
        # POSIX lets normpath keep a leading double slash; we don't.
        path = "/" + path.lstrip("/")
    return path or "/"


def normalize_host(host: str) -> str:
    host = host.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host.rstrip(".").lower()


# ============================================================
# Server Spec & Options
# ============================================================

_DAEMON_EXPORT = re.compile(r"^\(pid(\d+)\)$")


def parse_server_spec(spec: str) -> ServerSpec:
    """
    Split a mount source into server identity and export.

        "newton:/export/bin"      -> host "newton"
        "10.1.2.3:/vol0"          -> host "10.1.2.3"
        "[fe80::1%eth0]:/export"  -> host "fe80::1%eth0", bracketed
        "nfsserver"               -> host "nfsserver", no export

    A bare IPv6 literal must be bracketed; otherwise its first colon is taken
    as the host/export separator.
    """
    spec = spec.strip()
    if spec.startswith("["):
        end = spec.find("]")
        if end > 0:
            rest = spec[end + 1:]
            if rest.startswith(":"):
                rest = rest[1:]
            return ServerSpec(host=normalize_host(spec[1:end]),
                              export=rest, bracketed=True)

    host, _, export = spec.partition(":")
    return ServerSpec(host=normalize_host(host), export=export)


def daemon_pid(server: ServerSpec) -> Optional[int]:
    """pid from an automounter source such as ``newton:(pid123)``."""
    m = _DAEMON_EXPORT.match(server.export)
    return int(m.group(1)) if m else None


@dataclass
class MountOptions:
    transport: Transport = Transport.ANY
    version: int = 0
    address: Optional[str] = None
    daemon_pid: Optional[int] = None


def _parse_version(value: str) -> int:
    # "4.1" -> 4
    head = value.split(".", 1)[0]
    return int(head) if head.isdigit() else 0


def parse_mount_options(text: str) -> MountOptions:
    opts = MountOptions()
    for item in text.split(","):
        key, _, value = item.strip().partition("=")
        if key in ("tcp", "udp") and not value:
            opts.transport = Transport(key)
        elif key == "proto":
            # tcp6 / udp6 / rdma
            if value.startswith("tcp"):
                opts.transport = Transport.TCP
            elif value.startswith("udp"):
                opts.transport = Transport.UDP
        elif key in ("vers", "nfsvers"):
            opts.version = _parse_version(value)
        elif key == "addr" and value:
            opts.address = normalize_host(value)
        elif key == "pgrp" and value.isdigit():
            # autofs: process group of the automount daemon
            opts.daemon_pid = int(value)
    return opts


def make_record(fsname: str, directory: str, fs_type: str,
                options: str = "") -> MountRecord:
    server = parse_server_spec(fsname)
    opts = parse_mount_options(options)
    version = opts.version
    if fs_type == "nfs4" and not version:
        version = 4

    pid = daemon_pid(server)
    if pid is None and fs_type == "autofs":
        pid = opts.daemon_pid

    return MountRecord(
        directory=normalize_directory(directory),
        server=server,
        fs_type=fs_type,
        is_networked=fs_type in NETWORK_FS_TYPES and pid is None,
        transport=opts.transport,
        version=version,
        address=opts.address,
        local_pid=pid,
    )


# ============================================================
# Kernel Mount Table
# ============================================================

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")


def _unescape(field_text: str) -> str:
    # The kernel writes space, tab, newline and backslash as \040 etc.
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field_text)


def parse_mount_table(lines: Iterable[str]) -> list[MountRecord]:
    """Parse fstab/mtab-format lines: fsname dir type options freq passno."""
    records = []
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split()
        if len(parts) < 3:
            logger.debug(f"mount table line {lineno} ignored: {line!r}")
            continue
        fsname, directory, fs_type = (_unescape(p) for p in parts[:3])
        options = parts[3] if len(parts) > 3 else ""
        records.append(make_record(fsname, directory, fs_type, options))
    return records


def read_proc_mounts(path: str = PROC_MOUNTS) -> list[MountRecord]:
    try:
        with open(path, "r", encoding="utf-8", errors="surrogateescape") as f:
            return parse_mount_table(f)
    except OSError as e:
        raise MountTableError(f"{path}: {e.strerror or e}") from e


# ============================================================
# Catalog
# ============================================================

class MountCatalog:
    """
    Directory -> MountRecord index, loaded once on first lookup.

    Usage:
        catalog = MountCatalog()                 # reads /proc/self/mounts
        catalog = MountCatalog.from_records([...])
        record = catalog.lookup("/net/newton")
    """

    def __init__(self, loader: MountLoader = read_proc_mounts):
        self._loader = loader
        self._index: Optional[dict[str, MountRecord]] = None

    @classmethod
    def from_records(cls, records: Iterable[MountRecord]) -> MountCatalog:
        records = list(records)
        return cls(loader=lambda: records)

    @property
    def loaded(self) -> bool:
        return self._index is not None

    def load(self) -> None:
        if self._index is not None:
            return
        try:
            records = list(self._loader())
        except MountTableError:
            raise
        except OSError as e:
            raise MountTableError(f"cannot read mount table: {e}") from e

        self._index = {}
        for record in records:
            self._add(record)
        logger.debug(
            f"mount catalog: {len(self._index)} mount points, "
            f"{sum(1 for r in self._index.values() if r.needs_probe)} need probing"
        )

    def _add(self, record: MountRecord) -> None:
        key = normalize_directory(record.directory)
        previous = self._index.get(key)
        if previous is not None:
            logger.debug(f"duplicate mount point {key}: "
                         f"{previous.server} replaced by {record.server}")
        record.directory = key
        self._index[key] = record

    def lookup(self, directory: str) -> Optional[MountRecord]:
        self.load()
        return self._index.get(normalize_directory(directory))

    def __iter__(self) -> Iterator[MountRecord]:
        self.load()
        return iter(list(self._index.values()))

    def __len__(self) -> int:
        self.load()
        return len(self._index)
