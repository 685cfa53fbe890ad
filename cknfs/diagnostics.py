"""
cknfs: Diagnostic Framework

Every probe, every path verdict: traceable.
Three levels:
  1. Survivors on stdout (always, unless -e)
  2. Path and probe summaries on stderr (-v)
  3. Full probe attempts and walk steps (-D, --log FILE, --json-log FILE)

Philosophy: if a path was dropped, we need to know WHY.
  - Was the server unresolvable, silent, or unregistered?
  - Did the watchdog fire on a filesystem call?
  - Was the entry simply missing?
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import json
import logging

from rich.console import Console
from rich.logging import RichHandler

from .models import AttemptRecord, ProbeResult, WalkResult


# ============================================================
# Structured Diagnostic Records
# ============================================================
# Not just log lines: structured objects that can be
# serialized to JSON or dumped to file.


@dataclass
class ProbeRecord:
    """Complete record of one server probe."""
    host: str
    liveness: str
    reason: Optional[str] = None
    detail: str = ""
    address: Optional[str] = None
    port: int = 0
    transport: Optional[str] = None
    duration_ms: Optional[float] = None
    attempts: list[AttemptRecord] = field(default_factory=list)

    @classmethod
    def from_result(cls, result: ProbeResult) -> ProbeRecord:
        return cls(
            host=result.host,
            liveness=result.liveness.value,
            reason=result.reason.value if result.reason else None,
            detail=result.detail,
            address=result.address,
            port=result.port,
            transport=result.transport.value if result.transport else None,
            duration_ms=result.duration_ms,
            attempts=list(result.attempts),
        )

    def to_dict(self) -> dict:
        return {
            "host": self.host,
            "liveness": self.liveness,
            "reason": self.reason,
            "detail": self.detail,
            "address": self.address,
            "port": self.port,
            "transport": self.transport,
            "duration_ms": self.duration_ms,
            "attempts": [a.to_dict() for a in self.attempts],
        }


@dataclass
class PathDiagnostic:
    """Verdict for one input path, and what it printed as."""
    path: str
    index: int
    ok: bool = False
    emitted: bool = False               # False for failures and -u duplicates
    canonical: Optional[str] = None
    reason: Optional[str] = None
    detail: str = ""
    host: Optional[str] = None

    @classmethod
    def from_result(cls, result: WalkResult, index: int,
                    emitted: bool) -> PathDiagnostic:
        return cls(
            path=result.path,
            index=index,
            ok=result.ok,
            emitted=emitted,
            canonical=result.canonical,
            reason=result.reason.value if result.reason else None,
            detail=result.detail,
            host=result.host,
        )

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "index": self.index,
            "ok": self.ok,
            "emitted": self.emitted,
            "canonical": self.canonical,
            "reason": self.reason,
            "detail": self.detail,
            "host": self.host,
        }


@dataclass
class RunDiagnostic:
    """Complete diagnostic record for one invocation."""
    timeout: float
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paths: list[PathDiagnostic] = field(default_factory=list)
    probes: list[ProbeRecord] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "timeout": self.timeout,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "summary": {
                "total_paths": len(self.paths),
                "survivors": sum(1 for p in self.paths if p.ok),
                "emitted": sum(1 for p in self.paths if p.emitted),
                "hosts_probed": len(self.probes),
                "hosts_dead": sum(1 for p in self.probes if p.liveness != "alive"),
            },
            "paths": [p.to_dict() for p in self.paths],
            "probes": [p.to_dict() for p in self.probes],
        }

    def dump_json(self, path: str):
        """Write full diagnostic to JSON file."""
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2, default=str)


# ============================================================
# Logger Setup
# ============================================================
#
# Output modes, layered:
#
#   default         : warnings and fatal errors only
#   --verbose / -v  : "Checking newton..", "path skipped: ..."
#   --debug / -D    : every probe attempt and walk step
#   --log FILE      : debug level to file, whatever the console shows
#
# stderr is shared with the shell that captures our stdout, so the console
# handler writes whole lines only.
#

def make_console() -> Console:
    return Console(stderr=True, highlight=False, soft_wrap=True)


def setup_logging(
    log_file: Optional[str] = None,
    debug: bool = False,
    verbose: bool = False,
    console: Optional[Console] = None,
) -> logging.Logger:
    """
    Configure the ``cknfs`` logger tree.

    - log_file: write debug-level to file
    - debug: debug-level to stderr
    - verbose: info-level to stderr
    """
    logger = logging.getLogger("cknfs")
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.propagate = False

    # File handler: always debug level
    if log_file:
        fh = logging.FileHandler(log_file, mode="w")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        ))
        logger.addHandler(fh)

    sh = RichHandler(
        console=console or make_console(),
        show_time=False,
        show_path=False,
        markup=False,
        rich_tracebacks=debug,
    )
    if debug:
        sh.setLevel(logging.DEBUG)
    elif verbose:
        sh.setLevel(logging.INFO)
    else:
        sh.setLevel(logging.WARNING)
    logger.addHandler(sh)

    return logger


# ============================================================
# Diagnostic Dump Formats
# ============================================================

def dump_path_summary(diag: PathDiagnostic) -> str:
    """One-line summary for verbose output."""
    if diag.ok:
        mark = "✓" if diag.emitted else "="
        via = f" -> {diag.canonical}" if diag.canonical and diag.canonical != diag.path else ""
        return f"[{mark}] {diag.path}{via}"
    return f"[✗] {diag.path} | {diag.reason}: {diag.detail}"


def dump_run_summary(diag: RunDiagnostic) -> str:
    """Full run summary, suitable for terminal or report output."""
    lines = [
        f"cknfs: {len(diag.paths)} paths, timeout {diag.timeout:g}s",
        f"{'─' * 50}",
    ]
    for path in diag.paths:
        lines.append(dump_path_summary(path))

    if diag.probes:
        lines.append(f"{'─' * 50}")
        for probe in diag.probes:
            took = f" ({probe.duration_ms:.0f}ms)" if probe.duration_ms is not None else ""
            where = f" {probe.address}:{probe.port}/{probe.transport}" if probe.address else ""
            status = probe.liveness.upper()
            if probe.reason:
                status += f" [{probe.reason}]"
            lines.append(f"  {probe.host:20s} | {status}{where}{took}")

    s = diag.to_dict()["summary"]
    lines.append(f"{'─' * 50}")
    lines.append(
        f"Paths: {s['total_paths']} | "
        f"Survivors: {s['survivors']} | "
        f"Emitted: {s['emitted']} | "
        f"Hosts: {s['hosts_probed']} ({s['hosts_dead']} dead)"
    )
    return "\n".join(lines)
