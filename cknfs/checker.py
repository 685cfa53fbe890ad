"""
cknfs: check paths for dead NFS servers.

Don't you hate it when you log in on an NFS client, only to find yourself
hung because one of your execution paths points to a dead NFS server?

cknfs takes a list of paths, examines each for NFS mount points, checks the
corresponding servers, and prints only the paths that do not lead to a dead
one:

    set path = `cknfs /bin /usr/bin /usr/ucb . /net/newton/bin`

PathChecker is the driver: paths are walked strictly in input order, one at
a time, sharing one MountCatalog and one HostLivenessCache for the run.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional
import argparse
import logging
import sys

from rich.console import Console
from rich.markup import escape

from .diagnostics import (
    PathDiagnostic, ProbeRecord, RunDiagnostic,
    dump_run_summary, make_console, setup_logging,
)
from .errors import MountTableError, UsageError
from .events import EventCallback, ProbeEvent
from .models import WalkResult
from .mounts import MountCatalog
from .prober import DEFAULT_TIMEOUT, HostLivenessCache, LivenessProber
from .walker import PathWalker, WalkerConfig

logger = logging.getLogger("cknfs.checker")

EXIT_OK = 0
EXIT_FAILURE = 1


# ============================================================
# Driver
# ============================================================

@dataclass
class CheckReport:
    results: list[WalkResult] = field(default_factory=list)
    survivors: list[str] = field(default_factory=list)
    diagnostic: Optional[RunDiagnostic] = None


class PathChecker:
    """
    Usage:
        checker = PathChecker(WalkerConfig(timeout=5, canonical=True))
        report = checker.check(["/bin", "/net/newton/bin"])
        report.survivors   # ["/usr/bin"] if newton is dead
    """

    def __init__(self, config: Optional[WalkerConfig] = None,
                 catalog: Optional[MountCatalog] = None,
                 cache: Optional[HostLivenessCache] = None,
                 prober: Optional[LivenessProber] = None,
                 walker: Optional[PathWalker] = None):
        self.config = config or WalkerConfig()
        self.catalog = catalog if catalog is not None else MountCatalog()
        self.cache = cache if cache is not None else HostLivenessCache()
        self.prober = prober or LivenessProber(
            timeout=self.config.timeout,
            portmapper_port=self.config.portmapper_port,
            event_callback=self.config.event_callback,
        )
        self.walker = walker or PathWalker(self.catalog, self.cache,
                                           self.prober, self.config)

    def check(self, paths: Iterable[str]) -> CheckReport:
        report = CheckReport()
        diag = RunDiagnostic(timeout=self.config.timeout, started_at=datetime.now())
        report.diagnostic = diag
        seen: set[str] = set()

        for index, path in enumerate(paths):
            logger.debug(f"chkpath({path})")
            result = self.walker.walk(path)
            report.results.append(result)

            emitted = False
            if result.ok:
                key = result.canonical or path
                if self.config.unique and key in seen:
                    logger.debug(f"{path}: duplicate of an earlier path ({key})")
                else:
                    seen.add(key)
                    report.survivors.append(
                        result.canonical if self.config.canonical and result.canonical
                        else path
                    )
                    emitted = True
            else:
                self._report_failure(result)

            diag.paths.append(PathDiagnostic.from_result(result, index, emitted))

        diag.probes = [ProbeRecord.from_result(r) for r in self.cache.results()]
        diag.completed_at = datetime.now()
        return report

    def _report_failure(self, result: WalkResult) -> None:
        if result.missing and self.config.quiet_missing:
            return
        # -L names the expanded prefix the walk reached
        shown = (result.prefix if self.config.canonical and result.prefix
                 else result.path)
        logger.info(f"path skipped: {shown} ({result.detail})")


def format_output(survivors: list[str], delimiter: str = " ") -> str:
    if not survivors:
        return ""
    return delimiter.join(survivors) + "\n"


def exit_status(report: CheckReport, paths_given: bool, silent: bool = False) -> int:
    """0 if anything survived, in silent mode, or if there was nothing to check."""
    if report.survivors or silent or not paths_given:
        return EXIT_OK
    return EXIT_FAILURE


# ============================================================
# CLI Entry Point
# ============================================================

class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message):
        raise UsageError(message)


def _positive_float(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid timeout: {text!r}")
    if value <= 0:
        raise argparse.ArgumentTypeError(f"timeout must be positive: {text!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="cknfs",
        description="Check paths for dead NFS servers. "
                    "Good paths are printed to stdout.",
        epilog=(
            "Examples:\n"
            "  set path = `cknfs /bin /usr/bin . /net/newton/bin`\n"
            "  PATH=`cknfs -s /bin /usr/bin /net/newton/bin`\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument("paths", nargs="*")

    parser.add_argument("-e", "--silent", action="store_true",
                        help="silent, do not print paths")
    parser.add_argument("-f", "--any-type", action="store_true",
                        help="accept any file type, not just directories")
    parser.add_argument("-H", "--show-host", action="store_true",
                        help="print the name of each host as it is checked")
    parser.add_argument("-L", "--canonical", action="store_true",
                        help="expand symbolic links")
    parser.add_argument("-q", "--quiet", action="store_true",
                        help="do not report nonexistent paths")
    parser.add_argument("-s", "--sh", action="store_true",
                        help="print paths in sh format (colons)")
    parser.add_argument("-t", "--timeout", type=_positive_float,
                        default=DEFAULT_TIMEOUT,
                        help="seconds before assuming an NFS server is dead "
                             f"(default {DEFAULT_TIMEOUT:g})")
    parser.add_argument("-u", "--unique", action="store_true",
                        help="drop paths that resolve to one already printed")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("-D", "--debug", action="store_true",
                        help="debug (implies -v)")
    parser.add_argument("--log", default=None,
                        help="write a debug log to FILE")
    parser.add_argument("--json-log", default=None,
                        help="write full diagnostic JSON to FILE")
    return parser


def _show_host(console: Console) -> EventCallback:
    def on_probe(evt: ProbeEvent) -> None:
        if evt.event == "probe_start":
            console.print(f"[bold]{escape(evt.host)}[/]")
    return on_probe


def main(argv: Optional[list[str]] = None) -> int:
    """
    cknfs -v -t 5 /bin /usr/bin /net/newton/bin
    """
    # Whole lines on stderr; stdout goes out in one block at the end.
    if hasattr(sys.stderr, "reconfigure"):
        sys.stderr.reconfigure(line_buffering=True)
    console = make_console()
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
        if not args.paths and not args.silent:
            raise UsageError("no paths given")
    except UsageError as e:
        parser.print_usage(sys.stderr)
        console.print(f"cknfs: error: {e}", markup=False)
        return EXIT_FAILURE

    config = WalkerConfig(
        timeout=args.timeout,
        accept_any_type=args.any_type,
        silent=args.silent,
        canonical=args.canonical,
        unique=args.unique,
        delimiter=":" if args.sh else " ",
        verbose=args.verbose or args.debug,
        debug=args.debug,
        show_host=args.show_host,
        quiet_missing=args.quiet,
        log_file=args.log,
        json_log=args.json_log,
    )
    if config.show_host:
        config.event_callback = _show_host(console)

    setup_logging(log_file=config.log_file, debug=config.debug,
                  verbose=config.verbose, console=console)

    checker = PathChecker(config)
    try:
        report = checker.check(args.paths)
    except MountTableError as e:
        logger.error(f"{e}")
        return EXIT_FAILURE

    output = format_output(report.survivors, config.delimiter)
    if output and not config.silent:
        sys.stdout.write(output)
        sys.stdout.flush()

    if config.json_log:
        report.diagnostic.dump_json(config.json_log)
    logger.debug("\n" + dump_run_summary(report.diagnostic))

    return exit_status(report, paths_given=bool(args.paths), silent=config.silent)


if __name__ == "__main__":
    sys.exit(main())
