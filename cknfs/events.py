"""
Shared event types for prober -> front-end communication.

The prober emits a ProbeEvent when it starts contacting a server and when it
reaches a verdict. The CLI consumes them (the -H flag prints each host name
as it is contacted); tests use them to count network round trips. Neither
side imports the other. This module is the only shared dependency.

Usage (prober side):
    from .events import ProbeEvent
    callback(ProbeEvent(event="probe_start", host="newton"))

Usage (consumer side):
    def on_probe(evt: ProbeEvent) -> None:
        if evt.event == "probe_start":
            print(evt.host, file=sys.stderr)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from .models import FailureReason, Liveness


@dataclass
class ProbeEvent:
    """
    One event from the prober.

    Events:
        probe_start  - about to contact the server (or inspect the local daemon)
        probe_done   - verdict reached
    """
    event: str                          # "probe_start", "probe_done"
    host: str = ""
    directory: str = ""                 # mount point that triggered the probe
    local_pid: Optional[int] = None

    # probe_done only
    liveness: Liveness = Liveness.UNCHECKED
    reason: Optional[FailureReason] = None
    address: Optional[str] = None
    duration_ms: Optional[float] = None


EventCallback = Callable[[ProbeEvent], None]
