"""Bounded readiness polling for Windows-VM-Manager.

Every wait in the orchestrator (guest network, control channel, service
installation, reboot recovery, API health, guest power-off) goes through
``wait_for``. A probe fails when its bound elapses or, first, when the
supplied liveness check reports that the VM process has died.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional

from winvm.exceptions import PollTimeout, ProcessDied
from winvm.utils import log


@dataclass(frozen=True)
class Probe:
    name: str
    check: Callable[[], bool]
    timeout: float
    interval: float


def wait_for(probe: Probe, alive: Optional[Callable[[], bool]] = None, quiet: bool = False) -> float:
    """Block until ``probe.check`` succeeds; return the elapsed seconds."""
    if not quiet:
        log("INFO", f"Waiting for {probe.name}...")
    start = time.monotonic()
    while True:
        if alive is not None and not alive():
            raise ProcessDied(f"VM process died unexpectedly while waiting for {probe.name}")
        elapsed = time.monotonic() - start
        if elapsed > probe.timeout:
            raise PollTimeout(f"Timeout waiting for {probe.name} ({int(probe.timeout)}s)")
        if probe.check():
            # The check itself may block (remote calls); re-read the clock.
            elapsed = time.monotonic() - start
            if elapsed > probe.timeout:
                raise PollTimeout(f"Timeout waiting for {probe.name} ({int(probe.timeout)}s)")
            if not quiet:
                log("SUCCESS", f"{probe.name} ready after {int(elapsed)}s")
            return elapsed
        if not quiet:
            log("INFO", f"{probe.name} not ready yet ({int(elapsed)}s/{int(probe.timeout)}s)...")
        time.sleep(probe.interval)


def consecutive(check: Callable[[], bool], count: int) -> Callable[[], bool]:
    """Wrap ``check`` so that it only passes after ``count`` successes in a row."""
    streak = 0

    def wrapped() -> bool:
        nonlocal streak
        streak = streak + 1 if check() else 0
        return streak >= count

    return wrapped
