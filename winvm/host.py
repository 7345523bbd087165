"""Host capability probing for Windows-VM-Manager."""

from __future__ import annotations

import os
import shutil
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional

from winvm.constants import BRIDGE_CONF, BRIDGE_HELPER, SYS_CLASS_NET
from winvm.exceptions import PreconditionError
from winvm.utils import log

_UNRESOLVED_NEIGHBOUR_STATES = ("FAILED", "INCOMPLETE")


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def is_rootless() -> bool:
    """Check if running in a rootless container (UID mapping active)."""
    try:
        with open("/proc/self/uid_map") as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 3:
                    # In rootless, UID 0 inside maps to a non-zero UID outside
                    if parts[0] == "0" and parts[1] != "0":
                        return True
        return False
    except OSError:
        return False


def missing_tools(tools: Iterable[str]) -> List[str]:
    return [tool for tool in tools if shutil.which(tool) is None]


def require_tools(tools: Iterable[str]) -> None:
    missing = missing_tools(tools)
    if missing:
        raise PreconditionError(f"Required tool not found: {', '.join(missing)}")


def find_bridge(candidates: Iterable[str], sys_net: Path = SYS_CLASS_NET) -> Optional[str]:
    """Return the first candidate that exists on the host as a bridge interface."""
    for name in candidates:
        if (sys_net / name / "bridge").is_dir():
            return name
    return None


def bridge_helper_available(helper: Path = BRIDGE_HELPER) -> bool:
    return helper.exists()


def grant_bridge_access(bridge: str, conf: Path = BRIDGE_CONF) -> bool:
    """Make sure the QEMU bridge helper ACL allows ``bridge``.

    Returns True when access is (or already was) granted. A missing or
    read-only ACL file means bridge attachment is not possible here.
    """
    rule = f"allow {bridge}"
    try:
        lines = conf.read_text().splitlines()
    except FileNotFoundError:
        log("WARN", f"QEMU bridge ACL {conf} not found")
        return False
    except OSError as exc:
        log("WARN", f"Cannot read QEMU bridge ACL {conf}: {exc}")
        return False
    if any(line.strip() == rule for line in lines):
        return True
    log("INFO", f"Configuring QEMU bridge permissions for {bridge}...")
    try:
        with open(conf, "a") as f:
            f.write(f"{rule}\n")
    except OSError as exc:
        log("WARN", f"Cannot update QEMU bridge ACL {conf}: {exc}")
        return False
    log("SUCCESS", f"Added {bridge} to QEMU bridge configuration")
    return True


def neighbour_present(bridge: str, address: str) -> bool:
    """Return True if ``address`` shows up in the neighbour table of ``bridge``."""
    try:
        result = subprocess.run(
            ["ip", "neigh", "show", "dev", bridge],
            capture_output=True,
            text=True,
            timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    if result.returncode != 0:
        return False
    for line in result.stdout.splitlines():
        fields = line.split()
        if fields[:1] != [address]:
            continue
        # Entries still resolving or that never got an ARP reply do not count.
        if fields[-1] in _UNRESOLVED_NEIGHBOUR_STATES:
            continue
        return True
    return False
