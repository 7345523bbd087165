"""Utility functions for Windows-VM-Manager."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Iterable, List, Optional

from winvm.constants import (
    _LOG_VERBOSE,
    DISK_SIZE_RE,
    IPV4_RE,
    TRUTHY,
)
from winvm.exceptions import ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def log_lines(level: str, text: str, prefix: str = "", limit: Optional[int] = None) -> None:
    """Log each non-empty line of ``text``; keep only the last ``limit`` lines if given."""
    lines = [line.rstrip() for line in text.splitlines() if line.strip()]
    if limit is not None:
        lines = lines[-limit:]
    for line in lines:
        log(level, f"{prefix}{line}")


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def get_env_path(name: str, default: Path) -> Path:
    raw = (get_env(name) or "").strip()
    return Path(raw) if raw else default


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def validate_disk_size(raw: str) -> str:
    if not DISK_SIZE_RE.match(raw):
        raise ManagerError(
            f"Invalid VM_DISK_SIZE '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '100G')"
        )
    return raw


def validate_ipv4(name: str, raw: str) -> str:
    match = IPV4_RE.match(raw)
    if not match or any(int(octet) > 255 for octet in match.groups()):
        raise ManagerError(f"{name} must be an IPv4 address (got '{raw}')")
    return raw


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def remove_file(path: Path) -> bool:
    """Delete ``path`` if present. Returns True when a file was removed."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True


def format_command(cmd: Iterable[str]) -> str:
    return " ".join(cmd)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {format_command(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
