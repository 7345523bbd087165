"""windows-vm-manager package."""

__all__ = [
    "build",
    "cli",
    "config",
    "constants",
    "disk",
    "exceptions",
    "host",
    "models",
    "network",
    "pipeline",
    "poller",
    "process",
    "reconcile",
    "remote",
    "utils",
]
