"""Idempotent guest-side configuration of the container engine API."""

from __future__ import annotations

import json
import ntpath
import re
from typing import Optional

from winvm.exceptions import ReconcileError, RemoteError
from winvm.models import CommandResult, GuestProfile, RemoteCommand, Shell
from winvm.remote import RemoteClient
from winvm.utils import log, log_lines

# A listen address on the service command line conflicts with daemon.json.
_HOST_FLAG_RE = re.compile(r"(?:^|\s)(?:-H|--host)(?:[\s=]|$)")
_BINARY_PATH_RE = re.compile(r"BINARY_PATH_NAME\s*:\s*(.+)")


def _quote_ps(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def binary_path(sc_qc_output: str) -> Optional[str]:
    """Extract ``BINARY_PATH_NAME`` from ``sc qc`` output."""
    match = _BINARY_PATH_RE.search(sc_qc_output)
    return match.group(1).strip() if match else None


def launch_command_needs_fix(sc_qc_output: str, flag: str) -> bool:
    path = binary_path(sc_qc_output)
    if path is None:
        return True
    return bool(_HOST_FLAG_RE.search(path)) or flag not in path.split()


def config_exposes(config_text: str, listen_address: str) -> bool:
    """Return True if the daemon configuration lists ``listen_address`` in ``hosts``."""
    text = config_text.strip().lstrip("\ufeff")
    try:
        config = json.loads(text)
    except ValueError:
        return f'"{listen_address}"' in text
    hosts = config.get("hosts") if isinstance(config, dict) else None
    return isinstance(hosts, list) and listen_address in hosts


class GuestReconciler:
    """Converge the guest service towards its desired API exposure.

    Reads are advisory: a failed read is treated as "not converged" and the
    corresponding write proceeds. Writes are required: a non-zero exit raises
    :class:`ReconcileError`. On an already converged guest nothing is stopped
    or restarted.
    """

    def __init__(self, client: RemoteClient, profile: GuestProfile) -> None:
        self.client = client
        self.profile = profile
        self.service_stopped = False

    def daemon_config(self) -> str:
        return json.dumps(
            {
                "hosts": [self.profile.listen_address, "npipe://"],
                "debug": False,
                "data-root": self.profile.data_root,
                "storage-opts": [f"size={self.profile.storage_size}"],
            }
        )

    def _read(self, description: str, body: str, shell: Shell = Shell.CMD) -> Optional[CommandResult]:
        try:
            result = self.client.run(RemoteCommand(description, body, shell, required=False))
        except RemoteError as exc:
            log("WARN", f"{description} failed: {exc}")
            return None
        return result

    def _write(self, description: str, body: str, shell: Shell = Shell.CMD) -> CommandResult:
        log("INFO", f"{description}...")
        result = self.client.run(RemoteCommand(description, body, shell))
        if not result.ok:
            log_lines("ERROR", result.stderr or result.stdout, prefix="  ")
            raise ReconcileError(f"{description} failed with exit code {result.exit_code}", result)
        return result

    def _stop_service(self) -> None:
        if self.service_stopped:
            return
        name = self.profile.service_name
        result = self._read(f"Stopping {name} service", f"Stop-Service {name} -Force", Shell.POWERSHELL)
        if result is not None and not result.ok:
            log("WARN", f"Stop-Service {name} returned {result.exit_code}")
        self.service_stopped = True

    def ensure_api_config(self) -> bool:
        profile = self.profile
        current = self._read("Reading daemon configuration", f'type "{profile.config_path}"')
        if current is not None and current.ok and config_exposes(current.stdout, profile.listen_address):
            log("INFO", f"Daemon configuration already exposes {profile.listen_address}")
            return False

        self._stop_service()
        script = "\n".join(
            [
                f"New-Item -ItemType Directory -Force -Path {_quote_ps(ntpath.dirname(profile.config_path))} | Out-Null",
                f"New-Item -ItemType Directory -Force -Path {_quote_ps(profile.data_root)} | Out-Null",
                "@'",
                self.daemon_config(),
                "'@ | Set-Content -Path " + _quote_ps(profile.config_path) + " -Encoding ASCII",
            ]
        )
        self._write("Writing daemon configuration", script, Shell.POWERSHELL)
        log("SUCCESS", f"Daemon configuration written to {profile.config_path}")
        return True

    def ensure_launch_command(self) -> bool:
        name = self.profile.service_name
        current = self._read(f"Querying {name} service definition", f"sc qc {name}")
        if current is not None and current.ok and not launch_command_needs_fix(current.stdout, self.profile.service_flag):
            log("INFO", f"{name} service launch command is clean")
            return False

        self._stop_service()
        self._write(
            f"Resetting {name} service launch command",
            f'sc config {name} binpath= "{self.profile.service_command}"',
        )
        self._write(f"Setting {name} service to automatic start", f"sc config {name} start= auto")
        return True

    def ensure_firewall_rule(self) -> bool:
        rule = self.profile.firewall_rule
        current = self._read("Checking firewall rule", f'netsh advfirewall firewall show rule name="{rule}"')
        if current is not None and current.ok:
            log("INFO", f"Firewall rule '{rule}' present")
            return False
        self._write(
            "Adding firewall rule for the API port",
            f'netsh advfirewall firewall add rule name="{rule}" dir=in protocol=TCP '
            f"localport={self.profile.api_port} action=allow",
        )
        return True

    def ensure_running(self) -> bool:
        name = self.profile.service_name
        if not self.service_stopped:
            status = self._read(
                f"Querying {name} service status",
                f"(Get-Service {name} -ErrorAction SilentlyContinue).Status",
                Shell.POWERSHELL,
            )
            if status is not None and status.ok and status.stdout.strip() == "Running":
                return False
        self._write(f"Starting {name} service", f"Start-Service {name}", Shell.POWERSHELL)
        self.service_stopped = False
        log("SUCCESS", f"{name} service started")
        return True

    def reconcile(self) -> bool:
        """Run every step; return True when anything on the guest changed."""
        log("INFO", "Reconciling guest API configuration...")
        self.service_stopped = False
        changed = self.ensure_api_config()
        changed = self.ensure_launch_command() or changed
        changed = self.ensure_firewall_rule() or changed
        changed = self.ensure_running() or changed
        if changed:
            log("SUCCESS", "Guest API configuration reconciled")
        else:
            log("INFO", "Guest API configuration already converged")
        return changed

    def license_status(self) -> Optional[str]:
        log("INFO", "Checking Windows license status...")
        result = self._read(
            "Reading license re-arm count",
            "Get-CimInstance SoftwareLicensingService | Select-Object -ExpandProperty RemainingWindowsReArmCount",
            Shell.POWERSHELL,
        )
        if result is None or not result.ok or not result.stdout:
            log("WARN", "Could not check license status")
            return None
        log("INFO", f"License rearms remaining: {result.stdout}")
        return result.stdout
