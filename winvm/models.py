"""Data models for Windows-VM-Manager."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, NamedTuple, Tuple


class PortForward(NamedTuple):
    host_port: int
    guest_port: int
    proto: str = "tcp"


class Shell(str, Enum):
    """Interpreter a remote command body is written for."""

    CMD = "cmd"
    POWERSHELL = "powershell"


@dataclass(frozen=True)
class RemoteCommand:
    description: str
    body: str
    shell: Shell = Shell.CMD
    required: bool = True


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class GuestProfile:
    username: str
    password: str
    service_name: str
    service_binary: str
    service_flag: str
    config_path: str
    data_root: str
    listen_address: str
    storage_size: str
    firewall_rule: str
    api_port: int
    api_probe_path: str
    install_log_path: str
    marker_path: str
    provisioning_steps: List[RemoteCommand] = field(default_factory=list)

    @property
    def service_command(self) -> str:
        return f"{self.service_binary} {self.service_flag}"


@dataclass
class VMConfig:
    memory_mb: int
    cpus: int
    host_docker_port: int
    host_app_port: int
    vnc_enabled: bool
    template_path: Path
    runtime_disk: Path
    build_disk: Path
    install_iso: Path
    unattend_file: Path
    build_disk_size: str
    guest_ip: str
    guest_gateway: str
    guest_mac: str
    boot_timeout: int
    docker_timeout: int
    shutdown_timeout: int
    install_timeout: int
    require_kvm: bool
    profile: GuestProfile
    dns_servers: Tuple[str, ...] = ("8.8.8.8", "8.8.4.4")
