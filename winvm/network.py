"""Network mode selection for Windows-VM-Manager.

Two mutually exclusive attachment strategies exist. ``BridgeNetwork`` puts
the guest directly on a host bridge with a fixed address leased by a
dedicated dnsmasq instance. ``NatNetwork`` uses QEMU user networking with an
explicit host-port forward for every exposed service. Both variants expose
the same small interface so that the rest of the orchestrator never branches
on the mode.
"""

from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import ClassVar, List, Optional, Sequence, Tuple, Union

from winvm.constants import (
    BRIDGE_CANDIDATES,
    BRIDGE_CONF,
    BRIDGE_HELPER,
    DHCP_LEASE_TIME,
    DHCP_STOP_INTERVAL,
    DHCP_STOP_TIMEOUT,
    DNSMASQ_PID_FILE,
    GUEST_HOSTNAME,
    SYS_CLASS_NET,
    VM_APP_PORT,
    VM_WINRM_PORT,
)
from winvm.exceptions import ManagerError, PollTimeout
from winvm.host import (
    bridge_helper_available,
    find_bridge,
    grant_bridge_access,
    is_rootless,
    missing_tools,
)
from winvm.models import PortForward, VMConfig
from winvm.poller import Probe, wait_for
from winvm.utils import format_command, log, remove_file


@dataclass(frozen=True)
class BridgeNetwork:
    bridge: str
    address: str
    api_port: int
    mode: ClassVar[str] = "bridge"

    def netdev_args(self) -> List[str]:
        return ["-netdev", f"bridge,id=net0,br={self.bridge}"]

    def control_url(self) -> str:
        return f"http://{self.address}:{VM_WINRM_PORT}/wsman"

    def api_url(self) -> str:
        return f"http://{self.address}:{self.api_port}"

    def describe(self) -> str:
        return f"Bridge mode via {self.bridge} (static VM IP: {self.address})"

    def connection_help(self) -> List[str]:
        docker_host = f"tcp://{self.address}:{self.api_port}"
        return [
            f"Networking: {self.describe()}",
            f"Docker daemon: {docker_host}",
            f"Application: http://{self.address}:{VM_APP_PORT}",
            "VM has full network access (no port forwarding)",
            "",
            "Usage examples:",
            "  # Create Docker context",
            f"  docker context create wcb --docker host={docker_host}",
            "  # Test Docker connection",
            "  docker -c wcb version",
            "  # Run Windows container",
            "  docker -c wcb run mcr.microsoft.com/windows/nanoserver:ltsc2022 ping 8.8.8.8",
        ]


@dataclass(frozen=True)
class NatNetwork:
    forwards: Tuple[PortForward, ...]
    api_host_port: int
    app_host_port: int
    control_host_port: int = VM_WINRM_PORT
    mode: ClassVar[str] = "nat"

    def netdev_args(self) -> List[str]:
        rules = [f"hostfwd={pf.proto}::{pf.host_port}-:{pf.guest_port}" for pf in self.forwards]
        return ["-netdev", ",".join(["user", "id=net0"] + rules)]

    def control_url(self) -> str:
        return f"http://localhost:{self.control_host_port}/wsman"

    def api_url(self) -> str:
        return f"http://localhost:{self.api_host_port}"

    def describe(self) -> str:
        return "NAT mode (port forwarding)"

    def connection_help(self) -> List[str]:
        lines = [
            f"Networking: {self.describe()}",
            f"Docker daemon: {self.api_url()}",
            f"Application port: http://localhost:{self.app_host_port}",
        ]
        lines.extend(f"  Host {pf.host_port}/{pf.proto} -> VM {pf.guest_port}" for pf in self.forwards)
        lines.extend(
            [
                "",
                "Usage examples:",
                "  # Test Docker connection",
                f"  curl {self.api_url()}/version",
                "  # Build Windows container",
                f"  docker -H tcp://localhost:{self.api_host_port} build -t my-app .",
            ]
        )
        return lines


NetworkMode = Union[BridgeNetwork, NatNetwork]


def nat_network(cfg: VMConfig, control_only: bool = False) -> NatNetwork:
    """NAT variant with forwards for the Docker API, the application and WinRM."""
    winrm = PortForward(VM_WINRM_PORT, VM_WINRM_PORT)
    if control_only:
        forwards: Tuple[PortForward, ...] = (winrm,)
    else:
        api_port = cfg.profile.api_port
        forwards = (
            PortForward(cfg.host_docker_port, api_port),
            PortForward(cfg.host_docker_port, api_port, "udp"),
            PortForward(cfg.host_app_port, VM_APP_PORT),
            winrm,
        )
    return NatNetwork(
        forwards=forwards,
        api_host_port=cfg.host_docker_port,
        app_host_port=cfg.host_app_port,
    )


def _pid_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        pass
    return True


class DhcpResponder:
    """Single-lease dnsmasq bound to the host bridge."""

    def __init__(
        self,
        interface: str,
        address: str,
        mac: str,
        gateway: str,
        dns_servers: Sequence[str],
        pid_file: Path = DNSMASQ_PID_FILE,
    ) -> None:
        self.interface = interface
        self.address = address
        self.mac = mac
        self.gateway = gateway
        self.dns_servers = tuple(dns_servers)
        self.pid_file = pid_file
        self.process: Optional[subprocess.Popen] = None

    def command(self) -> List[str]:
        return [
            "dnsmasq",
            f"--interface={self.interface}",
            "--bind-interfaces",
            f"--dhcp-range={self.address},{self.address},{DHCP_LEASE_TIME}",
            f"--dhcp-host={self.mac},{self.address},{GUEST_HOSTNAME},{DHCP_LEASE_TIME}",
            f"--dhcp-option=3,{self.gateway}",
            f"--dhcp-option=6,{','.join(self.dns_servers)}",
            "--keep-in-foreground",
            "--log-dhcp",
            "--log-facility=-",
            f"--pid-file={self.pid_file}",
        ]

    def stop_previous(self) -> None:
        """Terminate any earlier responder; only one may bind the interface."""
        if self.process is not None and self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self.process.kill()
        self.process = None

        try:
            pid = int(self.pid_file.read_text().strip())
        except FileNotFoundError:
            return
        except (OSError, ValueError):
            remove_file(self.pid_file)
            return
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        except PermissionError as exc:
            log("WARN", f"Cannot stop previous DHCP responder (PID {pid}): {exc}")
        else:
            # The new instance cannot bind the interface until the old one is gone.
            exited = Probe(
                "previous DHCP responder exit",
                lambda: not _pid_running(pid),
                DHCP_STOP_TIMEOUT,
                DHCP_STOP_INTERVAL,
            )
            try:
                wait_for(exited, quiet=True)
            except PollTimeout:
                log("WARN", f"Previous DHCP responder (PID {pid}) still running after {DHCP_STOP_TIMEOUT}s")
            else:
                log("INFO", f"Stopped previous DHCP responder (PID {pid})")
        remove_file(self.pid_file)

    def start(self) -> None:
        self.stop_previous()
        log("INFO", f"Starting DHCP server on {self.interface}...")
        cmd = self.command()
        log("DEBUG", f"Running: {format_command(cmd)}")
        try:
            proc = subprocess.Popen(cmd)
        except OSError as exc:
            raise ManagerError(f"Failed to start dnsmasq: {exc}") from exc
        time.sleep(0.5)
        if proc.poll() is not None:
            raise ManagerError(f"dnsmasq exited prematurely (code {proc.returncode})")
        self.process = proc
        log("SUCCESS", f"DHCP server configured for static IP {self.address}")


def select_network(
    cfg: VMConfig,
    candidates: Sequence[str] = BRIDGE_CANDIDATES,
    sys_net: Path = SYS_CLASS_NET,
    helper: Path = BRIDGE_HELPER,
    acl: Path = BRIDGE_CONF,
) -> NetworkMode:
    """Pick bridge mode when the host allows it, NAT otherwise."""
    bridge = find_bridge(candidates, sys_net)
    reason: Optional[str] = None
    if bridge is None:
        reason = "No bridge found"
    else:
        log("INFO", f"Found bridge: {bridge}")
        if not bridge_helper_available(helper):
            reason = "Bridge helper not available"
        elif missing_tools(["dnsmasq"]):
            reason = "dnsmasq not installed"
        elif not grant_bridge_access(bridge, acl):
            reason = "Bridge permissions not configured"

    if reason is None:
        responder = DhcpResponder(
            interface=bridge,  # type: ignore[arg-type]
            address=cfg.guest_ip,
            mac=cfg.guest_mac,
            gateway=cfg.guest_gateway,
            dns_servers=cfg.dns_servers,
        )
        try:
            responder.start()
        except ManagerError as exc:
            reason = f"DHCP responder failed ({exc})"
        else:
            network = BridgeNetwork(bridge=bridge, address=cfg.guest_ip, api_port=cfg.profile.api_port)  # type: ignore[arg-type]
            log("INFO", f"{network.describe()}: VM will be accessible without port forwarding")
            return network

    log("WARN", f"{reason}, using NAT mode")
    if is_rootless():
        log("WARN", "Rootless container detected; bridge networking usually requires a privileged container")
    network = nat_network(cfg)
    log("INFO", "NAT mode: limited network access with port forwarding")
    log("INFO", f"  Host {cfg.host_docker_port} -> VM {cfg.profile.api_port} (Docker API)")
    log("INFO", f"  Host {cfg.host_app_port} -> VM {VM_APP_PORT} (Application)")
    return network
