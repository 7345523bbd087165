"""Configuration loading and environment variable parsing for Windows-VM-Manager."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from winvm.constants import (
    BUILD_DISK_PATH,
    DEFAULT_GUEST_PROFILE_PATH,
    DHCP_DNS_SERVERS,
    RUNTIME_DISK_PATH,
    TEMPLATE_PATH,
    UNATTEND_FILE_PATH,
    VM_DOCKER_PORT,
    VM_MAC_ADDRESS,
    WINDOWS_ISO_PATH,
)
from winvm.exceptions import ManagerError
from winvm.models import GuestProfile, RemoteCommand, Shell, VMConfig
from winvm.utils import (
    get_env,
    get_env_bool,
    get_env_path,
    log,
    parse_int_env,
    validate_disk_size,
    validate_ipv4,
)

DEFAULT_INSTALL_LOG = r"C:\docker-install.log"
DEFAULT_MARKER = r"C:\docker-installed.txt"
DOCKER_CE_SCRIPT_URL = (
    "https://raw.githubusercontent.com/microsoft/Windows-Containers/Main/"
    "helpful_tools/Install-DockerCE/install-docker-ce.ps1"
)

# Steps that install the Docker engine inside a freshly installed guest.
# ``{log_path}`` and ``{marker_path}`` are substituted from the profile.
DEFAULT_PROVISIONING_STEPS: List[Dict[str, Any]] = [
    {
        "description": "Setting up installation logging",
        "body": 'Write-Output "Docker installation started" | Out-File -FilePath {log_path} -Encoding ASCII',
    },
    {
        "description": "Installing NuGet provider",
        "body": "Install-PackageProvider -Name NuGet -MinimumVersion 2.8.5.201 -Force",
    },
    {
        "description": "Downloading Microsoft Docker installation script",
        "body": f'Invoke-WebRequest -UseBasicParsing "{DOCKER_CE_SCRIPT_URL}" -OutFile "C:\\install-docker-ce.ps1"',
    },
    {
        "description": "Installing Docker using Microsoft script",
        "body": 'C:\\install-docker-ce.ps1 -DockerVersion "latest"',
    },
    {
        "description": "Setting Docker startup type",
        "body": "Set-Service Docker -StartupType Automatic",
        "required": False,
    },
    {
        "description": "Creating completion marker",
        "body": 'Write-Output "Docker installation completed successfully" | Out-File -FilePath {marker_path} -Encoding ASCII',
    },
]

DEFAULT_PROFILE: Dict[str, Dict[str, Any]] = {
    "guest": {
        "username": "developer",
        "password": "Password123",
    },
    "service": {
        "name": "docker",
        "binary": r"C:\Windows\system32\dockerd.exe",
        "flag": "--run-service",
        "config_path": r"C:\ProgramData\Docker\config\daemon.json",
        "data_root": r"C:\Docker",
        "api_port": VM_DOCKER_PORT,
        "storage_size": "60GB",
        "firewall_rule": "Docker API TCP",
        "api_probe_path": "/version",
    },
    "provisioning": {
        "log_path": DEFAULT_INSTALL_LOG,
        "marker_path": DEFAULT_MARKER,
        "steps": DEFAULT_PROVISIONING_STEPS,
    },
}


def _merge_section(name: str, overrides: Dict[str, Any]) -> Dict[str, Any]:
    section = overrides.get(name) or {}
    if not isinstance(section, dict):
        raise ManagerError(f"Guest profile section '{name}' must be a mapping")
    merged = dict(DEFAULT_PROFILE[name])
    merged.update(section)
    return merged


def _parse_step(raw: Any, index: int, log_path: str, marker_path: str) -> RemoteCommand:
    if not isinstance(raw, dict):
        raise ManagerError(f"Provisioning step #{index} must be a mapping")
    body = raw.get("body")
    if not body or not isinstance(body, str):
        raise ManagerError(f"Provisioning step #{index} is missing 'body'")
    shell_raw = str(raw.get("shell", Shell.POWERSHELL.value)).strip().lower()
    try:
        shell = Shell(shell_raw)
    except ValueError:
        raise ManagerError(f"Provisioning step #{index}: unsupported shell '{shell_raw}' (expected cmd or powershell)")
    body = body.replace("{log_path}", log_path).replace("{marker_path}", marker_path)
    return RemoteCommand(
        description=str(raw.get("description") or f"Provisioning step {index}"),
        body=body,
        shell=shell,
        required=bool(raw.get("required", True)),
    )


def load_guest_profile(path: Optional[Path] = None) -> GuestProfile:
    """Build the guest profile from built-in defaults and an optional YAML override."""
    if path is None:
        path = DEFAULT_GUEST_PROFILE_PATH
    overrides: Dict[str, Any] = {}
    if path.exists():
        try:
            data = yaml.safe_load(path.read_text())
        except yaml.YAMLError as exc:
            raise ManagerError(f"Guest profile {path} contains invalid YAML: {exc}")
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ManagerError(f"Guest profile {path} must contain a YAML mapping")
        overrides = data
        log("INFO", f"Loaded guest profile overrides from {path}")

    guest = _merge_section("guest", overrides)
    service = _merge_section("service", overrides)
    provisioning = _merge_section("provisioning", overrides)

    try:
        api_port = int(service["api_port"])
    except (TypeError, ValueError):
        raise ManagerError(f"Guest profile service.api_port must be an integer (got {service['api_port']!r})")
    if not 1 <= api_port <= 65535:
        raise ManagerError(f"Guest profile service.api_port out of range (got {api_port})")

    log_path = str(provisioning["log_path"])
    marker_path = str(provisioning["marker_path"])
    raw_steps = provisioning.get("steps") or []
    if not isinstance(raw_steps, list):
        raise ManagerError("Guest profile provisioning.steps must be a list")
    steps = [_parse_step(raw, idx, log_path, marker_path) for idx, raw in enumerate(raw_steps, start=1)]

    return GuestProfile(
        username=str(guest["username"]),
        password=str(guest["password"]),
        service_name=str(service["name"]),
        service_binary=str(service["binary"]),
        service_flag=str(service["flag"]),
        config_path=str(service["config_path"]),
        data_root=str(service["data_root"]),
        listen_address=str(service.get("listen") or f"tcp://0.0.0.0:{api_port}"),
        storage_size=str(service["storage_size"]),
        firewall_rule=str(service["firewall_rule"]),
        api_port=api_port,
        api_probe_path=str(service["api_probe_path"]),
        install_log_path=log_path,
        marker_path=marker_path,
        provisioning_steps=steps,
    )


def parse_env() -> VMConfig:
    memory_mb = parse_int_env("VM_RAM", "4096", min_val=512)
    cpus = parse_int_env("VM_CPUS", "2")
    host_docker_port = parse_int_env("HOST_DOCKER_PORT", "2376", min_val=1, max_val=65535)
    host_app_port = parse_int_env("HOST_APP_PORT", "8086", min_val=1, max_val=65535)
    vnc_enabled = get_env_bool("ENABLE_VNC", False)

    build_disk_size = validate_disk_size((get_env("VM_DISK_SIZE") or "100G").strip() or "100G")
    guest_ip = validate_ipv4("VM_STATIC_IP", (get_env("VM_STATIC_IP") or "172.17.0.100").strip())
    guest_gateway = validate_ipv4("VM_GATEWAY", (get_env("VM_GATEWAY") or "172.17.0.1").strip())

    boot_timeout = parse_int_env("BOOT_TIMEOUT", "600")
    docker_timeout = parse_int_env("DOCKER_TIMEOUT", "300")
    shutdown_timeout = parse_int_env("SHUTDOWN_TIMEOUT", "60", min_val=0)
    install_timeout = parse_int_env("INSTALL_TIMEOUT", "3600")

    profile = load_guest_profile(get_env_path("GUEST_PROFILE", DEFAULT_GUEST_PROFILE_PATH))

    # The NAT forwards bind these host ports; the control channel keeps its own port.
    ports = {"HOST_DOCKER_PORT": host_docker_port, "HOST_APP_PORT": host_app_port}
    if host_docker_port == host_app_port:
        raise ManagerError(
            f"Port conflict: HOST_DOCKER_PORT={host_docker_port} collides with HOST_APP_PORT={host_app_port}."
        )
    for label, port in ports.items():
        if port == 5985:
            raise ManagerError(f"Port conflict: {label}={port} is reserved for the WinRM forward.")

    return VMConfig(
        memory_mb=memory_mb,
        cpus=cpus,
        host_docker_port=host_docker_port,
        host_app_port=host_app_port,
        vnc_enabled=vnc_enabled,
        template_path=get_env_path("VM_IMAGE_PATH", TEMPLATE_PATH),
        runtime_disk=get_env_path("RUNTIME_DISK", RUNTIME_DISK_PATH),
        build_disk=get_env_path("BUILD_DISK", BUILD_DISK_PATH),
        install_iso=get_env_path("WINDOWS_ISO", WINDOWS_ISO_PATH),
        unattend_file=get_env_path("UNATTEND_FILE", UNATTEND_FILE_PATH),
        build_disk_size=build_disk_size,
        guest_ip=guest_ip,
        guest_gateway=guest_gateway,
        guest_mac=VM_MAC_ADDRESS,
        boot_timeout=boot_timeout,
        docker_timeout=docker_timeout,
        shutdown_timeout=shutdown_timeout,
        install_timeout=install_timeout,
        require_kvm=get_env_bool("REQUIRE_KVM", False),
        profile=profile,
        dns_servers=DHCP_DNS_SERVERS,
    )
