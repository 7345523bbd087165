"""Global constants and path configuration for Windows-VM-Manager."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_GUEST_PROFILE_PATH = Path("/config/guest.yaml")

# Template and per-run artifacts
VM_IMAGES_DIR = Path("/vm-images")
TEMPLATE_PATH = VM_IMAGES_DIR / "server-core-docker.qcow2"
RUNTIME_DISK_PATH = Path("/tmp/runtime-disk.qcow2")
BUILD_DISK_PATH = Path("/tmp/build-disk.qcow2")
WINDOWS_ISO_PATH = Path("/isos/windows-server-2022.iso")
UNATTEND_FILE_PATH = Path("/unattend/autounattend.xml")
ANSWER_ISO_PATH = Path("/tmp/autounattend.iso")
INSTALL_LOG_PATH = Path("/tmp/windows-install.log")
LAST_INSTALL_LOG_PATH = Path("/tmp/last-install.log")
QEMU_PID_FILE = Path("/tmp/qemu.pid")
QEMU_MONITOR_SOCKET = Path("/tmp/qemu-monitor.sock")
DNSMASQ_PID_FILE = Path("/tmp/dnsmasq.pid")

QEMU_BINARY = "qemu-system-x86_64"
QEMU_IMG = "qemu-img"
RUNTIME_TOOLS = (QEMU_BINARY, QEMU_IMG)
BUILD_TOOLS = (QEMU_BINARY, QEMU_IMG, "xorriso")

# Guest-side ports
VM_DOCKER_PORT = 2376
VM_APP_PORT = 8080
VM_WINRM_PORT = 5985
VNC_DISPLAY = 1
VNC_PORT = 5900 + VNC_DISPLAY

# Bridge mode
BRIDGE_CANDIDATES = ("docker0", "br0", "virbr0")
BRIDGE_HELPER = Path("/usr/lib/qemu/qemu-bridge-helper")
BRIDGE_CONF = Path("/etc/qemu/bridge.conf")
SYS_CLASS_NET = Path("/sys/class/net")
VM_MAC_ADDRESS = "52:54:00:12:34:56"
DHCP_LEASE_TIME = "12h"
DHCP_DNS_SERVERS = ("8.8.8.8", "8.8.4.4")
DHCP_STOP_TIMEOUT = 5
DHCP_STOP_INTERVAL = 0.2
GUEST_HOSTNAME = "wcb-vm"

# Poll bounds (seconds); BOOT/DOCKER/SHUTDOWN/INSTALL are env-overridable
GUEST_NETWORK_TIMEOUT = 60
GUEST_NETWORK_INTERVAL = 2
CONTROL_CHANNEL_INTERVAL = 5
API_INTERVAL = 5
INSTALL_INTERVAL = 10
STABLE_PROBES = 3
REBOOT_TIMEOUT = 600
REBOOT_INTERVAL = 15
SERVICE_INSTALL_TIMEOUT = 1800
SERVICE_INSTALL_INTERVAL = 30
MAX_PROVISION_ATTEMPTS = 3
BUILD_SHUTDOWN_TIMEOUT = 300
TERM_WAIT = 5
HEALTH_INTERVAL = 30
HEALTH_REPAIR_THRESHOLD = 3
HTTP_PROBE_TIMEOUT = 5
REMOTE_TIMEOUT = 30

TRUTHY = {"1", "true", "yes", "on"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

DISK_SIZE_RE = re.compile(r"^\d+[KMGTkmgt]?$")
IPV4_RE = re.compile(r"^(\d{1,3})\.(\d{1,3})\.(\d{1,3})\.(\d{1,3})$")

_SENSITIVE_FIELDS = {"password"}
