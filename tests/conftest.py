"""Shared test fixtures."""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

import pytest

from winvm.config import load_guest_profile
from winvm.exceptions import RemoteError
from winvm.models import CommandResult, GuestProfile, RemoteCommand, VMConfig


@pytest.fixture
def guest_profile(tmp_path) -> GuestProfile:
    """Built-in guest profile (no YAML override present)."""
    return load_guest_profile(tmp_path / "absent.yaml")


@pytest.fixture
def default_vm_config(tmp_path, guest_profile) -> VMConfig:
    """Return a VMConfig whose artifacts all live under tmp_path."""
    return VMConfig(
        memory_mb=4096,
        cpus=2,
        host_docker_port=2376,
        host_app_port=8086,
        vnc_enabled=False,
        template_path=tmp_path / "vm-images" / "server-core-docker.qcow2",
        runtime_disk=tmp_path / "runtime-disk.qcow2",
        build_disk=tmp_path / "build-disk.qcow2",
        install_iso=tmp_path / "windows.iso",
        unattend_file=tmp_path / "autounattend.xml",
        build_disk_size="100G",
        guest_ip="172.17.0.100",
        guest_gateway="172.17.0.1",
        guest_mac="52:54:00:12:34:56",
        boot_timeout=600,
        docker_timeout=300,
        shutdown_timeout=60,
        install_timeout=3600,
        require_kvm=False,
        profile=guest_profile,
    )


class FakeClient:
    """Records every remote command and answers from a rule table.

    ``rules`` maps a substring of the command body to a CommandResult, a
    RemoteError instance (raised) or a callable returning either. The first
    matching rule wins; unmatched commands succeed with empty output.
    """

    def __init__(self, rules: Optional[Dict[str, object]] = None, responsive: bool = True) -> None:
        self.rules: Dict[str, object] = dict(rules or {})
        self.responsive = responsive
        self.commands: List[RemoteCommand] = []

    @property
    def bodies(self) -> List[str]:
        return [cmd.body for cmd in self.commands]

    def ran(self, fragment: str) -> bool:
        return any(fragment in body for body in self.bodies)

    def run(self, command: RemoteCommand) -> CommandResult:
        self.commands.append(command)
        for fragment, answer in self.rules.items():
            if fragment in command.body:
                if callable(answer) and not isinstance(answer, CommandResult):
                    answer = answer()
                if isinstance(answer, RemoteError):
                    raise answer
                return answer  # type: ignore[return-value]
        return CommandResult(0)

    def is_responsive(self) -> bool:
        return self.responsive


@pytest.fixture
def fake_client_factory() -> Callable[..., FakeClient]:
    return FakeClient


class FakeClock:
    """Deterministic stand-in for the ``time`` module used by the poller."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock(monkeypatch) -> FakeClock:
    clock = FakeClock()
    monkeypatch.setattr("winvm.poller.time", clock)
    return clock


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads, used to ensure a clean slate.
_PARSE_ENV_VARS = [
    "VM_RAM",
    "VM_CPUS",
    "HOST_DOCKER_PORT",
    "HOST_APP_PORT",
    "ENABLE_VNC",
    "VM_DISK_SIZE",
    "VM_STATIC_IP",
    "VM_GATEWAY",
    "BOOT_TIMEOUT",
    "DOCKER_TIMEOUT",
    "SHUTDOWN_TIMEOUT",
    "INSTALL_TIMEOUT",
    "GUEST_PROFILE",
    "VM_IMAGE_PATH",
    "RUNTIME_DISK",
    "BUILD_DISK",
    "WINDOWS_ISO",
    "UNATTEND_FILE",
    "REQUIRE_KVM",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear all environment variables that parse_env() reads; point the profile at a missing file."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GUEST_PROFILE", str(tmp_path / "no-profile.yaml"))
