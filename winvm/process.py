"""QEMU process supervision for Windows-VM-Manager."""

from __future__ import annotations

import errno
import signal
import socket
import subprocess
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from winvm.constants import (
    QEMU_BINARY,
    QEMU_MONITOR_SOCKET,
    QEMU_PID_FILE,
    TERM_WAIT,
    VNC_DISPLAY,
    VNC_PORT,
)
from winvm.exceptions import ManagerError, PollTimeout, PreconditionError
from winvm.host import kvm_available
from winvm.models import VMConfig
from winvm.network import NetworkMode
from winvm.poller import Probe, wait_for
from winvm.utils import format_command, log, remove_file

STOPPED_ALREADY = "exited"
STOPPED_BY_GUEST = "guest"
STOPPED_BY_TERM = "term"
STOPPED_BY_KILL = "kill"


def build_qemu_command(
    cfg: VMConfig,
    disk: Path,
    network: NetworkMode,
    *,
    cdroms: Sequence[Path] = (),
    boot: Optional[str] = None,
    serial_log: Optional[Path] = None,
    monitor_socket: Optional[Path] = QEMU_MONITOR_SOCKET,
    kvm: Optional[bool] = None,
) -> List[str]:
    if kvm is None:
        kvm = kvm_available()

    cmd = [
        QEMU_BINARY,
        "-m",
        str(cfg.memory_mb),
        "-smp",
        str(cfg.cpus),
        # IDE needs no extra guest drivers during setup
        "-drive",
        f"file={disk},format=qcow2,if=ide",
    ]
    for iso in cdroms:
        cmd.extend(["-drive", f"file={iso},media=cdrom,readonly=on"])

    cmd.extend(network.netdev_args())
    cmd.extend(["-device", f"e1000,netdev=net0,mac={cfg.guest_mac}"])

    if kvm:
        cmd.extend(["-enable-kvm", "-cpu", "host"])
    else:
        if cfg.require_kvm:
            raise PreconditionError(
                "REQUIRE_KVM=1 is set but /dev/kvm is not available. "
                "Add --device /dev/kvm:/dev/kvm or unset REQUIRE_KVM."
            )
        log("WARN", "/dev/kvm not available; running in software emulation mode (TCG), expect 10-50x slower boots")
        cmd.extend(["-cpu", "qemu64"])
    cmd.extend(["-machine", "pc"])

    if cfg.vnc_enabled:
        log("INFO", f"VNC enabled - VM display available at localhost:{VNC_PORT}")
        cmd.extend(["-vnc", f":{VNC_DISPLAY}"])
    else:
        cmd.extend(["-nographic", "-display", "none"])
    cmd.extend(["-serial", f"file:{serial_log}" if serial_log else "null"])

    if monitor_socket is not None:
        cmd.extend(["-monitor", f"unix:{monitor_socket},server,nowait"])
    else:
        cmd.extend(["-monitor", "none"])
    if boot:
        cmd.extend(["-boot", boot])
    return cmd


def cleanup_monitor_socket(path: Path) -> None:
    """Remove a monitor socket left behind by a dead QEMU."""
    if not path.exists() or not path.is_socket():
        return
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(0.2)
            client.connect(str(path))
    except socket.timeout:
        pass
    except OSError as exc:
        if exc.errno not in {errno.ECONNREFUSED, errno.ENOENT}:
            log("WARN", f"Skipping removal of socket {path}: {exc}")
            return
    else:
        raise PreconditionError(f"Another QEMU instance is listening on {path}; refusing to start a second VM")
    remove_file(path)
    log("INFO", f"Removed stale monitor socket {path}")


def send_monitor_command(path: Path, command: str, timeout: float = 2.0) -> bool:
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(timeout)
            client.connect(str(path))
            client.sendall(f"{command}\n".encode("ascii"))
    except OSError as exc:
        log("DEBUG", f"Monitor command '{command}' failed: {exc}")
        return False
    return True


class VMProcess:
    """A launched QEMU process and the files that identify it."""

    def __init__(
        self,
        command: List[str],
        pid_file: Path = QEMU_PID_FILE,
        monitor_socket: Optional[Path] = QEMU_MONITOR_SOCKET,
    ) -> None:
        self.command = command
        self.pid_file = pid_file
        self.monitor_socket = monitor_socket
        self.process: Optional[subprocess.Popen] = None

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process is not None else None

    def start(self) -> int:
        if self.monitor_socket is not None:
            cleanup_monitor_socket(self.monitor_socket)
        log("DEBUG", f"Running: {format_command(self.command)}")
        try:
            self.process = subprocess.Popen(self.command, stdin=subprocess.DEVNULL)
        except OSError as exc:
            raise ManagerError(f"Failed to launch {self.command[0]}: {exc}") from exc
        try:
            self.pid_file.write_text(f"{self.process.pid}\n")
        except OSError as exc:
            log("WARN", f"Could not write PID file {self.pid_file}: {exc}")
        log("SUCCESS", f"VM started with PID: {self.process.pid}")
        return self.process.pid

    def is_alive(self) -> bool:
        return self.process is not None and self.process.poll() is None

    def send_signal(self, sig: int) -> None:
        if not self.is_alive():
            return
        try:
            self.process.send_signal(sig)  # type: ignore[union-attr]
        except ProcessLookupError:
            pass

    def wait(self, timeout: float) -> bool:
        if self.process is None:
            return True
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def powerdown(self) -> bool:
        """Press the virtual ACPI power button through the monitor."""
        if self.monitor_socket is None or not self.is_alive():
            return False
        return send_monitor_command(self.monitor_socket, "system_powerdown")

    def release(self) -> None:
        remove_file(self.pid_file)
        if self.monitor_socket is not None and not self.is_alive():
            remove_file(self.monitor_socket)


def stop_vm(
    vm: VMProcess,
    guest_shutdown: Optional[Callable[[], bool]] = None,
    grace: float = 60,
    term_wait: float = TERM_WAIT,
) -> str:
    """Stop ``vm`` with escalating severity and report which step ended it.

    1. guest-native shutdown (``guest_shutdown``, then ACPI powerdown),
       polling liveness every second for ``grace`` seconds;
    2. SIGTERM, waiting ``term_wait`` seconds;
    3. SIGKILL, without waiting.
    """
    try:
        if not vm.is_alive():
            log("INFO", "VM process already stopped")
            return STOPPED_ALREADY

        log("INFO", "Gracefully shutting down Windows VM...")
        requested = guest_shutdown() if guest_shutdown is not None else False
        if not requested:
            requested = vm.powerdown()
        if requested and grace > 0:
            try:
                wait_for(Probe("VM power-off", lambda: not vm.is_alive(), grace, 1), quiet=True)
            except PollTimeout:
                log("WARN", "Graceful shutdown timed out")
            else:
                log("SUCCESS", "VM shut down gracefully")
                return STOPPED_BY_GUEST

        log("WARN", "Terminating VM process")
        vm.send_signal(signal.SIGTERM)
        if vm.wait(term_wait):
            log("INFO", "VM process terminated")
            return STOPPED_BY_TERM

        log("WARN", "VM still running, force killing")
        vm.send_signal(signal.SIGKILL)
        return STOPPED_BY_KILL
    finally:
        vm.release()
