"""Runtime pipeline: from template to a supervised, API-ready VM."""

from __future__ import annotations

import signal
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional

import requests

from winvm import disk
from winvm.build import BuildPipeline
from winvm.constants import (
    API_INTERVAL,
    CONTROL_CHANNEL_INTERVAL,
    GUEST_NETWORK_INTERVAL,
    GUEST_NETWORK_TIMEOUT,
    HEALTH_INTERVAL,
    HEALTH_REPAIR_THRESHOLD,
    HTTP_PROBE_TIMEOUT,
    RUNTIME_TOOLS,
    VNC_PORT,
)
from winvm.exceptions import ManagerError, ProcessDied, RemoteError, ShutdownRequested
from winvm.host import neighbour_present, require_tools
from winvm.models import RemoteCommand, VMConfig
from winvm.network import BridgeNetwork, NetworkMode, select_network
from winvm.poller import Probe, wait_for
from winvm.process import VMProcess, build_qemu_command, stop_vm
from winvm.reconcile import GuestReconciler
from winvm.remote import RemoteClient
from winvm.utils import log

_HANDLED_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class RuntimeState(str, Enum):
    CHECK_PREREQS = "check-prereqs"
    PREPARE_EPHEMERAL_DISK = "prepare-ephemeral-disk"
    SELECT_NETWORK_MODE = "select-network-mode"
    BOOT = "boot"
    AWAIT_GUEST_NETWORK = "await-guest-network"
    AWAIT_CONTROL_CHANNEL = "await-control-channel"
    RECONCILE_API = "reconcile-api"
    AWAIT_API_HEALTHY = "await-api-healthy"
    READY = "ready"
    HEALTH_LOOP = "health-loop"
    SHUTDOWN = "shutdown"


@dataclass
class RuntimeContext:
    """Everything one runtime invocation owns; the signal handler works on this."""

    cfg: VMConfig
    state: RuntimeState = RuntimeState.CHECK_PREREQS
    network: Optional[NetworkMode] = None
    vm: Optional[VMProcess] = None
    disk: Optional[Path] = None
    client: Optional[RemoteClient] = None
    shutting_down: bool = False
    cleaned_up: bool = False

    def enter(self, state: RuntimeState) -> None:
        self.state = state
        log("DEBUG", f"Runtime state: {state.value}")

    def handle_signal(self, signum: int, frame) -> None:
        name = signal.Signals(signum).name
        if self.shutting_down:
            log("WARN", f"Received {name} during shutdown; ignoring")
            return
        log("INFO", f"Received {name}, shutting down...")
        self.shutting_down = True
        raise ShutdownRequested(signum)


def install_signal_handlers(context: RuntimeContext) -> Dict[int, object]:
    previous: Dict[int, object] = {}
    for sig in _HANDLED_SIGNALS:
        previous[sig] = signal.signal(sig, context.handle_signal)
    return previous


def restore_signal_handlers(previous: Dict[int, object]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)  # type: ignore[arg-type]


def request_guest_shutdown(client: RemoteClient) -> bool:
    try:
        result = client.run(RemoteCommand("Requesting guest shutdown", "shutdown /s /t 10"))
    except RemoteError as exc:
        log("WARN", f"Guest shutdown request failed: {exc}")
        return False
    return result.ok


def shutdown(context: RuntimeContext) -> None:
    """Stop the VM and remove the ephemeral disk.

    Safe to call any number of times and on every exit path; failures are
    logged, never raised.
    """
    context.shutting_down = True
    if context.cleaned_up:
        return
    context.enter(RuntimeState.SHUTDOWN)
    log("INFO", "Cleaning up...")
    if context.vm is not None:
        client = context.client
        guest = (lambda: request_guest_shutdown(client)) if client is not None else None
        try:
            stop_vm(context.vm, guest, context.cfg.shutdown_timeout)
        except (ManagerError, OSError) as exc:
            log("WARN", f"VM shutdown did not complete: {exc}")
    if context.disk is not None:
        try:
            disk.remove(context.disk)
        except OSError as exc:
            log("WARN", f"Could not remove runtime disk {context.disk}: {exc}")
    context.cleaned_up = True
    log("SUCCESS", "Cleanup completed")


def print_ready_banner(cfg: VMConfig, network: NetworkMode) -> None:
    lines = [
        "  Windows Container Builder VM is ready!",
        f"  Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus}",
    ]
    lines.extend(f"  {line}" if line else "" for line in network.connection_help())
    if cfg.vnc_enabled:
        lines.append(f"  VNC:  localhost:{VNC_PORT}")
    width = max(len(line) for line in lines) + 2
    colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{colour}{'=' * width}{reset}", flush=True)
    for line in lines:
        print(f"{colour}{line}{reset}", flush=True)
    print(f"{colour}{'=' * width}{reset}", flush=True)


class RuntimePipeline:
    def __init__(self, cfg: VMConfig) -> None:
        self.cfg = cfg
        self.context = RuntimeContext(cfg)

    def run(self) -> int:
        """Drive the VM to READY and supervise it; return the process exit code."""
        previous = install_signal_handlers(self.context)
        try:
            self.start()
            self.health_loop()
        except ShutdownRequested:
            return 0
        except ManagerError as exc:
            log("ERROR", str(exc))
            return 1
        finally:
            shutdown(self.context)
            restore_signal_handlers(previous)
        return 0

    def ensure_template(self) -> None:
        if self.cfg.template_path.is_file():
            return
        log("WARN", f"VM image not found at {self.cfg.template_path}, building it first...")
        BuildPipeline(self.cfg, context=self.context).run()

    def start(self) -> None:
        ctx = self.context
        cfg = self.cfg

        ctx.enter(RuntimeState.CHECK_PREREQS)
        require_tools(RUNTIME_TOOLS)
        self.ensure_template()

        ctx.enter(RuntimeState.PREPARE_EPHEMERAL_DISK)
        ctx.disk = cfg.runtime_disk
        disk.prepare(cfg.template_path, ctx.disk)

        ctx.enter(RuntimeState.SELECT_NETWORK_MODE)
        ctx.network = select_network(cfg)
        ctx.client = RemoteClient.for_network(ctx.network, cfg.profile.username, cfg.profile.password)

        ctx.enter(RuntimeState.BOOT)
        log("INFO", "Starting Windows Server Core VM...")
        log("INFO", f"Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus} | Network: {ctx.network.describe()}")
        ctx.vm = VMProcess(build_qemu_command(cfg, ctx.disk, ctx.network))
        ctx.vm.start()
        alive = ctx.vm.is_alive

        if isinstance(ctx.network, BridgeNetwork):
            ctx.enter(RuntimeState.AWAIT_GUEST_NETWORK)
            network = ctx.network
            wait_for(
                Probe(
                    f"VM network at {network.address}",
                    lambda: neighbour_present(network.bridge, network.address),
                    GUEST_NETWORK_TIMEOUT,
                    GUEST_NETWORK_INTERVAL,
                ),
                alive=alive,
            )

        ctx.enter(RuntimeState.AWAIT_CONTROL_CHANNEL)
        wait_for(
            Probe("WinRM", ctx.client.is_responsive, cfg.boot_timeout, CONTROL_CHANNEL_INTERVAL),
            alive=alive,
        )
        reconciler = GuestReconciler(ctx.client, cfg.profile)
        reconciler.license_status()

        ctx.enter(RuntimeState.RECONCILE_API)
        reconciler.reconcile()

        ctx.enter(RuntimeState.AWAIT_API_HEALTHY)
        wait_for(Probe("Docker API", self.api_healthy, cfg.docker_timeout, API_INTERVAL), alive=alive)

        ctx.enter(RuntimeState.READY)
        print_ready_banner(cfg, ctx.network)

    def api_healthy(self) -> bool:
        assert self.context.network is not None
        url = self.context.network.api_url() + self.cfg.profile.api_probe_path
        try:
            response = requests.get(url, timeout=HTTP_PROBE_TIMEOUT)
        except requests.RequestException as exc:
            log("DEBUG", f"API probe {url} failed: {exc}")
            return False
        return 200 <= response.status_code < 300

    def health_loop(self) -> None:
        """Watch the VM until it dies or a signal arrives."""
        ctx = self.context
        assert ctx.vm is not None and ctx.client is not None
        ctx.enter(RuntimeState.HEALTH_LOOP)
        log("INFO", "VM is running. Press Ctrl+C to stop.")
        failures = 0
        while True:
            time.sleep(HEALTH_INTERVAL)
            if not ctx.vm.is_alive():
                raise ProcessDied("VM process died unexpectedly")
            if self.api_healthy():
                if failures:
                    log("INFO", "Docker API reachable again")
                failures = 0
                continue
            failures += 1
            log("WARN", f"Docker daemon health check failed ({failures} in a row)")
            if failures >= HEALTH_REPAIR_THRESHOLD:
                log("WARN", "Re-running guest reconciliation")
                try:
                    GuestReconciler(ctx.client, self.cfg.profile).reconcile()
                except ManagerError as exc:
                    log("WARN", f"Reconciliation failed: {exc}")
                failures = 0
