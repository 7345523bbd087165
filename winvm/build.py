"""Unattended template build for Windows-VM-Manager.

The build boots the installer with the answer-file media attached, waits for
the installed system to come up on the control channel, installs the guest
service remotely, reconciles its API exposure and finally shuts the guest
down and moves its disk into place as the template. A failure in any state
stops the VM and removes every partial artifact.
"""

from __future__ import annotations

import shutil
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from winvm import disk
from winvm.constants import (
    ANSWER_ISO_PATH,
    BUILD_SHUTDOWN_TIMEOUT,
    BUILD_TOOLS,
    CONTROL_CHANNEL_INTERVAL,
    INSTALL_INTERVAL,
    INSTALL_LOG_PATH,
    LAST_INSTALL_LOG_PATH,
    MAX_PROVISION_ATTEMPTS,
    REBOOT_INTERVAL,
    REBOOT_TIMEOUT,
    SERVICE_INSTALL_INTERVAL,
    SERVICE_INSTALL_TIMEOUT,
    STABLE_PROBES,
)
from winvm.exceptions import BuildError, ManagerError, PreconditionError, RemoteError, ShutdownRequested
from winvm.host import require_tools
from winvm.models import RemoteCommand, Shell, VMConfig
from winvm.network import nat_network
from winvm.poller import Probe, consecutive, wait_for
from winvm.process import STOPPED_BY_GUEST, VMProcess, build_qemu_command, stop_vm
from winvm.reconcile import GuestReconciler
from winvm.remote import RemoteClient
from winvm.utils import log, log_lines

if TYPE_CHECKING:
    from winvm.pipeline import RuntimeContext

_TAG = "[DOCKER] "


class BuildState(str, Enum):
    CHECK_PREREQS = "check-prereqs"
    BUILD_INSTALL_MEDIA = "build-install-media"
    CREATE_DISK = "create-disk"
    BOOT_WITH_INSTALL_MEDIA = "boot-with-install-media"
    AWAIT_INSTALL_REBOOT = "await-install-reboot"
    AWAIT_CONTROL_CHANNEL = "await-control-channel"
    PROVISION_GUEST_SERVICE = "provision-guest-service"
    AWAIT_SERVICE_INSTALLED = "await-service-installed"
    RECONCILE_API = "reconcile-api"
    SHUTDOWN = "shutdown"
    FINALIZE_TEMPLATE = "finalize-template"
    DONE = "done"


class BuildPipeline:
    def __init__(
        self,
        cfg: VMConfig,
        client: Optional[RemoteClient] = None,
        answer_iso: Path = ANSWER_ISO_PATH,
        install_log: Path = INSTALL_LOG_PATH,
        last_install_log: Path = LAST_INSTALL_LOG_PATH,
        context: Optional[RuntimeContext] = None,
    ) -> None:
        self.cfg = cfg
        self.context = context
        self.profile = cfg.profile
        # The build VM only needs the control channel forwarded.
        self.network = nat_network(cfg, control_only=True)
        self.client = client or RemoteClient.for_network(self.network, self.profile.username, self.profile.password)
        self.answer_iso = answer_iso
        self.install_log = install_log
        self.last_install_log = last_install_log
        self.state = BuildState.CHECK_PREREQS
        self.vm: Optional[VMProcess] = None

    def _enter(self, state: BuildState) -> None:
        self.state = state
        log("DEBUG", f"Build state: {state.value}")

    def _alive(self) -> bool:
        return self.vm is not None and self.vm.is_alive()

    def check_prerequisites(self) -> None:
        require_tools(BUILD_TOOLS)
        if not self.cfg.install_iso.is_file():
            raise PreconditionError(f"Windows ISO not found at: {self.cfg.install_iso}")
        if not self.cfg.unattend_file.is_file():
            raise PreconditionError(f"autounattend.xml not found at: {self.cfg.unattend_file}")

    def run(self) -> Path:
        """Build the template unless it already exists; return its path."""
        self._enter(BuildState.CHECK_PREREQS)
        template = self.cfg.template_path
        if template.is_file():
            log("INFO", f"VM image already exists: {template}")
            self._enter(BuildState.DONE)
            return template
        self.check_prerequisites()

        log("INFO", "Starting Windows Server Core VM image build...")
        try:
            self._build()
        except ShutdownRequested:
            self._abort()
            raise
        except BuildError:
            self._abort()
            raise
        except ManagerError as exc:
            failed = self.state
            self._abort()
            raise BuildError(f"Template build failed during {failed.value}: {exc}") from exc
        self._enter(BuildState.DONE)
        log("SUCCESS", f"VM image build completed: {template}")
        return template

    def _build(self) -> None:
        cfg = self.cfg

        self._enter(BuildState.BUILD_INSTALL_MEDIA)
        disk.build_answer_media(cfg.unattend_file, self.answer_iso)

        self._enter(BuildState.CREATE_DISK)
        disk.create_blank(cfg.build_disk, cfg.build_disk_size)

        self._enter(BuildState.BOOT_WITH_INSTALL_MEDIA)
        disk.remove(self.install_log)
        cmd = build_qemu_command(
            cfg,
            cfg.build_disk,
            self.network,
            cdroms=(cfg.install_iso, self.answer_iso),
            boot="order=cd,once=d",
            serial_log=self.install_log,
        )
        self.vm = VMProcess(cmd)
        log("INFO", "Starting Windows installation VM...")
        self.vm.start()

        self._enter(BuildState.AWAIT_INSTALL_REBOOT)
        log("INFO", f"Installation progress is logged to {self.install_log}")
        wait_for(
            Probe("Windows installation", self.client.is_responsive, cfg.install_timeout, INSTALL_INTERVAL),
            alive=self._alive,
        )

        self._enter(BuildState.AWAIT_CONTROL_CHANNEL)
        wait_for(
            Probe(
                "stable WinRM connection",
                consecutive(self.client.is_responsive, STABLE_PROBES),
                cfg.boot_timeout,
                CONTROL_CHANNEL_INTERVAL,
            ),
            alive=self._alive,
        )

        self.install_service()

        self._enter(BuildState.RECONCILE_API)
        GuestReconciler(self.client, self.profile).reconcile()

        self._enter(BuildState.SHUTDOWN)
        self.shutdown_guest()

        self._enter(BuildState.FINALIZE_TEMPLATE)
        disk.finalize(cfg.build_disk, cfg.template_path)
        disk.remove(self.answer_iso)

    def provision(self) -> bool:
        """Run the provisioning steps in order.

        Returns False when the control channel dropped before every step ran;
        the guest is then expected to be rebooting.
        """
        for step in self.profile.provisioning_steps:
            log("INFO", f"{_TAG}{step.description}...")
            try:
                result = self.client.run(step)
            except RemoteError as exc:
                log("WARN", f"{_TAG}Control channel lost during '{step.description}': {exc}")
                return False
            log("INFO", f"{_TAG}Exit code: {result.exit_code}")
            log_lines("INFO", result.stdout, prefix=_TAG)
            log_lines("WARN", result.stderr, prefix=_TAG)
            if not result.ok:
                if step.required:
                    raise BuildError(f"Provisioning step '{step.description}' failed with exit code {result.exit_code}")
                log("WARN", f"{_TAG}Optional step '{step.description}' failed, continuing")
        return True

    def _service_status(self) -> str:
        result = self.client.run(
            RemoteCommand(
                "Querying service status",
                f"(Get-Service {self.profile.service_name} -ErrorAction SilentlyContinue).Status",
                Shell.POWERSHELL,
                required=False,
            )
        )
        return result.stdout.strip() if result.ok else ""

    def installation_complete(self) -> bool:
        """True once the completion marker exists or the service is already running."""
        try:
            marker = self.client.run(
                RemoteCommand("Checking completion marker", f'type "{self.profile.marker_path}"', required=False)
            )
            if marker.ok:
                return True
            return self._service_status() == "Running"
        except RemoteError as exc:
            log("WARN", f"Installation check failed: {exc}")
            return False

    def service_ready(self) -> bool:
        try:
            self._tail_guest_log()
            if self._service_status() != "Running":
                return False
            version = self.client.run(RemoteCommand("Checking engine version", "docker version", required=False))
        except RemoteError as exc:
            log("DEBUG", f"Service readiness check failed: {exc}")
            return False
        return version.ok

    def _tail_guest_log(self) -> None:
        result = self.client.run(
            RemoteCommand(
                "Reading installation log",
                f'Get-Content "{self.profile.install_log_path}" -Tail 5 -ErrorAction SilentlyContinue',
                Shell.POWERSHELL,
                required=False,
            )
        )
        if result.ok:
            log_lines("INFO", result.stdout, prefix=_TAG)

    def install_service(self) -> None:
        for attempt in range(1, MAX_PROVISION_ATTEMPTS + 1):
            self._enter(BuildState.PROVISION_GUEST_SERVICE)
            log("INFO", f"Provisioning guest service (attempt {attempt}/{MAX_PROVISION_ATTEMPTS})...")
            finished = self.provision()

            self._enter(BuildState.AWAIT_SERVICE_INSTALLED)
            if not finished:
                wait_for(
                    Probe("WinRM after guest reboot", self.client.is_responsive, REBOOT_TIMEOUT, REBOOT_INTERVAL),
                    alive=self._alive,
                )
            if self.installation_complete():
                log("SUCCESS", "Guest service installation reported complete")
                break
            log("WARN", "Guest service installation incomplete")
        else:
            raise BuildError(f"Guest service installation incomplete after {MAX_PROVISION_ATTEMPTS} attempts")

        wait_for(
            Probe("Docker service", self.service_ready, SERVICE_INSTALL_TIMEOUT, SERVICE_INSTALL_INTERVAL),
            alive=self._alive,
        )

    def _request_shutdown(self) -> bool:
        try:
            result = self.client.run(RemoteCommand("Requesting guest shutdown", "shutdown /s /t 0 /f"))
        except RemoteError as exc:
            log("WARN", f"Failed to initiate guest shutdown: {exc}")
            return False
        return result.ok

    def shutdown_guest(self) -> None:
        """Power the guest off; anything short of a clean guest shutdown fails the build."""
        assert self.vm is not None
        log("INFO", "Shutting down build VM...")
        tier = stop_vm(self.vm, self._request_shutdown, BUILD_SHUTDOWN_TIMEOUT)
        self.vm = None
        if tier != STOPPED_BY_GUEST:
            raise BuildError(f"Build VM did not shut down cleanly (stopped by: {tier}); refusing to finalize")

    def _abort(self) -> None:
        if self.context is not None:
            # Cleanup runs to completion; later signals are only logged.
            self.context.shutting_down = True
        log("ERROR", f"Build failed in state {self.state.value}; cleaning up")
        if self.vm is not None:
            try:
                stop_vm(self.vm, grace=0)
            except (ManagerError, OSError) as exc:
                log("WARN", f"Failed to stop build VM: {exc}")
            self.vm = None
        if self.install_log.is_file():
            try:
                shutil.copyfile(self.install_log, self.last_install_log)
                log("INFO", f"Installation log preserved at {self.last_install_log}")
            except OSError as exc:
                log("WARN", f"Could not preserve installation log: {exc}")
        for path in (self.cfg.build_disk, self.answer_iso, disk.partial_path(self.cfg.template_path)):
            try:
                disk.remove(path)
            except OSError as exc:
                log("WARN", f"Could not remove {path}: {exc}")
