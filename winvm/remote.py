"""WinRM command execution against the guest for Windows-VM-Manager."""

from __future__ import annotations

from typing import Optional

try:
    import winrm  # type: ignore
    from winrm.exceptions import (  # type: ignore
        WinRMError,
        WinRMOperationTimeoutError,
        WinRMTransportError,
    )
except ImportError as exc:  # pragma: no cover
    raise SystemExit("pywinrm is required but not installed") from exc

import requests

from winvm.constants import REMOTE_TIMEOUT
from winvm.exceptions import RemoteError
from winvm.models import CommandResult, RemoteCommand, Shell
from winvm.network import NetworkMode
from winvm.utils import log

_TRANSPORT_ERRORS = (
    WinRMError,
    WinRMTransportError,
    WinRMOperationTimeoutError,
    requests.RequestException,
    OSError,
)


def _decode(raw: Optional[bytes]) -> str:
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace").strip()


class RemoteClient:
    """One-shot WinRM sessions; no connection is kept between commands."""

    def __init__(
        self,
        endpoint: str,
        username: str,
        password: str,
        transport: str = "basic",
        timeout: int = REMOTE_TIMEOUT,
    ) -> None:
        self.endpoint = endpoint
        self.username = username
        self.password = password
        self.transport = transport
        self.timeout = timeout

    @classmethod
    def for_network(cls, network: NetworkMode, username: str, password: str, **kwargs) -> "RemoteClient":
        return cls(network.control_url(), username, password, **kwargs)

    def open(self) -> "winrm.Session":
        return winrm.Session(
            self.endpoint,
            auth=(self.username, self.password),
            transport=self.transport,
            operation_timeout_sec=self.timeout,
            read_timeout_sec=self.timeout + 10,
        )

    def run(self, command: RemoteCommand) -> CommandResult:
        """Execute ``command`` in a fresh session.

        Raises RemoteError when the session cannot be established or the
        transport fails; a command that runs and exits non-zero is returned
        as a normal result.
        """
        log("DEBUG", f"Remote ({command.shell.value}): {command.body}")
        try:
            session = self.open()
            if command.shell is Shell.POWERSHELL:
                response = session.run_ps(command.body)
            else:
                response = session.run_cmd(command.body)
        except _TRANSPORT_ERRORS as exc:
            raise RemoteError(f"{command.description}: {exc}") from exc
        return CommandResult(
            exit_code=response.status_code,
            stdout=_decode(response.std_out),
            stderr=_decode(response.std_err),
        )

    def is_responsive(self) -> bool:
        try:
            return self.run(RemoteCommand("Probe control channel", "echo ready")).ok
        except RemoteError as exc:
            log("DEBUG", f"Control channel not ready: {exc}")
            return False
