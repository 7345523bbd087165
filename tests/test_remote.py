"""Tests for winvm.remote module."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
import requests
from winrm.exceptions import WinRMTransportError

from winvm.exceptions import RemoteError
from winvm.models import RemoteCommand, Shell
from winvm.network import BridgeNetwork, nat_network
from winvm.remote import RemoteClient


def _response(status=0, out=b"", err=b""):
    return MagicMock(status_code=status, std_out=out, std_err=err)


class TestEndpoint:
    def test_nat_endpoint(self, default_vm_config):
        client = RemoteClient.for_network(nat_network(default_vm_config), "developer", "pw")
        assert client.endpoint == "http://localhost:5985/wsman"

    def test_bridge_endpoint(self):
        client = RemoteClient.for_network(BridgeNetwork("docker0", "172.17.0.100", 2376), "developer", "pw")
        assert client.endpoint == "http://172.17.0.100:5985/wsman"

    def test_session_is_basic_auth(self):
        client = RemoteClient("http://localhost:5985/wsman", "developer", "pw", timeout=20)
        with patch("winvm.remote.winrm.Session") as mock_session:
            client.open()
        mock_session.assert_called_once_with(
            "http://localhost:5985/wsman",
            auth=("developer", "pw"),
            transport="basic",
            operation_timeout_sec=20,
            read_timeout_sec=30,
        )


class TestRun:
    def test_cmd_dispatch(self):
        client = RemoteClient("http://localhost:5985/wsman", "u", "p")
        session = MagicMock()
        session.run_cmd.return_value = _response(0, b"ready\r\n")
        with patch("winvm.remote.winrm.Session", return_value=session):
            result = client.run(RemoteCommand("probe", "echo ready"))
        session.run_cmd.assert_called_once_with("echo ready")
        session.run_ps.assert_not_called()
        assert result.ok
        assert result.stdout == "ready"

    def test_powershell_dispatch(self):
        client = RemoteClient("http://localhost:5985/wsman", "u", "p")
        session = MagicMock()
        session.run_ps.return_value = _response(1, b"", b"Cannot find service\r\n")
        with patch("winvm.remote.winrm.Session", return_value=session):
            result = client.run(RemoteCommand("start", "Start-Service docker", Shell.POWERSHELL))
        session.run_ps.assert_called_once_with("Start-Service docker")
        assert not result.ok
        assert result.exit_code == 1
        assert result.stderr == "Cannot find service"

    def test_fresh_session_per_command(self):
        client = RemoteClient("http://localhost:5985/wsman", "u", "p")
        session = MagicMock()
        session.run_cmd.return_value = _response()
        with patch("winvm.remote.winrm.Session", return_value=session) as mock_session:
            client.run(RemoteCommand("a", "echo a"))
            client.run(RemoteCommand("b", "echo b"))
        assert mock_session.call_count == 2

    @pytest.mark.parametrize(
        "error",
        [
            requests.exceptions.ConnectionError("refused"),
            WinRMTransportError("http", 401, "unauthorized"),
            OSError("unreachable"),
        ],
    )
    def test_transport_errors_become_remote_error(self, error):
        client = RemoteClient("http://localhost:5985/wsman", "u", "p")
        session = MagicMock()
        session.run_cmd.side_effect = error
        with patch("winvm.remote.winrm.Session", return_value=session):
            with pytest.raises(RemoteError, match="probe"):
                client.run(RemoteCommand("probe", "echo ready"))


class TestIsResponsive:
    def test_true_on_success(self):
        client = RemoteClient("http://localhost:5985/wsman", "u", "p")
        session = MagicMock()
        session.run_cmd.return_value = _response(0, b"ready")
        with patch("winvm.remote.winrm.Session", return_value=session):
            assert client.is_responsive() is True

    def test_false_on_non_zero(self):
        client = RemoteClient("http://localhost:5985/wsman", "u", "p")
        session = MagicMock()
        session.run_cmd.return_value = _response(1)
        with patch("winvm.remote.winrm.Session", return_value=session):
            assert client.is_responsive() is False

    def test_false_on_connection_refused(self):
        client = RemoteClient("http://localhost:5985/wsman", "u", "p")
        session = MagicMock()
        session.run_cmd.side_effect = requests.exceptions.ConnectionError("refused")
        with patch("winvm.remote.winrm.Session", return_value=session):
            assert client.is_responsive() is False
