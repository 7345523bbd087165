"""Tests for winvm.build module."""

from __future__ import annotations

import os
import signal
from unittest.mock import MagicMock, patch

import pytest

from winvm.build import BuildPipeline, BuildState
from winvm.exceptions import BuildError, DiskError, PollTimeout, PreconditionError, RemoteError, ShutdownRequested
from winvm.models import CommandResult
from winvm.pipeline import RuntimeContext, install_signal_handlers, restore_signal_handlers
from winvm.process import STOPPED_BY_GUEST, STOPPED_BY_KILL


@pytest.fixture
def build_inputs(default_vm_config):
    cfg = default_vm_config
    cfg.install_iso.write_bytes(b"ISO")
    cfg.unattend_file.write_text("<unattend/>")
    return cfg


def _make_pipeline(cfg, client, tmp_path, context=None):
    return BuildPipeline(
        cfg,
        client=client,
        context=context,
        answer_iso=tmp_path / "answer.iso",
        install_log=tmp_path / "install.log",
        last_install_log=tmp_path / "last-install.log",
    )


def _fake_disk_ops(cfg, tmp_path):
    """Patch the disk layer with functions that just touch files."""

    def create_blank(path, size):
        path.write_bytes(b"BUILD")
        return path

    def answer_media(answer, iso):
        iso.write_bytes(b"ANSWER")
        return iso

    return (
        patch("winvm.build.disk.create_blank", side_effect=create_blank),
        patch("winvm.build.disk.build_answer_media", side_effect=answer_media),
    )


class TestPrerequisites:
    def test_existing_template_short_circuits(self, default_vm_config, fake_client_factory, tmp_path):
        cfg = default_vm_config
        cfg.template_path.parent.mkdir(parents=True)
        cfg.template_path.write_bytes(b"T")
        pipeline = _make_pipeline(cfg, fake_client_factory(), tmp_path)
        with patch("winvm.build.require_tools") as mock_tools:
            assert pipeline.run() == cfg.template_path
        mock_tools.assert_not_called()
        assert pipeline.state is BuildState.DONE

    def test_missing_iso(self, default_vm_config, fake_client_factory, tmp_path):
        pipeline = _make_pipeline(default_vm_config, fake_client_factory(), tmp_path)
        with patch("winvm.build.require_tools"):
            with pytest.raises(PreconditionError, match="Windows ISO not found"):
                pipeline.run()

    def test_missing_answer_file(self, default_vm_config, fake_client_factory, tmp_path):
        default_vm_config.install_iso.write_bytes(b"ISO")
        pipeline = _make_pipeline(default_vm_config, fake_client_factory(), tmp_path)
        with patch("winvm.build.require_tools"):
            with pytest.raises(PreconditionError, match="autounattend.xml"):
                pipeline.run()

    def test_uses_control_only_nat(self, default_vm_config, fake_client_factory, tmp_path):
        pipeline = _make_pipeline(default_vm_config, fake_client_factory(), tmp_path)
        assert [pf.guest_port for pf in pipeline.network.forwards] == [5985]


class TestProvision:
    def test_runs_steps_in_order(self, default_vm_config, fake_client_factory, tmp_path, capsys):
        client = fake_client_factory({"Install-PackageProvider": CommandResult(0, "NuGet 2.8.5.208")})
        pipeline = _make_pipeline(default_vm_config, client, tmp_path)
        assert pipeline.provision() is True
        expected = [step.body for step in default_vm_config.profile.provisioning_steps]
        assert client.bodies == expected
        assert "[DOCKER] NuGet 2.8.5.208" in capsys.readouterr().out

    def test_required_step_failure_is_fatal(self, default_vm_config, fake_client_factory, tmp_path):
        client = fake_client_factory({"install-docker-ce.ps1 -DockerVersion": CommandResult(1, "", "boom")})
        pipeline = _make_pipeline(default_vm_config, client, tmp_path)
        with pytest.raises(BuildError, match="Installing Docker using Microsoft script"):
            pipeline.provision()

    def test_optional_step_failure_continues(self, default_vm_config, fake_client_factory, tmp_path):
        client = fake_client_factory({"Set-Service Docker": CommandResult(1, "", "service missing")})
        pipeline = _make_pipeline(default_vm_config, client, tmp_path)
        assert pipeline.provision() is True
        assert client.ran("docker-installed.txt")

    def test_channel_loss_is_not_fatal(self, default_vm_config, fake_client_factory, tmp_path):
        client = fake_client_factory({"install-docker-ce.ps1 -DockerVersion": RemoteError("connection reset")})
        pipeline = _make_pipeline(default_vm_config, client, tmp_path)
        assert pipeline.provision() is False
        assert not client.ran("docker-installed.txt")


class TestInstallService:
    def _pipeline(self, cfg, client, tmp_path):
        pipeline = _make_pipeline(cfg, client, tmp_path)
        pipeline.vm = MagicMock()
        pipeline.vm.is_alive.return_value = True
        return pipeline

    def test_reboot_then_marker_found(self, default_vm_config, fake_client_factory, tmp_path, fake_clock):
        marker_checks = iter([CommandResult(0, "Docker installation completed successfully")])
        client = fake_client_factory(
            {
                "install-docker-ce.ps1 -DockerVersion": RemoteError("connection reset"),
                "type ": lambda: next(marker_checks),
                ".Status": CommandResult(0, "Running"),
            }
        )
        pipeline = self._pipeline(default_vm_config, client, tmp_path)
        pipeline.install_service()
        # One provisioning pass only: the marker says the guest finished after its reboot.
        assert sum("install-docker-ce.ps1 -DockerVersion" in b for b in client.bodies) == 1
        assert client.ran("docker version")

    def test_retries_until_complete(self, default_vm_config, fake_client_factory, tmp_path, fake_clock):
        attempts = iter([RemoteError("reboot"), CommandResult(0)])
        marker = iter([CommandResult(1), CommandResult(0)])
        status = iter([CommandResult(0, "Stopped")] + [CommandResult(0, "Running")] * 5)
        client = fake_client_factory(
            {
                "install-docker-ce.ps1 -DockerVersion": lambda: next(attempts),
                "type ": lambda: next(marker),
                ".Status": lambda: next(status),
            }
        )
        pipeline = self._pipeline(default_vm_config, client, tmp_path)
        pipeline.install_service()
        assert sum("install-docker-ce.ps1 -DockerVersion" in b for b in client.bodies) == 2

    def test_gives_up_after_bounded_attempts(self, default_vm_config, fake_client_factory, tmp_path, fake_clock):
        client = fake_client_factory(
            {
                "install-docker-ce.ps1 -DockerVersion": RemoteError("reboot"),
                "type ": CommandResult(1),
                ".Status": CommandResult(0, ""),
            }
        )
        pipeline = self._pipeline(default_vm_config, client, tmp_path)
        with pytest.raises(BuildError, match="after 3 attempts"):
            pipeline.install_service()
        assert sum("install-docker-ce.ps1 -DockerVersion" in b for b in client.bodies) == 3

    def test_channel_never_returns(self, default_vm_config, fake_client_factory, tmp_path, fake_clock):
        client = fake_client_factory(
            {"install-docker-ce.ps1 -DockerVersion": RemoteError("reboot")},
            responsive=False,
        )
        pipeline = self._pipeline(default_vm_config, client, tmp_path)
        with pytest.raises(PollTimeout, match="WinRM after guest reboot"):
            pipeline.install_service()


class TestShutdownGuest:
    def test_clean_shutdown(self, default_vm_config, fake_client_factory, tmp_path):
        pipeline = _make_pipeline(default_vm_config, fake_client_factory(), tmp_path)
        pipeline.vm = MagicMock()
        with patch("winvm.build.stop_vm", return_value=STOPPED_BY_GUEST) as mock_stop:
            pipeline.shutdown_guest()
        request = mock_stop.call_args[0][1]
        assert request() is True
        assert pipeline.client.ran("shutdown /s /t 0 /f")

    def test_forced_stop_fails_build(self, default_vm_config, fake_client_factory, tmp_path):
        pipeline = _make_pipeline(default_vm_config, fake_client_factory(), tmp_path)
        pipeline.vm = MagicMock()
        with patch("winvm.build.stop_vm", return_value=STOPPED_BY_KILL):
            with pytest.raises(BuildError, match="refusing to finalize"):
                pipeline.shutdown_guest()


class TestRun:
    def _run(self, cfg, client, tmp_path, extra_patches=()):
        pipeline = _make_pipeline(cfg, client, tmp_path)
        vm = MagicMock()
        vm.is_alive.return_value = True
        blank, media = _fake_disk_ops(cfg, tmp_path)
        with (
            patch("winvm.build.require_tools"),
            blank,
            media,
            patch("winvm.build.build_qemu_command", return_value=["qemu-system-x86_64"]) as mock_cmd,
            patch("winvm.build.VMProcess", return_value=vm),
            patch("winvm.build.stop_vm", return_value=STOPPED_BY_GUEST) as mock_stop,
            patch("winvm.build.GuestReconciler") as mock_reconciler,
        ):
            for extra in extra_patches:
                extra.start()
            try:
                result = pipeline.run()
            finally:
                for extra in extra_patches:
                    extra.stop()
        return pipeline, result, mock_cmd, mock_stop, mock_reconciler

    def test_full_build(self, build_inputs, fake_client_factory, tmp_path, fake_clock):
        cfg = build_inputs
        client = fake_client_factory({"type ": CommandResult(0, "done"), ".Status": CommandResult(0, "Running")})
        pipeline, result, mock_cmd, mock_stop, mock_reconciler = self._run(cfg, client, tmp_path)
        assert result == cfg.template_path
        assert cfg.template_path.read_bytes() == b"BUILD"
        assert not cfg.build_disk.exists()
        assert not (tmp_path / "answer.iso").exists()
        assert pipeline.state is BuildState.DONE
        kwargs = mock_cmd.call_args.kwargs
        assert kwargs["cdroms"] == (cfg.install_iso, tmp_path / "answer.iso")
        assert kwargs["boot"] == "order=cd,once=d"
        assert kwargs["serial_log"] == tmp_path / "install.log"
        mock_reconciler.return_value.reconcile.assert_called_once()

    def test_failure_cleans_up_and_keeps_log(self, build_inputs, fake_client_factory, tmp_path, fake_clock):
        cfg = build_inputs
        client = fake_client_factory({"type ": CommandResult(0, "done"), ".Status": CommandResult(0, "Running")})

        def failing_finalize(build_disk, template):
            partial = template.with_name(template.name + ".partial")
            partial.parent.mkdir(parents=True, exist_ok=True)
            partial.write_bytes(b"HALF")
            (tmp_path / "install.log").write_text("Windows setup output")
            raise DiskError("disk full")

        with pytest.raises(BuildError, match="finalize-template"):
            self._run(cfg, client, tmp_path, [patch("winvm.build.disk.finalize", side_effect=failing_finalize)])
        assert not cfg.template_path.exists()
        assert not cfg.template_path.with_name(cfg.template_path.name + ".partial").exists()
        assert not cfg.build_disk.exists()
        assert not (tmp_path / "answer.iso").exists()
        assert (tmp_path / "last-install.log").read_text() == "Windows setup output"

    def test_install_timeout(self, build_inputs, fake_client_factory, tmp_path, fake_clock):
        cfg = build_inputs
        cfg.install_timeout = 30
        client = fake_client_factory(responsive=False)
        with pytest.raises(BuildError, match="await-install-reboot"):
            self._run(cfg, client, tmp_path)
        assert not cfg.build_disk.exists()

    def test_shutdown_request_aborts(self, build_inputs, fake_client_factory, tmp_path, fake_clock):
        cfg = build_inputs
        client = fake_client_factory()
        client.is_responsive = MagicMock(side_effect=ShutdownRequested(15))
        with pytest.raises(ShutdownRequested):
            self._run(cfg, client, tmp_path)
        assert not cfg.build_disk.exists()
        assert not cfg.template_path.exists()


class TestAbort:
    def test_signal_during_cleanup_does_not_cut_it_short(self, build_inputs, fake_client_factory, tmp_path, capsys):
        cfg = build_inputs
        context = RuntimeContext(cfg)
        pipeline = _make_pipeline(cfg, fake_client_factory(), tmp_path, context=context)
        vm = MagicMock()

        def boot_then_time_out():
            cfg.build_disk.write_bytes(b"BUILD")
            (tmp_path / "answer.iso").write_bytes(b"ANSWER")
            pipeline.vm = vm
            raise PollTimeout("Timeout waiting for Windows installation (3600s)")

        def stop_with_incoming_sigterm(target, *args, **kwargs):
            os.kill(os.getpid(), signal.SIGTERM)
            return STOPPED_BY_KILL

        previous = install_signal_handlers(context)
        try:
            with (
                patch("winvm.build.require_tools"),
                patch.object(pipeline, "_build", side_effect=boot_then_time_out),
                patch("winvm.build.stop_vm", side_effect=stop_with_incoming_sigterm) as mock_stop,
            ):
                with pytest.raises(BuildError, match="Windows installation"):
                    pipeline.run()
        finally:
            restore_signal_handlers(previous)

        mock_stop.assert_called_once_with(vm, grace=0)
        assert context.shutting_down is True
        assert not cfg.build_disk.exists()
        assert not (tmp_path / "answer.iso").exists()
        assert "Received SIGTERM during shutdown; ignoring" in capsys.readouterr().out
