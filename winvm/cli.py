"""CLI entry points for Windows-VM-Manager."""

from __future__ import annotations

import argparse
import dataclasses
from typing import List, Optional

from winvm.build import BuildPipeline
from winvm.config import parse_env
from winvm.constants import _SENSITIVE_FIELDS, BRIDGE_CANDIDATES, RUNTIME_TOOLS
from winvm.exceptions import ManagerError, ShutdownRequested
from winvm.host import find_bridge, is_rootless, kvm_available, missing_tools
from winvm.models import VMConfig
from winvm.pipeline import RuntimeContext, RuntimePipeline, install_signal_handlers, restore_signal_handlers
from winvm.utils import log


def show_config(cfg: VMConfig) -> None:
    """Print the resolved VM configuration and exit."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                sub_value = getattr(value, sub_field.name)
                if sub_field.name in _SENSITIVE_FIELDS:
                    print(f"    {sub_field.name}: ********")
                elif isinstance(sub_value, list):
                    print(f"    {sub_field.name}:")
                    for i, item in enumerate(sub_value):
                        print(f"      [{i}] {item.description} ({item.shell.value})")
                else:
                    print(f"    {sub_field.name}: {sub_value}")
        else:
            print(f"  {field.name}: {value}")


def print_startup_banner(cfg: VMConfig) -> None:
    lines = [
        "  Windows Container Builder",
        f"  Memory: {cfg.memory_mb} MiB | CPUs: {cfg.cpus}",
        f"  Docker API port: {cfg.host_docker_port} | Application port: {cfg.host_app_port}",
        f"  Template: {cfg.template_path}",
    ]
    width = max(len(line) for line in lines) + 2
    colour = "\033[0;36m"
    reset = "\033[0m"
    print(f"{colour}{'=' * width}{reset}", flush=True)
    for line in lines:
        print(f"{colour}{line}{reset}", flush=True)
    print(f"{colour}{'=' * width}{reset}", flush=True)


def dry_run(cfg: VMConfig) -> None:
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    log("INFO", "=== Environment Checks ===")
    if kvm_available():
        log("SUCCESS", "KVM:         available (/dev/kvm)")
    elif cfg.require_kvm:
        log("ERROR", "KVM:         NOT available (REQUIRE_KVM=1 is set, will fail)")
    else:
        log("WARN", "KVM:         NOT available (will use TCG, 10-50x slower)")
    missing = missing_tools(RUNTIME_TOOLS)
    if missing:
        log("ERROR", f"Tools:       missing {', '.join(missing)}")
    else:
        log("SUCCESS", f"Tools:       {', '.join(RUNTIME_TOOLS)}")
    if cfg.template_path.is_file():
        log("SUCCESS", f"Template:    {cfg.template_path} (found)")
    else:
        log("WARN", f"Template:    {cfg.template_path} (missing, will be built)")
        for label, path in (("Windows ISO", cfg.install_iso), ("Answer file", cfg.unattend_file)):
            if path.is_file():
                log("SUCCESS", f"{label}: {path} (found)")
            else:
                log("ERROR", f"{label}: {path} (NOT FOUND)")
    bridge = find_bridge(BRIDGE_CANDIDATES)
    if bridge:
        log("INFO", f"Bridge:      {bridge} (bridge mode will be attempted)")
    else:
        log("INFO", "Bridge:      none found (NAT mode)")
    if is_rootless():
        log("WARN", "Rootless container detected")
    log("INFO", "=== Dry-run complete (no VM started) ===")


def build_only(cfg: VMConfig) -> int:
    context = RuntimeContext(cfg)
    previous = install_signal_handlers(context)
    try:
        BuildPipeline(cfg, context=context).run()
    except ShutdownRequested:
        log("WARN", "Build interrupted")
        return 1
    finally:
        restore_signal_handlers(previous)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Windows-VM-Manager: Windows Server Core Docker VM orchestrator")
    parser.add_argument("--build", action="store_true", help="Build the VM template image and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved VM configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config and environment, then exit")
    args = parser.parse_args(argv)

    try:
        cfg = parse_env()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    if args.dry_run:
        dry_run(cfg)
        print_startup_banner(cfg)
        return 0

    print_startup_banner(cfg)
    try:
        if args.build:
            return build_only(cfg)
        return RuntimePipeline(cfg).run()
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        log("ERROR", "This is likely a bug; please report it with the log above.")
        import traceback

        traceback.print_exc()
        return 1
