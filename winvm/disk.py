"""Template and ephemeral disk handling for Windows-VM-Manager."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from pathlib import Path

from winvm.constants import QEMU_IMG
from winvm.exceptions import BuildError, DiskError, PreconditionError
from winvm.utils import ensure_directory, log, remove_file, run


def human_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "K", "M", "G"):
        if size < 1024:
            return f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}T"


def prepare(template: Path, disk: Path) -> Path:
    """Create a fresh ephemeral disk backed by ``template``.

    A stale disk at ``disk`` is removed first. The template itself is only
    ever read.
    """
    if not template.is_file():
        raise PreconditionError(f"VM image not found at: {template}")
    if remove_file(disk):
        log("INFO", f"Removed stale runtime disk {disk}")
    ensure_directory(disk.parent)
    log("INFO", "Preparing runtime VM disk...")
    try:
        run(
            [QEMU_IMG, "create", "-f", "qcow2", "-b", str(template.resolve()), "-F", "qcow2", str(disk)],
            capture_output=True,
        )
    except (subprocess.CalledProcessError, OSError) as exc:
        log("WARN", f"Backing file creation failed ({exc}), falling back to full copy")
        remove_file(disk)
        try:
            shutil.copyfile(template, disk)
        except OSError as copy_exc:
            remove_file(disk)
            raise DiskError(f"Could not create runtime disk {disk}: {copy_exc}") from copy_exc
        log("SUCCESS", f"Runtime disk prepared: {disk}")
    else:
        log("SUCCESS", f"Runtime disk prepared with backing file: {disk}")
    return disk


def create_blank(path: Path, size: str) -> Path:
    log("INFO", f"Creating VM disk image ({size})...")
    remove_file(path)
    ensure_directory(path.parent)
    try:
        run([QEMU_IMG, "create", "-f", "qcow2", str(path), size], capture_output=True)
    except (subprocess.CalledProcessError, OSError) as exc:
        raise DiskError(f"Failed to create VM disk {path}: {exc}") from exc
    log("SUCCESS", f"VM disk created: {path}")
    return path


def remove(path: Path) -> None:
    if remove_file(path):
        log("INFO", f"Removed {path}")


def partial_path(template: Path) -> Path:
    return template.with_name(template.name + ".partial")


def finalize(build_disk: Path, template: Path) -> Path:
    """Move the shut-down build disk into place as the template.

    The disk is staged next to the template and renamed over it, so the
    template path never holds a half-written image.
    """
    log("INFO", "Finalizing VM image...")
    if not build_disk.is_file():
        raise DiskError(f"Build disk not found: {build_disk}")
    ensure_directory(template.parent)
    staging = partial_path(template)
    try:
        shutil.move(str(build_disk), str(staging))
        with open(staging, "rb+") as f:
            os.fsync(f.fileno())
        os.replace(staging, template)
    except OSError as exc:
        remove_file(staging)
        raise DiskError(f"Failed to finalize template {template}: {exc}") from exc
    log("SUCCESS", f"VM image finalized: {template}")
    log("INFO", f"Image size: {human_size(template.stat().st_size)}")
    return template


def build_answer_media(answer_file: Path, iso_path: Path) -> Path:
    """Pack the answer file into a small ISO the installer picks up."""
    log("INFO", "Creating CD-ROM with autounattend.xml...")
    if not answer_file.is_file():
        raise PreconditionError(f"autounattend.xml not found at: {answer_file}")
    remove_file(iso_path)
    ensure_directory(iso_path.parent)
    with tempfile.TemporaryDirectory(prefix="autounattend_cd") as staging:
        shutil.copyfile(answer_file, Path(staging) / "autounattend.xml")
        try:
            run(
                ["xorriso", "-as", "mkisofs", "-o", str(iso_path), "-V", "AUTOUNATTEND", "-J", "-r", staging],
                capture_output=True,
            )
        except (subprocess.CalledProcessError, OSError) as exc:
            raise BuildError(f"Failed to create autounattend CD image: {exc}") from exc
    log("SUCCESS", f"Autounattend CD created: {iso_path}")
    return iso_path
