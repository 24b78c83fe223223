"""Guest lifecycle: disks, firmware, QEMU process, pid record."""

from __future__ import annotations

import json
import os
import shutil
import signal
import subprocess
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from factoryvm.constants import (
    DATA_DISK_MAX_GB,
    DATA_DISK_MIN_GB,
    QEMU_CPU,
    QEMU_MACHINE,
    UEFI_CODE_CANDIDATES,
    UEFI_VARS_CANDIDATES,
)
from factoryvm.exceptions import FactoryError
from factoryvm.installer import PexpectConsole
from factoryvm.models import FactoryConfig, GuestHandle, GuestStatus, Profile
from factoryvm.network import render_netdev_args
from factoryvm.remote import RemoteShell
from factoryvm.runtime import RuntimeInfo, detect_runtime
from factoryvm.utils import ensure_directory, log, pid_alive, poll_until, run


class GuestController:
    """Start, stop and inspect the single factory guest.

    The pid record (``factory.pid``) holds nothing but the decimal process id
    so that shell tooling can read it as well.
    """

    def __init__(self, config: FactoryConfig, runtime: Optional[RuntimeInfo] = None) -> None:
        self.cfg = config
        self.runtime = runtime or detect_runtime()

    # -- disks and firmware -------------------------------------------------

    def find_firmware(self) -> Tuple[Path, Optional[Path]]:
        code = next((path for path in UEFI_CODE_CANDIDATES if path.exists()), None)
        if code is None:
            searched = "\n    ".join(str(path) for path in UEFI_CODE_CANDIDATES)
            raise FactoryError(
                "ARM64 UEFI firmware not found. Searched:\n"
                f"    {searched}\n"
                "  Possible fixes:\n"
                "    - Debian/Ubuntu: sudo apt install qemu-efi-aarch64\n"
                "    - Fedora: sudo dnf install edk2-aarch64\n"
                "    - macOS: brew install qemu"
            )
        vars_template = next((path for path in UEFI_VARS_CANDIDATES if path.exists()), None)
        return code, vars_template

    def create_disks(self, profile: Profile) -> None:
        ensure_directory(self.cfg.vm_dir)
        for disk, size in ((self.cfg.system_disk, profile.system_disk_gb), (self.cfg.data_disk, profile.data_disk_gb)):
            if disk.exists():
                log("INFO", f"Reusing disk {disk}")
                continue
            try:
                run(["qemu-img", "create", "-f", "qcow2", str(disk), f"{size}G"], capture_output=True)
            except FileNotFoundError as exc:
                raise FactoryError("qemu-img not found. Install QEMU (qemu-utils / qemu-img).") from exc
            except subprocess.CalledProcessError as exc:
                raise FactoryError(f"qemu-img create failed for {disk}: {exc.stderr.strip()}") from exc
            log("SUCCESS", f"Created {size}G disk {disk}")

    def reset_disks(self) -> None:
        """Remove disks and firmware variables so the next install starts from blank media."""
        for path in (self.cfg.system_disk, self.cfg.data_disk, self.cfg.uefi_vars):
            if path.exists():
                path.unlink()
                log("INFO", f"Removed {path}")

    def data_disk_size_gb(self) -> int:
        try:
            result = run(["qemu-img", "info", "--output=json", str(self.cfg.data_disk)], capture_output=True)
        except FileNotFoundError as exc:
            raise FactoryError("qemu-img not found. Install QEMU (qemu-utils / qemu-img).") from exc
        except subprocess.CalledProcessError as exc:
            raise FactoryError(f"qemu-img info failed for {self.cfg.data_disk}: {exc.stderr.strip()}") from exc
        return int(json.loads(result.stdout)["virtual-size"]) // (1024 ** 3)

    def expand_data_disk(self, size_gb: int) -> Tuple[int, int]:
        """Grow the data disk image to ``size_gb``; returns (old, new) sizes in GiB.

        The guest must be stopped. The filesystem inside is grown separately
        with resize2fs once the guest is back up.
        """
        if not DATA_DISK_MIN_GB <= size_gb <= DATA_DISK_MAX_GB:
            raise FactoryError(f"Data disk size must be between {DATA_DISK_MIN_GB} and {DATA_DISK_MAX_GB} GB")
        if not self.cfg.data_disk.exists():
            raise FactoryError(f"Data disk not found: {self.cfg.data_disk}. Run 'factory-vm setup' first.")
        if self.status() == GuestStatus.RUNNING:
            raise FactoryError(
                "The Factory VM is running; its data disk cannot be resized while in use.\n"
                "  Possible fixes:\n"
                "    - factory-vm stop, then retry"
            )
        current = self.data_disk_size_gb()
        if size_gb <= current:
            raise FactoryError(f"Data disk is already {current}G; qcow2 images can only grow (requested {size_gb}G)")
        try:
            run(["qemu-img", "resize", str(self.cfg.data_disk), f"{size_gb}G"], capture_output=True)
        except subprocess.CalledProcessError as exc:
            raise FactoryError(f"qemu-img resize failed for {self.cfg.data_disk}: {exc.stderr.strip()}") from exc
        log("SUCCESS", f"Data disk grown from {current}G to {size_gb}G")
        return current, size_gb

    def _firmware_args(self) -> List[str]:
        code, vars_template = self.find_firmware()
        if vars_template is None:
            return ["-bios", str(code)]
        if not self.cfg.uefi_vars.exists():
            shutil.copy2(vars_template, self.cfg.uefi_vars)
            self.cfg.uefi_vars.chmod(0o600)
        return [
            "-drive", f"if=pflash,format=raw,readonly=on,file={code}",
            "-drive", f"if=pflash,format=raw,file={self.cfg.uefi_vars}",
        ]

    def build_command(self, profile: Profile, boot_iso: Optional[Path] = None, daemonize: bool = True) -> List[str]:
        cmd = [
            self.runtime.qemu_binary,
            "-name", "factory",
            "-M", QEMU_MACHINE,
            *self.runtime.accel_args(),
            "-cpu", "host" if self.runtime.accel != "tcg" else QEMU_CPU,
            "-smp", str(profile.cpus),
            "-m", f"{profile.memory_gb}G",
            *self._firmware_args(),
            "-drive", f"file={self.cfg.system_disk},if=virtio,format=qcow2",
            "-drive", f"file={self.cfg.data_disk},if=virtio,format=qcow2",
            *render_netdev_args(self.cfg, include_services=boot_iso is None),
        ]
        if boot_iso is not None:
            cmd += ["-cdrom", str(boot_iso)]
        if daemonize:
            cmd += ["-display", "none", "-daemonize", "-pidfile", str(self.cfg.pid_file)]
        else:
            cmd += ["-nographic"]
        return cmd

    # -- pid record ---------------------------------------------------------

    def read_pid(self) -> Optional[int]:
        try:
            raw = self.cfg.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        return int(raw) if raw.isdigit() else 0

    def _write_pid(self, pid: int) -> None:
        ensure_directory(self.cfg.vm_dir)
        self.cfg.pid_file.write_text(f"{pid}\n")

    def _clear_pid(self) -> None:
        self.cfg.pid_file.unlink(missing_ok=True)

    @staticmethod
    def _is_guest_process(pid: int) -> bool:
        if not pid_alive(pid):
            return False
        cmdline = Path(f"/proc/{pid}/cmdline")
        if cmdline.exists():
            try:
                return b"qemu" in cmdline.read_bytes()
            except OSError:
                return True
        return True

    def status(self) -> GuestStatus:
        pid = self.read_pid()
        if pid is None:
            return GuestStatus.STOPPED
        if pid and self._is_guest_process(pid):
            return GuestStatus.RUNNING
        log("WARN", f"Removing stale pid record {self.cfg.pid_file} (process {pid} is gone)")
        self._clear_pid()
        return GuestStatus.STALE

    def handle(self) -> Optional[GuestHandle]:
        if self.status() != GuestStatus.RUNNING:
            return None
        pid = self.read_pid()
        assert pid is not None
        return GuestHandle(pid=pid, ssh_port=self.cfg.ssh_port, https_port=self.cfg.https_port,
                           pid_file=self.cfg.pid_file)

    # -- lifecycle ----------------------------------------------------------

    def start(self, profile: Profile, cancel: Optional[threading.Event] = None, timeout: float = 30) -> GuestHandle:
        """Boot the installed system. Returns the live handle if the guest is already up."""
        existing = self.handle()
        if existing is not None:
            log("INFO", f"Factory VM already running (PID {existing.pid})")
            return existing
        if not self.cfg.system_disk.exists():
            raise FactoryError(
                f"System disk {self.cfg.system_disk} not found.\n"
                "  Possible fixes:\n"
                "    - Run 'factory-vm setup' to install the VM"
            )
        cmd = self.build_command(profile)
        log("INFO", f"Starting Factory VM ({profile.memory_gb}G RAM, {profile.cpus} CPUs, {self.runtime.accel})")
        try:
            run(cmd, capture_output=True)
        except FileNotFoundError as exc:
            raise FactoryError(f"{self.runtime.qemu_binary} not found. Install qemu-system-aarch64.") from exc
        except subprocess.CalledProcessError as exc:
            raise FactoryError(f"QEMU failed to start: {(exc.stderr or '').strip()}") from exc
        if not poll_until(lambda: bool(self.read_pid()), timeout=timeout, interval=0.5,
                          description="Waiting for QEMU pid record", cancel=cancel):
            raise FactoryError(f"QEMU did not write {self.cfg.pid_file} within {int(timeout)}s")
        handle = self.handle()
        if handle is None:
            raise FactoryError("QEMU exited immediately after start; check the host console output")
        log("SUCCESS", f"Factory VM started (PID {handle.pid})")
        return handle

    def spawn_installer(self, profile: Profile, iso: Path, prompt_timeout: float) -> Tuple[GuestHandle, PexpectConsole]:
        """Boot the installer ISO in the foreground with its serial console attached."""
        if self.status() == GuestStatus.RUNNING:
            raise FactoryError(
                "Factory VM is already running.\n"
                "  Possible fixes:\n"
                "    - Stop it first: factory-vm stop"
            )
        cmd = self.build_command(profile, boot_iso=iso, daemonize=False)
        log("INFO", f"Booting installer from {iso.name}")
        console = PexpectConsole.spawn(cmd, self.cfg.log_dir / "install-console.log", timeout=prompt_timeout)
        self._write_pid(console.pid)
        handle = GuestHandle(pid=console.pid, ssh_port=self.cfg.ssh_port, https_port=self.cfg.https_port,
                             pid_file=self.cfg.pid_file)
        return handle, console

    def release(self, handle: GuestHandle) -> None:
        """Drop the installer's pid record, killing the process if it outlived its console."""
        if pid_alive(handle.pid):
            self.terminate(handle.pid)
        self._clear_pid()

    def stop(
        self,
        remote: Optional[RemoteShell] = None,
        grace: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """Power the guest off, escalating to signals after the grace window.

        Returns False when there was nothing to stop.
        """
        handle = self.handle()
        if handle is None:
            log("INFO", "Factory VM is not running")
            return False
        grace = self.cfg.shutdown_grace if grace is None else grace
        if remote is not None and grace > 0:
            log("INFO", "Requesting graceful shutdown...")
            try:
                remote.run("poweroff", timeout=15)
            except (subprocess.TimeoutExpired, OSError) as exc:
                log("WARN", f"Could not request poweroff over SSH: {exc}")
            if poll_until(lambda: not pid_alive(handle.pid), timeout=grace, interval=1,
                          description="Waiting for guest to power off", cancel=cancel, report_every=10):
                self._clear_pid()
                log("SUCCESS", "Factory VM stopped")
                return True
            log("WARN", f"Guest still running after {int(grace)}s; terminating QEMU")
        self.terminate(handle.pid)
        self._clear_pid()
        log("SUCCESS", "Factory VM stopped")
        return True

    def terminate(self, pid: int, wait: float = 10) -> None:
        """SIGTERM then SIGKILL."""
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.kill(pid, sig)
            except ProcessLookupError:
                return
            except PermissionError as exc:
                raise FactoryError(
                    f"Not permitted to signal QEMU process {pid}.\n"
                    "  Possible fixes:\n"
                    f"    - sudo kill {pid}"
                ) from exc
            if poll_until(lambda: not pid_alive(pid), timeout=wait, interval=0.5,
                          description="Waiting for QEMU to exit", report_every=wait + 1):
                return
            log("WARN", f"QEMU process {pid} ignored {sig.name}")
        raise FactoryError(f"QEMU process {pid} could not be killed")

    def destroy(self) -> None:
        if self.cfg.vm_dir.exists():
            shutil.rmtree(self.cfg.vm_dir)
            log("INFO", f"Removed {self.cfg.vm_dir}")
