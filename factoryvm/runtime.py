"""Host runtime detection for factory-vm."""

from __future__ import annotations

import platform
import shutil
from dataclasses import dataclass
from typing import List

from factoryvm.constants import QEMU_BINARY
from factoryvm.utils import kvm_available, log

ARCH_ALIASES = {
    "arm64": "aarch64",
    "amd64": "x86_64",
}


@dataclass
class RuntimeInfo:
    host_arch: str  # "aarch64", "x86_64", ...
    system: str  # "Linux", "Darwin"
    kvm: bool
    qemu_binary: str

    @property
    def accel(self) -> str:
        # KVM can only run a guest of the host's own architecture.
        if self.kvm and self.host_arch == "aarch64":
            return "kvm"
        if self.system == "Darwin" and self.host_arch == "aarch64":
            return "hvf"
        return "tcg"

    def accel_args(self) -> List[str]:
        return ["-accel", self.accel]


def _host_arch() -> str:
    machine = platform.machine().lower()
    return ARCH_ALIASES.get(machine, machine)


def detect_runtime() -> RuntimeInfo:
    """Detect host architecture and which accelerator QEMU can use."""
    arch = _host_arch()
    system = platform.system()
    kvm = system == "Linux" and kvm_available()
    qemu = shutil.which(QEMU_BINARY) or QEMU_BINARY
    info = RuntimeInfo(host_arch=arch, system=system, kvm=kvm, qemu_binary=qemu)
    if info.accel == "tcg":
        log("WARN", f"Host is {arch} without usable hardware acceleration; using TCG emulation (much slower)")
    else:
        log("DEBUG", f"Using {info.accel} acceleration on {arch}")
    return info
