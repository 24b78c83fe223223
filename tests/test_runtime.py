"""Tests for factoryvm.runtime module."""

from __future__ import annotations

from unittest.mock import patch

from factoryvm.runtime import RuntimeInfo, detect_runtime


class TestRuntimeInfo:
    def test_kvm_on_arm_host(self):
        info = RuntimeInfo(host_arch="aarch64", system="Linux", kvm=True, qemu_binary="qemu-system-aarch64")
        assert info.accel == "kvm"
        assert info.accel_args() == ["-accel", "kvm"]

    def test_kvm_on_x86_host_falls_back_to_tcg(self):
        info = RuntimeInfo(host_arch="x86_64", system="Linux", kvm=True, qemu_binary="qemu-system-aarch64")
        assert info.accel == "tcg"

    def test_apple_silicon_uses_hvf(self):
        info = RuntimeInfo(host_arch="aarch64", system="Darwin", kvm=False, qemu_binary="qemu-system-aarch64")
        assert info.accel == "hvf"


class TestDetectRuntime:
    def test_arm64_alias_normalised(self):
        with patch("factoryvm.runtime.platform.machine", return_value="arm64"), \
                patch("factoryvm.runtime.platform.system", return_value="Darwin"), \
                patch("factoryvm.runtime.shutil.which", return_value="/opt/homebrew/bin/qemu-system-aarch64"), \
                patch("factoryvm.runtime.log"):
            info = detect_runtime()
        assert info.host_arch == "aarch64"
        assert info.accel == "hvf"
        assert info.qemu_binary == "/opt/homebrew/bin/qemu-system-aarch64"

    def test_tcg_warns(self):
        with patch("factoryvm.runtime.platform.machine", return_value="x86_64"), \
                patch("factoryvm.runtime.platform.system", return_value="Linux"), \
                patch("factoryvm.runtime.kvm_available", return_value=True), \
                patch("factoryvm.runtime.shutil.which", return_value=None), \
                patch("factoryvm.runtime.log") as mock_log:
            info = detect_runtime()
        assert info.accel == "tcg"
        assert info.qemu_binary == "qemu-system-aarch64"
        assert mock_log.call_args[0][0] == "WARN"
