"""Tests for factoryvm.network module."""

from __future__ import annotations

from factoryvm.network import port_forwards, render_netdev_args


class TestPortForwards:
    def test_all_services(self, factory_config):
        assert port_forwards(factory_config) == [(2222, 22), (8443, 443), (8080, 80)]

    def test_installer_only_needs_ssh(self, factory_config):
        assert port_forwards(factory_config, include_services=False) == [(2222, 22)]


class TestRenderNetdevArgs:
    def test_forwards_bind_loopback_only(self, factory_config):
        args = render_netdev_args(factory_config)
        assert args[0] == "-device"
        assert args[1] == "virtio-net-pci,netdev=net0"
        netdev = args[3]
        assert netdev.startswith("user,id=net0,")
        assert "hostfwd=tcp:127.0.0.1:2222-:22" in netdev
        assert "hostfwd=tcp:127.0.0.1:8443-:443" in netdev
        assert "0.0.0.0" not in netdev

    def test_mac_address_appended(self, factory_config):
        args = render_netdev_args(factory_config, mac_address="52:54:00:12:34:56")
        assert args[1].endswith(",mac=52:54:00:12:34:56")
