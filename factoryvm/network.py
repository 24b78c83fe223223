"""QEMU user-mode network arguments for factory-vm."""

from __future__ import annotations

from typing import List, Optional

from factoryvm.models import FactoryConfig

GUEST_SSH_PORT = 22
GUEST_HTTPS_PORT = 443
GUEST_HTTP_PORT = 80


def port_forwards(config: FactoryConfig, include_services: bool = True) -> List[tuple]:
    """Return ``(host_port, guest_port)`` pairs exposed to the host loopback."""
    forwards = [(config.ssh_port, GUEST_SSH_PORT)]
    if include_services:
        forwards.append((config.https_port, GUEST_HTTPS_PORT))
        forwards.append((config.http_port, GUEST_HTTP_PORT))
    return forwards


def render_netdev_args(
    config: FactoryConfig,
    include_services: bool = True,
    netdev_id: str = "net0",
    mac_address: Optional[str] = None,
) -> List[str]:
    """Render the ``-device``/``-netdev`` pair for a user-mode NIC with host forwards.

    Forwards bind to 127.0.0.1 only; nothing in the guest is reachable from
    other machines.
    """
    rules = ",".join(
        f"hostfwd=tcp:127.0.0.1:{host}-:{guest}" for host, guest in port_forwards(config, include_services)
    )
    device = f"virtio-net-pci,netdev={netdev_id}"
    if mac_address:
        device += f",mac={mac_address}"
    return ["-device", device, "-netdev", f"user,id={netdev_id},{rules}"]
