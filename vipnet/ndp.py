"""Unsolicited IPv6 neighbor advertisements for a virtual IP."""

from __future__ import annotations

import ipaddress
import logging
import socket
import struct
from pathlib import Path

logger = logging.getLogger(__name__)

ICMPV6_NEIGHBOR_ADVERTISEMENT = 136
OPTION_TARGET_LINK_LAYER_ADDRESS = 2
ALL_NODES_LINK_LOCAL = "ff02::1"

_FLAG_ROUTER = 0x80
_FLAG_SOLICITED = 0x40
_FLAG_OVERRIDE = 0x20
_HW_LEN = 6


def _mac_bytes(mac: bytes | bytearray | str) -> bytes:
    if isinstance(mac, (bytes, bytearray)):
        raw = bytes(mac)
    else:
        try:
            raw = bytes(int(part, 16) for part in mac.split(":")) if mac else b""
        except ValueError as exc:
            raise ValueError(f"{mac!r} is not an Ethernet MAC address") from exc
    if len(raw) != _HW_LEN:
        raise ValueError(f"{mac!r} is not an Ethernet MAC address")
    return raw


def build_neighbor_advertisement(target, hardware_addr, gratuitous: bool) -> bytes:
    """Return an ICMPv6 neighbor advertisement for ``target`` at ``hardware_addr``.

    The checksum is left zero; the kernel fills it in for ICMPv6 sockets.
    """
    address = ipaddress.ip_address(target)
    if address.version != 6:
        raise ValueError(f"invalid target address {target}")
    flags = _FLAG_OVERRIDE if gratuitous else _FLAG_SOLICITED
    header = struct.pack(">BBHB3x", ICMPV6_NEIGHBOR_ADVERTISEMENT, 0, 0, flags)
    option = bytes((OPTION_TARGET_LINK_LAYER_ADDRESS, 1)) + _mac_bytes(hardware_addr)
    return header + address.packed + option


class NdpResponder:
    """Sends neighbor advertisements on one interface."""

    def __init__(self, iface_name: str) -> None:
        try:
            self.index = socket.if_nametoindex(iface_name)
        except OSError as exc:
            raise OSError(f"failed to get interface {iface_name!r}: {exc}") from exc
        try:
            mac = (Path("/sys/class/net") / iface_name / "address").read_text().strip()
        except OSError as exc:
            raise OSError(f"failed to get interface {iface_name!r}: {exc}") from exc
        self.intf = iface_name
        self.hardware_addr = mac
        try:
            sock = socket.socket(socket.AF_INET6, socket.SOCK_RAW, socket.IPPROTO_ICMPV6)
        except OSError as exc:
            raise OSError(f"creating NDP responder for {iface_name!r}: {exc}") from exc
        try:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_HOPS, 255)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_UNICAST_HOPS, 255)
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_MULTICAST_IF, self.index)
        except OSError as exc:
            sock.close()
            raise OSError(f"creating NDP responder for {iface_name!r}: {exc}") from exc
        self._sock = sock

    def __enter__(self) -> NdpResponder:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._sock.close()

    def send_gratuitous(self, address: str) -> None:
        """Broadcast an advertisement for ``address`` to all link-local nodes."""
        try:
            ip = ipaddress.ip_address(address)
        except ValueError as exc:
            raise ValueError(f"failed to parse address {address}") from exc
        logger.info(
            "Broadcasting NDP update for %s (%s) via %s", address, self.hardware_addr, self.intf
        )
        message = build_neighbor_advertisement(ip, self.hardware_addr, True)
        self._sock.sendto(message, (ALL_NODES_LINK_LOCAL, 0, 0, self.index))