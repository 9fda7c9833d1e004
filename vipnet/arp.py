"""Gratuitous ARP construction and sending."""

from __future__ import annotations

import ipaddress
import itertools
import socket
import struct
from dataclasses import dataclass
from pathlib import Path

OP_ARP_REQUEST = 1
OP_ARP_REPLY = 2
HW_LEN = 6
IPV4_LEN = 4
ETH_P_ARP = 0x0806
ETHERNET_BROADCAST = b"\xff" * HW_LEN

_HEADER = struct.Struct(">HHBBH")
_SO_BINDTODEVICE = getattr(socket, "SO_BINDTODEVICE", 25)

# The first automatic message is a reply, then request and reply alternate,
# because different devices honour one or the other.
_alternate_request = itertools.cycle((False, True))


@dataclass
class ArpMessage:
    """An ARP message for Ethernet and IPv4."""

    opcode: int
    sender_hardware_address: bytes
    sender_protocol_address: bytes
    target_hardware_address: bytes
    target_protocol_address: bytes
    hardware_type: int = 1
    protocol_type: int = 0x0800
    hardware_address_length: int = HW_LEN
    protocol_address_length: int = IPV4_LEN

    def to_bytes(self) -> bytes:
        """Return the wire representation of the message."""
        header = _HEADER.pack(
            self.hardware_type,
            self.protocol_type,
            self.hardware_address_length,
            self.protocol_address_length,
            self.opcode,
        )
        return b"".join(
            (
                header,
                bytes(self.sender_hardware_address),
                bytes(self.sender_protocol_address),
                bytes(self.target_hardware_address),
                bytes(self.target_protocol_address),
            )
        )


def _ipv4_bytes(ip: str | ipaddress.IPv4Address | ipaddress.IPv6Address) -> bytes:
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError as exc:
        raise ValueError(f"{ip!r} is not an IPv4 address") from exc
    if parsed.version == 6:
        if parsed.ipv4_mapped is None:
            raise ValueError(f"{str(ip)!r} is not an IPv4 address")
        parsed = parsed.ipv4_mapped
    return parsed.packed


def _mac_bytes(mac: bytes | bytearray | str) -> bytes:
    if isinstance(mac, (bytes, bytearray)):
        raw = bytes(mac)
    else:
        try:
            raw = bytes(int(part, 16) for part in mac.split(":")) if mac else b""
        except ValueError as exc:
            raise ValueError(f"{mac!r} is not an Ethernet MAC address") from exc
    if len(raw) != HW_LEN:
        raise ValueError(f"{mac!r} is not an Ethernet MAC address")
    return raw


def gratuitous_arp(ip, mac, request: bool | None = None) -> ArpMessage:
    """Build a gratuitous ARP request or reply announcing ``ip`` at ``mac``.

    When ``request`` is None, successive calls alternate between reply and request.
    """
    ip_raw = _ipv4_bytes(ip)
    mac_raw = _mac_bytes(mac)
    if request is None:
        request = next(_alternate_request)

    if request:
        # The target hardware address is not used in a request.
        return ArpMessage(OP_ARP_REQUEST, mac_raw, ip_raw, ETHERNET_BROADCAST, ip_raw)
    return ArpMessage(OP_ARP_REPLY, mac_raw, ip_raw, mac_raw, ip_raw)


def _require_packet_sockets() -> None:
    if not hasattr(socket, "AF_PACKET"):
        raise OSError("Unsupported on this OS")


def send_arp(iface_name: str, message: ArpMessage) -> None:
    """Broadcast ``message`` on the named interface."""
    _require_packet_sockets()
    payload = message.to_bytes()
    try:
        sock = socket.socket(socket.AF_PACKET, socket.SOCK_DGRAM, socket.htons(ETH_P_ARP))
    except OSError as exc:
        raise OSError(f"failed to get raw socket: {exc}") from exc
    with sock:
        try:
            sock.setsockopt(socket.SOL_SOCKET, _SO_BINDTODEVICE, iface_name.encode())
        except OSError as exc:
            raise OSError(f"failed to bind to device: {exc}") from exc
        try:
            sock.bind((iface_name, ETH_P_ARP))
        except OSError as exc:
            raise OSError(f"failed to bind: {exc}") from exc
        address = (iface_name, ETH_P_ARP, 0, message.hardware_type, ETHERNET_BROADCAST)
        try:
            sock.sendto(payload, address)
        except OSError as exc:
            raise OSError(f"failed to send: {exc}") from exc


def _interface_mac(iface_name: str) -> str:
    if not iface_name or "/" in iface_name:
        raise OSError(f"failed to get interface {iface_name!r}: invalid name")
    try:
        return (Path("/sys/class/net") / iface_name / "address").read_text().strip()
    except OSError as exc:
        raise OSError(f"failed to get interface {iface_name!r}: {exc}") from exc


def arp_send_gratuitous(address: str, iface_name: str) -> None:
    """Send a gratuitous ARP for ``address`` via ``iface_name``."""
    _require_packet_sockets()
    mac = _interface_mac(iface_name)
    try:
        ip = ipaddress.ip_address(address)
    except ValueError as exc:
        raise ValueError(f"failed to parse address {address}") from exc
    send_arp(iface_name, gratuitous_arp(ip, mac))