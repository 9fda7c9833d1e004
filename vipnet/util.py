"""Address helpers: parsing, family checks, DNS lookups and MAC generation."""

from __future__ import annotations

import ipaddress
import logging
import secrets
import socket
from collections.abc import Callable, Iterable

logger = logging.getLogger(__name__)

_IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _parse(address: str) -> _IPAddress | None:
    if "%" in address:
        return None
    try:
        return ipaddress.ip_address(address)
    except ValueError:
        return None


def is_ip(address: str) -> bool:
    """Return True if ``address`` is an IPv4 or IPv6 address."""
    return _parse(address) is not None


def is_ipv4(address: str) -> bool:
    """Return True only if ``address`` is a valid IPv4 (or IPv4-mapped) address."""
    ip = _parse(address)
    if ip is None:
        return False
    return ip.version == 4 or ip.ipv4_mapped is not None


def is_ipv6(address: str) -> bool:
    """Return True only if ``address`` is a valid IPv6 address that is not IPv4."""
    ip = _parse(address)
    if ip is None:
        return False
    return ip.version == 6 and ip.ipv4_mapped is None


def get_full_mask(address: str) -> str:
    """Return ``/32`` for an IPv4 address and ``/128`` for an IPv6 address."""
    if is_ipv4(address):
        return "/32"
    if is_ipv6(address):
        return "/128"
    raise ValueError(f"failed to parse {address} as either IPv4 or IPv6")


def get_host_name(dns_name: str) -> str:
    """Return the host part of a fully qualified domain name."""
    if not dns_name:
        return ""
    return dns_name.split(".")[0]


def _first_matching(addresses: Iterable[str], checker: Callable[[str], bool]) -> str:
    for address in addresses:
        if checker(address):
            return address
    raise ValueError("address not found")


def _addresses_by_family(addresses: list[str], family: str) -> list[str]:
    checkers: list[tuple[str, Callable[[str], bool]]] = []
    if family in ("dual", "ipv4"):
        checkers.append(("IPv4", is_ipv4))
    if family in ("dual", "ipv6"):
        checkers.append(("IPv6", is_ipv6))

    found = []
    for label, checker in checkers:
        try:
            found.append(_first_matching(addresses, checker))
        except ValueError as exc:
            raise ValueError(f"error getting {label} address: {exc}") from exc
    return found


def lookup_host(dns_name: str, dns_mode: str) -> list[str]:
    """Resolve ``dns_name`` and return addresses chosen according to ``dns_mode``.

    ``dns_mode`` of ``ipv4``, ``ipv6`` or ``dual`` selects the first address of
    each requested family; any other mode returns the first address found.
    """
    infos = socket.getaddrinfo(dns_name, None, type=socket.SOCK_STREAM)
    result = list(dict.fromkeys(info[4][0] for info in infos))
    if not result:
        raise ValueError(f"empty address for {dns_name}")
    if dns_mode in ("ipv4", "ipv6", "dual"):
        return _addresses_by_family(result, dns_mode)
    return [result[0]]


def generate_mac() -> str:
    """Return a random MAC address under a fixed manufacturer prefix."""
    suffix = ":".join(f"{byte:02x}" for byte in secrets.token_bytes(3))
    mac = f"00:00:6C:{suffix}"
    logger.info("Generated mac: %s", mac)
    return mac


def get_ips(vip: str) -> list[str]:
    """Split a comma separated list of addresses, trimming whitespace."""
    return [part.strip() for part in vip.split(",")]