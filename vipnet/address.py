"""Virtual IP addresses on a network interface, with routes and port filtering."""

from __future__ import annotations

import ipaddress
import logging
import os
import shlex
import subprocess
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from vipnet.netfilter import (
    CHAIN_INPUT,
    TABLE_FILTER,
    IPTables,
    get_rule_specification,
)
from vipnet.util import get_full_mask, get_host_name, is_ip, is_ipv6, lookup_host

logger = logging.getLogger(__name__)

DEFAULT_VALID_LFT = 60
IPTABLES_COMMENT = "%s kube-vip load balancer IP"
IGNORE_SERVICE_SECURITY_ANNOTATION = "kube-vip.io/ignore-service-security"
DHCP_CLIENT_PORT = "68"

RTN_UNICAST = 1
RTN_LOCAL = 2

_ROUTE_TYPES = {
    1: "unicast",
    2: "local",
    3: "broadcast",
    4: "anycast",
    5: "multicast",
    6: "blackhole",
    7: "unreachable",
    8: "prohibit",
    9: "throw",
    10: "nat",
}

Runner = Callable[[Sequence[str]], subprocess.CompletedProcess]
Interface = ipaddress.IPv4Interface | ipaddress.IPv6Interface


class NetlinkError(RuntimeError):
    """Raised when an ``ip`` command fails."""


def _default_runner(argv: Sequence[str]) -> subprocess.CompletedProcess:
    return subprocess.run(list(argv), capture_output=True, text=True, check=False)


def _run_ip(runner: Runner, *args: str) -> str:
    argv = ["ip", *args]
    logger.debug("running %s", " ".join(argv))
    result = runner(argv)
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise NetlinkError(f"running {' '.join(argv)}: exit status {result.returncode}: {stderr}")
    return result.stdout or ""


def _parse_addresses(output: str) -> Iterable[tuple[Interface, list[str]]]:
    """Yield each address listed by ``ip -o addr show`` with the tokens of its line."""
    for line in output.splitlines():
        tokens = line.split()
        for token, value in zip(tokens, tokens[1:]):
            if token in ("inet", "inet6"):
                try:
                    yield ipaddress.ip_interface(value), tokens
                except ValueError:
                    continue


def _link_exists(name: str) -> bool:
    return bool(name) and "/" not in name and (Path("/sys/class/net") / name).exists()


def _require_link(name: str) -> None:
    if not _link_exists(name):
        raise OSError(f"could not get link for interface '{name}'")


def _full_interface(address: str) -> Interface:
    return ipaddress.ip_interface(address + get_full_mask(address))


def _service_security_enabled() -> bool:
    return os.environ.get("enable_service_security") == "true"


def _rule_spec(rule: str) -> list[str]:
    try:
        tokens = shlex.split(rule)
    except ValueError:
        tokens = rule.split()
    if tokens[:1] == ["-A"]:
        return tokens[2:]
    return tokens


def _same_ip(value: str, ip: str) -> bool:
    try:
        return ipaddress.ip_interface(value).ip == ipaddress.ip_address(ip)
    except ValueError:
        return value == ip


@dataclass(frozen=True)
class ServicePort:
    """A protocol and port exposed by a service."""

    protocol: str
    port: int


class Network:
    """A virtual IP bound to one interface."""

    def __init__(
        self,
        address: Interface,
        link: str,
        *,
        dns_name: str = "",
        is_ddns: bool = False,
        route_table: int = 0,
        routing_table_type: int = 0,
        scope: str | None = None,
        valid_lft: int | None = None,
        runner: Runner | None = None,
        iptables_factory: Callable[[], IPTables] | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self.address = address
        self.link = link
        self.dns_name = dns_name
        self.is_ddns = is_ddns
        self.route_table = route_table
        self.routing_table_type = routing_table_type
        self.scope = scope
        self.valid_lft = valid_lft
        self.ports: list[ServicePort] = []
        self.service_name = ""
        self.ignore_security = False
        self._runner = runner or _default_runner
        self._iptables_factory = iptables_factory or IPTables

    @property
    def ip(self) -> str:
        with self._lock:
            return str(self.address.ip)

    @property
    def interface(self) -> str:
        return self.link

    def is_dns(self) -> bool:
        return self.dns_name != ""

    def ddns_host_name(self) -> str:
        """Return the host part of the DNS name, used as the DHCP host name."""
        return get_host_name(self.dns_name)

    def _route_args(self) -> list[str]:
        args: list[str] = []
        if self.routing_table_type:
            try:
                args.append(_ROUTE_TYPES[self.routing_table_type])
            except KeyError as exc:
                raise ValueError(f"unknown route type {self.routing_table_type}") from exc
        scope = "link" if self.routing_table_type == RTN_LOCAL else "global"
        args += [str(self.address.network), "dev", self.link, "scope", scope]
        if self.route_table:
            args += ["table", str(self.route_table)]
        return args

    def add_route(self) -> None:
        """Add a route for the address to the configured table."""
        _run_ip(self._runner, "route", "add", *self._route_args())

    def delete_route(self) -> None:
        """Remove the route for the address from the configured table."""
        _run_ip(self._runner, "route", "del", *self._route_args())

    def add_ip(self) -> None:
        """Add (or refresh) the address on the interface."""
        args = ["addr", "replace", str(self.address), "dev", self.link]
        if self.scope:
            args += ["scope", self.scope]
        if self.valid_lft:
            args += ["valid_lft", str(self.valid_lft), "preferred_lft", "0"]
        try:
            _run_ip(self._runner, *args)
        except NetlinkError as exc:
            raise NetlinkError(f"could not add ip: {exc}") from exc

        if _service_security_enabled() and not self.ignore_security:
            try:
                self._add_port_rules()
            except Exception as exc:
                raise RuntimeError(
                    f"could not add iptables rules to limit traffic ports: {exc}"
                ) from exc

    def delete_ip(self) -> None:
        """Remove the address from the interface if it is present."""
        try:
            present = self.is_set()
        except NetlinkError as exc:
            raise NetlinkError(f"ip check in DeleteIP failed: {exc}") from exc
        if not present:
            return
        try:
            _run_ip(self._runner, "addr", "del", str(self.address), "dev", self.link)
        except NetlinkError as exc:
            raise NetlinkError(f"could not delete ip: {exc}") from exc

        if _service_security_enabled() and not self.ignore_security:
            try:
                self._remove_port_rules()
            except Exception as exc:
                raise RuntimeError(
                    f"could not remove iptables rules to limit traffic ports: {exc}"
                ) from exc

    def is_set(self) -> bool:
        """Return whether the address is configured on the interface."""
        if self.address is None:
            return False
        try:
            output = _run_ip(self._runner, "-o", "addr", "show", "dev", self.link)
        except NetlinkError as exc:
            raise NetlinkError(f"could not list addresses: {exc}") from exc
        return any(found == self.address for found, _ in _parse_addresses(output))

    def is_dadfail(self) -> bool:
        """Return True if the IPv6 address failed duplicate address detection."""
        if self.address is None or not is_ipv6(str(self.address.ip)):
            return False
        try:
            output = _run_ip(self._runner, "-6", "-o", "addr", "show", "dev", self.link)
        except NetlinkError:
            return False
        return any(
            found.ip == self.address.ip and "dadfailed" in tokens
            for found, tokens in _parse_addresses(output)
        )

    def set_ip(self, ip: str) -> None:
        """Replace the address, keeping a finite lifetime for DNS-backed addresses."""
        with self._lock:
            address = _full_interface(ip)
            if self.address is not None and self.is_dns():
                self.valid_lft = DEFAULT_VALID_LFT
            self.address = address

    def set_service_ports(
        self,
        namespace: str,
        name: str,
        ports: Iterable[ServicePort],
        annotations: Mapping[str, str] | None = None,
    ) -> None:
        """Record the ports that traffic to the address is limited to."""
        with self._lock:
            self.ports = list(ports)
            self.service_name = f"{namespace}/{name}"
            self.ignore_security = (annotations or {}).get(
                IGNORE_SERVICE_SECURITY_ANNOTATION
            ) == "true"

    def _comment(self) -> str:
        return IPTABLES_COMMENT % self.service_name

    def _port_rule(self, vip: str, port: ServicePort, comment: str) -> list[str]:
        return [
            "-d", vip, "-p", port.protocol, "--dport", str(port.port),
            "-m", "comment", "--comment", comment, "-j", "ACCEPT",
        ]

    @staticmethod
    def _dhcp_rule(vip: str, comment: str) -> list[str]:
        return [
            "-d", vip, "-p", "UDP", "--dport", DHCP_CLIENT_PORT,
            "-m", "comment", "--comment", comment, "-j", "ACCEPT",
        ]

    @staticmethod
    def _drop_rule(vip: str, comment: str) -> list[str]:
        return ["-d", vip, "-m", "comment", "--comment", comment, "-j", "DROP"]

    def _add_port_rules(self) -> None:
        ipt = self._iptables_factory()
        vip = str(self.address.ip)
        comment = self._comment()
        ipt.insert_unique(TABLE_FILTER, CHAIN_INPUT, 1, *self._dhcp_rule(vip, comment))
        ipt.insert_unique(TABLE_FILTER, CHAIN_INPUT, 2, *self._drop_rule(vip, comment))
        logger.debug("add iptables rules, vip: %s, ports: %s", vip, self.ports)
        self._sync_port_rules(ipt, vip, comment)

    def _sync_port_rules(self, ipt: IPTables, vip: str, comment: str) -> None:
        present = [False] * len(self.ports)
        for rule in ipt.list(TABLE_FILTER, CHAIN_INPUT):
            if get_rule_specification(rule, "--comment") != comment:
                continue
            spec = _rule_spec(rule)
            if not _same_ip(get_rule_specification(rule, "-d"), vip):
                ipt.delete(TABLE_FILTER, CHAIN_INPUT, *spec)
                continue
            protocol = get_rule_specification(rule, "-p").upper()
            port = get_rule_specification(rule, "--dport")
            if protocol == "UDP" and port == DHCP_CLIENT_PORT:
                continue
            if not protocol or not port:
                continue
            matched = False
            for index, service_port in enumerate(self.ports):
                if service_port.protocol.upper() == protocol and str(service_port.port) == port:
                    matched = True
                    present[index] = True
            if not matched:
                ipt.delete(TABLE_FILTER, CHAIN_INPUT, *spec)

        for service_port, exists in zip(self.ports, present):
            if not exists:
                ipt.insert_unique(
                    TABLE_FILTER, CHAIN_INPUT, 1, *self._port_rule(vip, service_port, comment)
                )

    def _remove_port_rules(self) -> None:
        ipt = self._iptables_factory()
        vip = str(self.address.ip)
        comment = self._comment()
        ipt.delete_if_exists(TABLE_FILTER, CHAIN_INPUT, *self._dhcp_rule(vip, comment))
        ipt.delete_if_exists(TABLE_FILTER, CHAIN_INPUT, *self._drop_rule(vip, comment))
        logger.debug("remove iptables rules, vip: %s, ports: %s", vip, self.ports)
        for service_port in self.ports:
            ipt.delete_if_exists(
                TABLE_FILTER, CHAIN_INPUT, *self._port_rule(vip, service_port, comment)
            )


def new_config(
    address: str,
    iface: str,
    subnet: str,
    is_ddns: bool,
    table_id: int,
    table_type: int,
    dns_mode: str,
) -> list[Network]:
    """Build the networks for ``address``, resolving it first if it is a DNS name."""
    if is_ip(address):
        _require_link(iface)
        try:
            parsed = (
                ipaddress.ip_interface(address + subnet) if subnet else _full_interface(address)
            )
        except ValueError as exc:
            raise ValueError(f"could not parse address '{address}'") from exc
        return [
            Network(
                parsed,
                iface,
                route_table=table_id,
                routing_table_type=table_type,
                scope="host" if iface == "lo" else None,
            )
        ]

    try:
        ips = lookup_host(address, dns_mode)
    except (OSError, ValueError):
        # A dynamic DNS name gets its address from DHCP once leadership is won.
        if is_ddns:
            return []
        raise

    networks = []
    for ip in ips:
        _require_link(iface)
        networks.append(
            Network(
                _full_interface(ip),
                iface,
                dns_name=address,
                is_ddns=is_ddns,
                route_table=table_id,
                routing_table_type=table_type,
                valid_lft=DEFAULT_VALID_LFT,
            )
        )
    return networks


def garbage_collect(adapter: str, address: str) -> bool:
    """Remove ``address`` from ``adapter``; return whether it was found."""
    _require_link(adapter)
    output = _run_ip(_default_runner, "-o", "addr", "show", "dev", adapter)
    found = False
    for existing, _ in _parse_addresses(output):
        if str(existing.ip) == address:
            found = True
            try:
                _run_ip(_default_runner, "addr", "del", str(existing), "dev", adapter)
            except NetlinkError as exc:
                raise NetlinkError(f"could not delete ip: {exc}") from exc
    return found