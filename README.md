# vipnet

A library for managing a virtual IP (VIP) on a Linux host:

- add and remove the VIP on an interface and in a routing table
  (`vipnet.address`),
- announce it to neighbours with gratuitous ARP for IPv4 (`vipnet.arp`) or
  unsolicited neighbour advertisements for IPv6 (`vipnet.ndp`),
- follow a DNS name and keep the VIP in step with what it resolves to
  (`vipnet.dns`),
- rewrite the source address of pod egress traffic to the VIP with iptables
  mangle/nat rules (`vipnet.egress`, on top of `vipnet.netfilter`).

Address and route changes are made by running the `ip` tool; firewall
changes by running `iptables` / `ip6tables` (or their `-nft` variants).
ARP and NDP use raw sockets. Most operations therefore need root or
`CAP_NET_ADMIN` / `CAP_NET_RAW`. The package has no third-party
dependencies.

## Installation

```
pip install vipnet
```

## Address helpers

```python
from vipnet.util import is_ipv4, get_full_mask, get_ips, get_host_name, lookup_host

is_ipv4("192.168.0.1")               # True
get_full_mask("fd00::1")             # "/128"
get_ips("10.0.0.5, fd00::5")         # ["10.0.0.5", "fd00::5"]
get_host_name("api.example.com")     # "api"
lookup_host("api.example.com", "dual")  # first IPv4 and first IPv6 address
```

`lookup_host` with mode `ipv4`, `ipv6` or `dual` returns the first address of
each requested family and raises `ValueError` if one is missing; any other
mode returns the first address found. `generate_mac()` returns a random MAC
address under a fixed manufacturer prefix.

## Putting a VIP on an interface

```python
from vipnet.address import new_config

networks = new_config("192.168.0.100", "eth0", "", False, 0, 0, "ipv4")
for network in networks:
    network.add_ip()
    print(network.is_set())
```

`new_config(address, iface, subnet, is_ddns, table_id, table_type, dns_mode)`
returns a list of `Network` objects. An IP address gets a full-length mask
unless `subnet` (such as `"/24"`) is given; on `lo` the address is added with
host scope. A DNS name is resolved with `lookup_host`, and each resulting
`Network` remembers the name and is added with a 60-second valid lifetime.

A `Network` offers `add_ip`, `delete_ip`, `is_set`, `is_dadfail`,
`add_route`, `delete_route`, `set_ip`, `set_service_ports`, `is_dns`,
`ddns_host_name`, and the `ip` and `interface` properties. Failing `ip`
commands raise `vipnet.address.NetlinkError`.

When the environment variable `enable_service_security` is `"true"`,
`add_ip` also installs filter rules that only accept traffic to the VIP on
the ports recorded with `set_service_ports` (plus UDP port 68 for DHCP) and
drop the rest; `delete_ip` removes them. A service annotated with
`kube-vip.io/ignore-service-security: "true"` is left unfiltered:

```python
from vipnet.address import ServicePort

network.set_service_ports("default", "web", [ServicePort("TCP", 80)], {})
```

`garbage_collect(adapter, address)` removes every occurrence of `address`
from `adapter` and returns whether it was found.

## Following a DNS name

```python
import threading
from vipnet.dns import IPUpdater

stop = threading.Event()
IPUpdater(networks[0]).run(stop)   # re-resolves every 3 seconds
...
stop.set()
```

`IPUpdater.update_once()` performs a single resolve-and-apply step; if the
lookup fails, the existing address is refreshed.

## Announcing the VIP

```python
from vipnet.arp import arp_send_gratuitous
from vipnet.ndp import NdpResponder

arp_send_gratuitous("192.168.0.100", "eth0")

with NdpResponder("eth0") as responder:
    responder.send_gratuitous("fd00::100")
```

Successive gratuitous ARP messages alternate between reply and request,
since different devices honour one or the other. `gratuitous_arp(ip, mac,
request)` and `ArpMessage.to_bytes()` build the packet without sending it;
`build_neighbor_advertisement(target, hardware_addr, gratuitous)` does the
same for NDP. On systems without packet sockets, ARP sending raises
`OSError("Unsupported on this OS")`.

## Egress rules

```python
from vipnet.egress import create_iptables_client, MANGLE_CHAIN_NAME

egress = create_iptables_client(False, "default", False)
egress.create_mangle_chain(MANGLE_CHAIN_NAME)
egress.append_return_rules_for_marking(MANGLE_CHAIN_NAME, "10.244.1.7/32")
egress.insert_mangle_table_into_prerouting(MANGLE_CHAIN_NAME)
egress.insert_source_nat("192.168.0.100", "10.244.1.7")
```

Every rule carries a comment specific to the namespace. Deleting a rule
that is not present raises `vipnet.egress.RuleNotFoundError`.
`egress.clean_iptables()` removes every nat and mangle rule carrying the
comment, and `egress.find_rules(rules)` picks those rules out of `-S`
output.

`vipnet.netfilter.IPTables` is the underlying command wrapper; it accepts a
`runner` callable in place of `subprocess.run`, as `Network` does for `ip`,
which makes both easy to drive in tests.

## What this package does not do

It is a library only: there is no command-line program. It does not obtain
addresses from DHCP, so a dynamic-DNS name that does not yet resolve simply
yields no networks from `new_config`. It does not perform leader election,
watch services in a cluster, or configure tunnels.

## Running the tests

```
pip install -e ".[test]"
pytest
```