"""Virtual IP management: addresses, routes, ARP/NDP announcements, DNS tracking and egress rules."""

__version__ = "0.7.0"
__all__ = ["address", "arp", "dns", "egress", "ndp", "netfilter", "util"]