"""Keeps a DNS-backed virtual IP in step with what its name resolves to."""

from __future__ import annotations

import logging
import threading

from vipnet.util import is_ipv6, lookup_host

logger = logging.getLogger(__name__)


class IPUpdater:
    """Periodically resolves the VIP's DNS name and refreshes the address."""

    def __init__(self, vip, interval: float = 3.0) -> None:
        self.vip = vip
        self.interval = interval

    def update_once(self) -> str:
        """Resolve once, apply the result and return the address used."""
        mode = "ipv6" if is_ipv6(self.vip.ip) else "ipv4"
        try:
            ips = lookup_host(self.vip.dns_name, mode)
        except (OSError, ValueError) as exc:
            logger.warning("cannot lookup %s: %s", self.vip.dns_name, exc)
            # Fall back to renewing the existing address.
            ips = [self.vip.ip]

        logger.info("setting %s as an IP", ips)
        try:
            self.vip.set_ip(ips[0])
        except Exception as exc:
            logger.error("setting %s as an IP: %s", ips, exc)
        try:
            self.vip.add_ip()
        except Exception as exc:
            logger.error("error adding virtual IP: %s", exc)
        return ips[0]

    def _loop(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            self.update_once()
            stop_event.wait(self.interval)
        logger.info("stop ipUpdater")

    def run(self, stop_event: threading.Event) -> threading.Thread:
        """Start updating in a background thread until ``stop_event`` is set."""
        thread = threading.Thread(target=self._loop, args=(stop_event,), daemon=True)
        thread.start()
        return thread