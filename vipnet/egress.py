"""Source NAT rules that make pod egress traffic leave from a VIP."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from vipnet.netfilter import IPTables, IPTablesError

logger = logging.getLogger(__name__)

MANGLE_CHAIN_NAME = "KUBE-VIP-EGRESS"
COMMENT = "a3ViZS12aXAK=kube-vip"

_MARK = "64/64"


class RuleNotFoundError(LookupError):
    """Raised when a rule that should be removed is not present."""


@dataclass
class Egress:
    """Manages mangle and nat rules tagged with a per-namespace comment."""

    client: Any
    comment: str

    def _comment_spec(self) -> tuple[str, ...]:
        return ("-m", "comment", "--comment", self.comment)

    def _mark_spec(self, source: str) -> tuple[str, ...]:
        return ("-s", source, "-j", "MARK", "--set-mark", _MARK, *self._comment_spec())

    def _snat_spec(
        self, pod_ip: str, vip: str, port: str | None = None, proto: str | None = None
    ) -> tuple[str, ...]:
        spec = ["-s", f"{pod_ip}/32", "-m", "mark", "--mark", _MARK, "-j", "SNAT", "--to-source", vip]
        if port is not None:
            spec += ["-p", proto, "--dport", port]
        return (*spec, *self._comment_spec())

    def _exists_quiet(self, table: str, chain: str, *spec: str) -> bool:
        try:
            return self.client.exists(table, chain, *spec)
        except IPTablesError:
            return False

    def check_mangle_chain(self, name: str) -> bool:
        logger.info("[egress] Checking for Chain [%s]", name)
        return self.client.chain_exists("mangle", name)

    def delete_mangle_chain(self, name: str) -> None:
        self.client.clear_and_delete_chain("mangle", name)

    def delete_mangle_prerouting(self, name: str) -> None:
        self.client.delete("mangle", "PREROUTING", "-j", name)

    def delete_mangle_marking(self, pod_ip: str, name: str) -> None:
        logger.info("[egress] Stopping marking packets on network [%s]", pod_ip)
        spec = self._mark_spec(pod_ip)
        if not self._exists_quiet("mangle", name, *spec):
            raise RuleNotFoundError(f"unable to find source Mangle rule for [{pod_ip}]")
        self.client.delete("mangle", name, *spec)

    def delete_source_nat(self, pod_ip: str, vip: str) -> None:
        logger.info("[egress] Removing source nat from [%s] => [%s]", pod_ip, vip)
        spec = self._snat_spec(pod_ip, vip)
        if not self._exists_quiet("nat", "POSTROUTING", *spec):
            raise RuleNotFoundError(f"unable to find source Nat rule for [{pod_ip}]")
        self.client.delete("nat", "POSTROUTING", *spec)

    def delete_source_nat_for_destination_port(
        self, pod_ip: str, vip: str, port: str, proto: str
    ) -> None:
        logger.info("[egress] Removing source nat from [%s] => [%s]", pod_ip, vip)
        spec = self._snat_spec(pod_ip, vip, port, proto)
        if not self._exists_quiet("nat", "POSTROUTING", *spec):
            raise RuleNotFoundError(
                f"unable to find source Nat rule for [{pod_ip}], with destination port [{port}]"
            )
        self.client.delete("nat", "POSTROUTING", *spec)

    def create_mangle_chain(self, name: str) -> None:
        logger.info("[egress] Creating Chain [%s]", name)
        self.client.new_chain("mangle", name)

    def append_return_rules_for_destination_subnet(self, name: str, subnet: str) -> None:
        logger.info("[egress] Adding jump for subnet [%s] to RETURN to previous chain/rules", subnet)
        spec = ("-d", subnet, "-j", "RETURN", *self._comment_spec())
        if not self._exists_quiet("mangle", name, *spec):
            self.client.append("mangle", name, *spec)

    def append_return_rules_for_marking(self, name: str, subnet: str) -> None:
        logger.info("[egress] Marking packets on network [%s]", subnet)
        spec = self._mark_spec(subnet)
        if not self._exists_quiet("mangle", name, *spec):
            self.client.append("mangle", name, *spec)

    def _replace_first(self, table: str, chain: str, spec: tuple[str, ...]) -> None:
        if self.client.exists(table, chain, *spec):
            self.client.delete(table, chain, *spec)
        self.client.insert(table, chain, 1, *spec)

    def insert_mangle_table_into_prerouting(self, name: str) -> None:
        logger.info("[egress] Adding jump from mangle prerouting to [%s]", name)
        self._replace_first("mangle", "PREROUTING", ("-j", name, *self._comment_spec()))

    def insert_source_nat(self, vip: str, pod_ip: str) -> None:
        logger.info("[egress] Adding source nat from [%s] => [%s]", pod_ip, vip)
        self._replace_first("nat", "POSTROUTING", self._snat_spec(pod_ip, vip))

    def insert_source_nat_for_destination_port(
        self, vip: str, pod_ip: str, port: str, proto: str
    ) -> None:
        logger.info(
            "[egress] Adding source nat from [%s] => [%s], with destination port [%s]",
            pod_ip, vip, port,
        )
        self._replace_first("nat", "POSTROUTING", self._snat_spec(pod_ip, vip, port, proto))

    def dump_chain(self, name: str) -> list[str]:
        """Log and return the rules of the named mangle chain."""
        logger.info("Dumping chain [%s]", name)
        rules = self.client.list("mangle", name)
        for rule in rules:
            logger.info("Rule -> %s", rule)
        return rules

    def _delete_found(self, table: str, chain: str, rules: list[str]) -> None:
        for rule in self.find_rules(rules):
            try:
                self.client.delete(table, chain, *rule[2:])
            except IPTablesError as exc:
                logger.error("[egress] Error removing rule [%s]", exc)

    def clean_iptables(self) -> None:
        """Remove every nat and mangle rule carrying this instance's comment."""
        nat_rules = self.client.list("nat", "POSTROUTING")
        logger.warning(
            "[egress] Cleaning [%d] dangling postrouting nat rules",
            len(self.find_rules(nat_rules)),
        )
        self._delete_found("nat", "POSTROUTING", nat_rules)

        try:
            exists = self.check_mangle_chain(MANGLE_CHAIN_NAME)
        except IPTablesError as exc:
            logger.debug("[egress] No Mangle chain exists [%s]", exc)
            exists = False

        if not exists:
            logger.warning("No existing mangle chain [%s] exists", MANGLE_CHAIN_NAME)
            return
        mangle_rules = self.client.list("mangle", MANGLE_CHAIN_NAME)
        logger.warning(
            "[egress] Cleaning [%d] dangling prerouting mangle rules",
            len(self.find_rules(mangle_rules)),
        )
        self._delete_found("mangle", MANGLE_CHAIN_NAME, mangle_rules)

    def find_rules(self, rules: list[str]) -> list[list[str]]:
        """Split the rules that carry this comment into tokens, unquoting the comment."""
        quoted = f'"{self.comment}"'
        found = []
        for rule in rules:
            tokens = rule.split(" ")
            for position, token in enumerate(tokens):
                if token == quoted:
                    tokens[position] = token.strip('"')
                    found.append(tokens)
        return found


def create_iptables_client(nftables: bool, namespace: str, ipv6: bool = False) -> Egress:
    """Return an Egress manager for ``namespace`` using iptables or ip6tables."""
    logger.info("[egress] Creating an iptables client, nftables mode [%s]", nftables)
    client = IPTables(nftables=nftables, ipv6=ipv6, timeout=5 if ipv6 else None)
    return Egress(client=client, comment=f"{COMMENT}-{namespace}")