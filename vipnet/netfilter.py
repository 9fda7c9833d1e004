"""A small client for the iptables command line tools."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)

TABLE_FILTER = "filter"
CHAIN_INPUT = "INPUT"

Runner = Callable[[Sequence[str]], subprocess.CompletedProcess]


class IPTablesError(RuntimeError):
    """Raised when an iptables command exits with a failure status."""

    def __init__(self, argv: Sequence[str], returncode: int, stderr: str = "") -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        super().__init__(
            f"running {' '.join(self.argv)}: exit status {returncode}: {self.stderr}"
        )


def _default_runner(argv: Sequence[str]) -> subprocess.CompletedProcess:
    return subprocess.run(list(argv), capture_output=True, text=True, check=False)


class IPTables:
    """Runs iptables or ip6tables, optionally through the nftables backend."""

    def __init__(
        self,
        *,
        nftables: bool = False,
        ipv6: bool = False,
        timeout: int | None = None,
        runner: Runner | None = None,
    ) -> None:
        base = "ip6tables" if ipv6 else "iptables"
        self.command = f"{base}-nft" if nftables else base
        self.nftables = nftables
        self.ipv6 = ipv6
        self.timeout = timeout
        self._runner = runner or _default_runner

    def _execute(self, args: Sequence[str]) -> subprocess.CompletedProcess:
        argv = [self.command, "--wait"]
        if self.timeout:
            argv.append(str(self.timeout))
        argv.extend(args)
        logger.debug("running %s", " ".join(argv))
        return self._runner(argv)

    def _run(self, *args: str) -> str:
        result = self._execute(args)
        if result.returncode != 0:
            raise IPTablesError(result.args, result.returncode, result.stderr or "")
        return result.stdout or ""

    def exists(self, table: str, chain: str, *args: str) -> bool:
        """Return whether the rule ``args`` is present in ``chain``."""
        result = self._execute(["-t", table, "-C", chain, *args])
        if result.returncode == 0:
            return True
        if result.returncode == 1:
            return False
        raise IPTablesError(result.args, result.returncode, result.stderr or "")

    def append(self, table: str, chain: str, *args: str) -> None:
        self._run("-t", table, "-A", chain, *args)

    def insert(self, table: str, chain: str, position: int, *args: str) -> None:
        self._run("-t", table, "-I", chain, str(position), *args)

    def insert_unique(self, table: str, chain: str, position: int, *args: str) -> None:
        """Insert the rule at ``position`` unless it is already present."""
        if not self.exists(table, chain, *args):
            self.insert(table, chain, position, *args)

    def delete(self, table: str, chain: str, *args: str) -> None:
        self._run("-t", table, "-D", chain, *args)

    def delete_if_exists(self, table: str, chain: str, *args: str) -> None:
        """Delete the rule if it is present; do nothing otherwise."""
        if self.exists(table, chain, *args):
            self.delete(table, chain, *args)

    def list(self, table: str, chain: str) -> list[str]:
        """Return the rules of ``chain`` as printed by ``-S``."""
        return [line for line in self._run("-t", table, "-S", chain).splitlines() if line]

    def new_chain(self, table: str, chain: str) -> None:
        self._run("-t", table, "-N", chain)

    def _chains(self, table: str) -> list[str]:
        names = []
        for line in self._run("-t", table, "-S").splitlines():
            fields = line.split()
            if len(fields) >= 2 and fields[0] in ("-N", "-P"):
                names.append(fields[1])
        return names

    def chain_exists(self, table: str, chain: str) -> bool:
        return chain in self._chains(table)

    def clear_and_delete_chain(self, table: str, chain: str) -> None:
        """Flush and remove ``chain`` if it exists."""
        if not self.chain_exists(table, chain):
            return
        self._run("-t", table, "-F", chain)
        self._run("-t", table, "-X", chain)


def get_rule_specification(rule: str, flag: str) -> str:
    """Return the value following ``flag`` in a rule line, or an empty string."""
    try:
        tokens = shlex.split(rule)
    except ValueError:
        tokens = rule.split()
    for token, value in zip(tokens, tokens[1:]):
        if token == flag:
            return value
    return ""