import subprocess

import pytest

from vipnet.netfilter import IPTables, IPTablesError, get_rule_specification


def _render(spec):
    out = []
    previous = None
    for token in spec:
        out.append(f'"{token}"' if previous == "--comment" else token)
        previous = token
    return " ".join(out)


class FakeIptables:
    """Simulates iptables state for the commands the client issues."""

    def __init__(self, fail_code=None):
        self.tables = {
            "filter": {"INPUT": [], "OUTPUT": []},
            "mangle": {"PREROUTING": []},
            "nat": {"POSTROUTING": []},
        }
        self.calls = []
        self.fail_code = fail_code

    @staticmethod
    def _ok(argv, out=""):
        return subprocess.CompletedProcess(argv, 0, out, "")

    @staticmethod
    def _fail(argv, code=1):
        return subprocess.CompletedProcess(argv, code, "", "fake failure")

    def __call__(self, argv):
        self.calls.append(list(argv))
        if self.fail_code is not None:
            return self._fail(argv, self.fail_code)
        args = list(argv[1:])
        if args and args[0] == "--wait":
            args.pop(0)
            if args and args[0].isdigit():
                args.pop(0)
        _, table, op, *rest = args
        chains = self.tables.setdefault(table, {})
        if op == "-S":
            if not rest:
                return self._ok(argv, "".join(f"-N {name}\n" for name in chains))
            chain = rest[0]
            if chain not in chains:
                return self._fail(argv)
            lines = [f"-N {chain}"] + [f"-A {chain} {_render(s)}" for s in chains[chain]]
            return self._ok(argv, "\n".join(lines) + "\n")
        if op == "-N":
            if rest[0] in chains:
                return self._fail(argv)
            chains[rest[0]] = []
            return self._ok(argv)
        chain = rest[0]
        if chain not in chains:
            return self._fail(argv)
        rules = chains[chain]
        if op == "-X":
            del chains[chain]
        elif op == "-F":
            rules.clear()
        elif op == "-C":
            return self._ok(argv) if tuple(rest[1:]) in rules else self._fail(argv)
        elif op == "-A":
            rules.append(tuple(rest[1:]))
        elif op == "-I":
            rules.insert(int(rest[1]) - 1, tuple(rest[2:]))
        elif op == "-D":
            spec = tuple(rest[1:])
            if spec not in rules:
                return self._fail(argv)
            rules.remove(spec)
        return self._ok(argv)


@pytest.fixture
def fake():
    return FakeIptables()


@pytest.fixture
def ipt(fake):
    return IPTables(runner=fake)


RULE = ("-d", "192.0.2.1", "-j", "ACCEPT")


def test_append_exists_delete(ipt, fake):
    ipt.append("filter", "INPUT", *RULE)
    assert ipt.exists("filter", "INPUT", *RULE) is True
    ipt.delete("filter", "INPUT", *RULE)
    assert ipt.exists("filter", "INPUT", *RULE) is False
    assert fake.tables["filter"]["INPUT"] == []


def test_insert_unique_only_once(ipt, fake):
    ipt.insert_unique("filter", "INPUT", 1, *RULE)
    ipt.insert_unique("filter", "INPUT", 1, *RULE)
    assert fake.tables["filter"]["INPUT"] == [RULE]


def test_insert_position(ipt):
    ipt.append("filter", "INPUT", "-d", "192.0.2.1", "-j", "ACCEPT")
    ipt.insert("filter", "INPUT", 1, "-d", "192.0.2.1", "-j", "DROP")
    lines = ipt.list("filter", "INPUT")
    assert get_rule_specification(lines[1], "-j") == "DROP"
    assert get_rule_specification(lines[2], "-j") == "ACCEPT"


def test_delete_missing_raises(ipt):
    with pytest.raises(IPTablesError) as info:
        ipt.delete("filter", "INPUT", *RULE)
    assert info.value.returncode == 1


def test_delete_if_exists_missing_issues_no_delete(ipt, fake):
    ipt.delete_if_exists("filter", "INPUT", *RULE)
    assert not any("-D" in call for call in fake.calls)
    assert ipt.exists("filter", "INPUT", *RULE) is False


def test_delete_if_exists_present(ipt, fake):
    ipt.append("filter", "INPUT", *RULE)
    ipt.delete_if_exists("filter", "INPUT", *RULE)
    assert ipt.exists("filter", "INPUT", *RULE) is False
    assert fake.tables["filter"]["INPUT"] == []


def test_chain_lifecycle(ipt, fake):
    assert ipt.chain_exists("mangle", "TEST-CHAIN") is False
    ipt.new_chain("mangle", "TEST-CHAIN")
    ipt.append("mangle", "TEST-CHAIN", *RULE)
    assert ipt.chain_exists("mangle", "TEST-CHAIN") is True
    ipt.clear_and_delete_chain("mangle", "TEST-CHAIN")
    assert ipt.chain_exists("mangle", "TEST-CHAIN") is False
    assert "TEST-CHAIN" not in fake.tables["mangle"]


def test_clear_and_delete_missing_chain_is_noop(ipt, fake):
    ipt.clear_and_delete_chain("mangle", "ABSENT")
    assert not any("-X" in call for call in fake.calls)
    assert ipt.chain_exists("mangle", "ABSENT") is False


def test_new_chain_twice_raises(ipt):
    ipt.new_chain("mangle", "TWICE")
    with pytest.raises(IPTablesError):
        ipt.new_chain("mangle", "TWICE")


def test_exists_unexpected_status_raises():
    ipt = IPTables(runner=FakeIptables(fail_code=2))
    with pytest.raises(IPTablesError) as info:
        ipt.exists("filter", "INPUT", *RULE)
    assert info.value.returncode == 2


def test_ipv6_command_and_timeout(fake):
    ipt = IPTables(ipv6=True, nftables=True, timeout=5, runner=fake)
    ipt.append("filter", "INPUT", *RULE)
    assert ipt.command.startswith("ip6tables")
    assert fake.calls[0][:3] == [ipt.command, "--wait", "5"]


def test_rule_specification_round_trip_with_quoted_comment(ipt):
    comment = "default/web kube-vip load balancer IP"
    ipt.append("filter", "INPUT", "-d", "192.0.2.1", "-m", "comment", "--comment", comment)
    line = ipt.list("filter", "INPUT")[1]
    assert get_rule_specification(line, "--comment") == comment
    assert get_rule_specification(line, "-d") == "192.0.2.1"


def test_rule_specification_missing_flag():
    assert get_rule_specification("-A INPUT -j ACCEPT", "--dport") == ""