#
# Copyright contributors to the sqlserver-agent project
#
import json
import threading
import time

import pytest

from sqlserver_agent.agentstatus import StatusCode
from sqlserver_agent.collectors import guest_rules
from sqlserver_agent.collectors.guest_collector import (
    OS_DETAIL_NAME, GuestCollector, ShellRunner, WMIRunner, new_guest_collector,
)
from sqlserver_agent.collectors.guest_rules import (
    LINUX_RULES, LOCAL_SSD, WINDOWS_RULES, DiskType, GuestRule, RuleKind,
    friendly_name_to_disk_type, logical_disk_media_type,
)
from sqlserver_agent.exceptions import QueryExecutionError


class ScriptedRunner:
    """Answers each rule from a ``{rule name: output or exception}`` table."""

    def __init__(self, outputs, block=None):
        self.outputs = outputs
        self.block = block or {}
        self.calls = []

    def __call__(self, rule, timeout):
        self.calls.append(rule.name)
        if rule.name in self.block:
            self.block[rule.name].wait(10)
        result = self.outputs[rule.name]
        if isinstance(result, Exception):
            raise result
        return result


def _fact(name, parse=str.strip):
    return GuestRule(name=name, kind=RuleKind.FACT, query=name, parse=parse)


def _lookup(name, parse=json.loads):
    return GuestRule(name=name, kind=RuleKind.LOOKUP, query=name, parse=parse)


@pytest.fixture
def released():
    event = threading.Event()
    yield event
    event.set()


def test_collects_facts_into_single_os_detail(status):
    rules = [_fact("a"), _fact("b")]
    runner = ScriptedRunner({"a": "1\n", "b": "two"})

    detail = GuestCollector(rules, runner, status=status, derived_rules=[]).collect_guest_rules(5)

    assert detail.name == OS_DETAIL_NAME
    assert detail.fields == [{"a": "1", "b": "two"}]
    assert sorted(runner.calls) == ["a", "b"]


def test_lookup_tables_are_not_reported(status):
    rules = [_fact("a"), _lookup(guest_rules.LOGICAL_DISK_TO_PARTITION),
             _lookup(guest_rules.PHYSICAL_DISK_TO_TYPE)]
    runner = ScriptedRunner({
        "a": "x",
        guest_rules.LOGICAL_DISK_TO_PARTITION: '{"C:": "0", "D:": "1"}',
        guest_rules.PHYSICAL_DISK_TO_TYPE: '{"0": "PERSISTENT-SSD", "1": "LOCAL-SSD"}',
    })

    detail = GuestCollector(rules, runner, status=status).collect_guest_rules(5)

    fields = detail.fields[0]
    assert set(fields) == {"a", LOCAL_SSD}
    assert json.loads(fields[LOCAL_SSD]) == {"C:": "PERSISTENT-SSD", "D:": "LOCAL-SSD"}


def test_failed_lookup_makes_derived_rule_unknown(status):
    rules = [_lookup(guest_rules.LOGICAL_DISK_TO_PARTITION), _lookup(guest_rules.PHYSICAL_DISK_TO_TYPE)]
    runner = ScriptedRunner({
        guest_rules.LOGICAL_DISK_TO_PARTITION: QueryExecutionError("access denied"),
        guest_rules.PHYSICAL_DISK_TO_TYPE: "{}",
    })

    detail = GuestCollector(rules, runner, status=status).collect_guest_rules(5)

    assert detail.fields == [{LOCAL_SSD: "unknown"}]
    assert status.errors[StatusCode.GUEST_QUERY_EXECUTION] == 1


def test_unparsable_output_is_unknown_and_counted(status):
    rules = [_fact("a", parse=json.loads), _fact("b")]
    runner = ScriptedRunner({"a": "{not json", "b": "ok"})

    detail = GuestCollector(rules, runner, status=status, derived_rules=[]).collect_guest_rules(5)

    assert detail.fields == [{"a": "unknown", "b": "ok"}]
    assert status.errors[StatusCode.INVALID_JSON_FORMAT] == 1


def test_slow_rule_times_out_without_blocking_others(status, released):
    rules = [_fact("slow"), _fact("fast"), _fact("slow_too")]
    runner = ScriptedRunner({"slow": "late", "fast": "quick", "slow_too": "late"},
                            block={"slow": released, "slow_too": released})

    start = time.monotonic()
    detail = GuestCollector(rules, runner, status=status, derived_rules=[]).collect_guest_rules(0.3)
    elapsed = time.monotonic() - start

    assert detail.fields == [{"slow": "unknown", "fast": "quick", "slow_too": "unknown"}]
    assert status.errors[StatusCode.GUEST_COLLECTION_TIMEOUT] == 2
    # one shared deadline for the pass, not one per rule
    assert elapsed < 2.0


def test_timed_out_lookup_is_absent(status, released):
    rules = [_fact("a"), _lookup("table")]
    runner = ScriptedRunner({"a": "x", "table": "{}"}, block={"table": released})

    detail = GuestCollector(rules, runner, status=status, derived_rules=[]).collect_guest_rules(0.2)

    assert detail.fields == [{"a": "x"}]


def test_rules_run_concurrently(status):
    barrier = threading.Barrier(3, timeout=5)

    def parse(out):
        barrier.wait()
        return out

    rules = [_fact(name, parse=parse) for name in ("a", "b", "c")]
    runner = ScriptedRunner({"a": "1", "b": "2", "c": "3"})

    detail = GuestCollector(rules, runner, status=status, derived_rules=[]).collect_guest_rules(5)

    assert detail.fields == [{"a": "1", "b": "2", "c": "3"}]


def test_friendly_name_to_disk_type():
    assert friendly_name_to_disk_type("nvme_card", 402653184000, 0) == DiskType.LOCAL_SSD.value
    assert friendly_name_to_disk_type("Google EphemeralDisk", 2 * 402653184000, 4) == "LOCAL-SSD"
    assert friendly_name_to_disk_type("Google EphemeralDisk", 1000, 4) == "OTHER"
    assert friendly_name_to_disk_type("Google PersistentDisk", 1000, 4) == "PERSISTENT-SSD"
    assert friendly_name_to_disk_type("Google PersistentDisk", 1000, 3) == "OTHER"
    assert friendly_name_to_disk_type("Msft Virtual Disk", 402653184000, 4) == "OTHER"


def test_logical_disk_media_type_skips_unknown_disks():
    assert logical_disk_media_type({"C:": "0", "E:": "9"}, {"0": "OTHER"}) == '{"C:": "OTHER"}'
    assert logical_disk_media_type({}, {"0": "OTHER"}) is None


def _windows_rule(name):
    return next(r for r in WINDOWS_RULES if r.name == name)


def _linux_rule(name):
    return next(r for r in LINUX_RULES if r.name == name)


def test_windows_parsers():
    power = _windows_rule(guest_rules.POWER_PROFILE_SETTING)
    assert power.parse('{"ElementName": "High performance"}') == "High performance"

    l2p = _windows_rule(guest_rules.LOGICAL_DISK_TO_PARTITION)
    out = json.dumps([{
        "Antecedent": r'\\HOST\root\cimv2:Win32_DiskPartition.DeviceID="Disk #1, Partition #0"',
        "Dependent": r'\\HOST\root\cimv2:Win32_LogicalDisk.DeviceID="D:"',
    }])
    assert l2p.parse(out) == {"D:": "1"}

    p2t = _windows_rule(guest_rules.PHYSICAL_DISK_TO_TYPE)
    out = json.dumps([{"DeviceId": "1", "FriendlyName": "nvme_card", "Size": 402653184000, "MediaType": 4}])
    assert p2t.parse(out) == {"1": "LOCAL-SSD"}

    units = _windows_rule(guest_rules.DATA_DISK_ALLOCATION_UNITS)
    out = json.dumps([
        {"BlockSize": 4096, "Caption": "C:\\"},
        {"BlockSize": 4096, "Caption": "\\\\?\\Volume{1234-abcd}\\"},
    ])
    assert json.loads(units.parse(out)) == [{"BlockSize": 4096, "Caption": "C:\\"}]

    agent = _windows_rule(guest_rules.GCBDR_AGENT_RUNNING)
    assert agent.parse("") == "false"
    assert agent.parse('{"Caption": "udsagent.exe"}') == "true"


def test_windows_power_plan_without_rows_fails():
    with pytest.raises(QueryExecutionError):
        _windows_rule(guest_rules.POWER_PROFILE_SETTING).parse("")


def test_linux_parsers():
    power = _linux_rule(guest_rules.POWER_PROFILE_SETTING)
    assert power.parse("Current active profile: throughput-performance\n") == "throughput-performance"

    mounts = _linux_rule(guest_rules.LOGICAL_DISK_TO_PARTITION)
    out = json.dumps({"blockdevices": [
        {"name": "sda", "pkname": None, "mountpoint": None, "type": "disk"},
        {"name": "sda1", "pkname": "sda", "mountpoint": "/", "type": "part"},
        {"name": "nvme0n1", "pkname": None, "mountpoint": "/mnt/disks/ssd", "type": "disk"},
    ]})
    assert mounts.parse(out) == {"/": "sda", "/mnt/disks/ssd": "nvme0n1"}

    disks = _linux_rule(guest_rules.PHYSICAL_DISK_TO_TYPE)
    out = json.dumps({"blockdevices": [
        {"name": "sda", "size": 10737418240, "rota": False, "model": "PersistentDisk  "},
        {"name": "nvme0n1", "size": 402653184000, "rota": "0", "model": "nvme_card"},
        {"name": "sdb", "size": 10737418240, "rota": True, "model": "PersistentDisk"},
    ]})
    assert disks.parse(out) == {"sda": "PERSISTENT-SSD", "nvme0n1": "LOCAL-SSD", "sdb": "OTHER"}

    units = _linux_rule(guest_rules.DATA_DISK_ALLOCATION_UNITS)
    assert json.loads(units.parse("4096 /\n4096 /var/opt/mssql\n")) == [
        {"BlockSize": 4096, "Caption": "/"},
        {"BlockSize": 4096, "Caption": "/var/opt/mssql"},
    ]

    agent = _linux_rule(guest_rules.GCBDR_AGENT_RUNNING)
    assert agent.parse("true\n") == "true"
    assert agent.parse("false\n") == "false"


def test_rule_sets_share_names_across_platforms():
    assert [r.name for r in WINDOWS_RULES] == [r.name for r in LINUX_RULES]


def test_new_guest_collector_picks_platform_rules():
    windows = new_guest_collector(system="Windows")
    linux = new_guest_collector(system="Linux")

    assert windows.rules is WINDOWS_RULES
    assert isinstance(windows.runner, WMIRunner)
    assert linux.rules is LINUX_RULES
    assert isinstance(linux.runner, ShellRunner)


def test_shell_runner_reports_nonzero_exit(monkeypatch):
    monkeypatch.setattr("sqlserver_agent.collectors.guest_collector.run_command",
                        lambda args, timeout: (1, "", "not found"))
    with pytest.raises(QueryExecutionError):
        ShellRunner()(_linux_rule(guest_rules.POWER_PROFILE_SETTING), 1.0)


def test_wmi_runner_builds_powershell_query(monkeypatch):
    captured = {}

    def fake_run(args, timeout):
        captured["args"] = args
        captured["timeout"] = timeout
        return 0, '{"ElementName": "Balanced"}', ""

    monkeypatch.setattr("sqlserver_agent.collectors.guest_collector.run_command", fake_run)
    rule = _windows_rule(guest_rules.POWER_PROFILE_SETTING)

    out = WMIRunner()(rule, 3.0)

    assert rule.parse(out) == "Balanced"
    assert captured["args"][0] == "powershell.exe"
    assert r"-Namespace 'root\cimv2\power'" in captured["args"][-1]
    assert "Select-Object ElementName" in captured["args"][-1]
    assert captured["timeout"] == 3.0
