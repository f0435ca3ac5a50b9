#
# Copyright contributors to the sqlserver-agent project
#
from sqlserver_agent.aggregator import merge_details
from sqlserver_agent.models import Detail


def _fields(prefix, n):
    return [{"id": f"{prefix}{i}"} for i in range(n)]


def test_merge_same_name_concatenates_in_order():
    existing = [Detail(name="X", fields=_fields("a", 3))]
    incoming = [Detail(name="X", fields=_fields("b", 2))]

    merged = merge_details(existing, incoming)

    assert len(merged) == 1
    assert merged[0].name == "X"
    assert [f["id"] for f in merged[0].fields] == ["a0", "a1", "a2", "b0", "b1"]


def test_merge_appends_unmatched_details():
    existing = [Detail(name="X", fields=_fields("a", 1))]
    incoming = [Detail(name="Y", fields=_fields("b", 1)), Detail(name="X", fields=_fields("c", 1))]

    merged = merge_details(existing, incoming)

    assert [d.name for d in merged] == ["X", "Y"]
    assert [f["id"] for f in merged[0].fields] == ["a0", "c0"]


def test_merge_does_not_modify_inputs():
    existing = [Detail(name="X", fields=_fields("a", 1))]
    incoming = [Detail(name="X", fields=_fields("b", 1))]

    merge_details(existing, incoming)

    assert len(existing[0].fields) == 1
    assert len(incoming[0].fields) == 1


def test_three_contributors_fold_in_contribution_order():
    report = []
    for prefix in ("a", "b", "c"):
        report = merge_details(report, [Detail(name="disk_info", fields=_fields(prefix, 1))])

    assert len(report) == 1
    assert [f["id"] for f in report[0].fields] == ["a0", "b0", "c0"]


def test_merge_into_empty_report():
    merged = merge_details([], [Detail(name="OS", fields=[{"k": "v"}])])

    assert merged == [Detail(name="OS", fields=[{"k": "v"}])]
