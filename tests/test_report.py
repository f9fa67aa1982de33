import csv
import json
from io import StringIO

from policyscope.diagnostics import DiagnosticKind, Severity
from policyscope.models import (
    ComplianceState,
    Confidence,
    Policy,
    PolicyKind,
    ReconciledVerdict,
    TargetingResult,
)
from policyscope.report import (
    INCONSISTENT,
    build,
    render_csv,
    render_json,
    render_table,
    render_targeting_json,
)

POLICY = Policy(id="p1", display_name="BitLocker Required")
OTHER = Policy(id="p2", display_name="=HYPERLINK(\"x\")", kind=PolicyKind.APP)
TARGETING = TargetingResult(policy_id="p1", status="Finance", matched_groups=("Finance",))
OTHER_TARGETING = TargetingResult(policy_id="p2", status="All Devices")

VERDICT = ReconciledVerdict(
    policy_id="p1",
    state=ComplianceState.NON_COMPLIANT,
    confidence=Confidence.LOW,
    agreeing_sources=("device-status",),
    disagreeing_sources=(("display-name", ComplianceState.COMPLIANT),),
    missing_sources=("report",),
)


def test_build_keeps_policy_without_verdict() -> None:
    report = build(
        [(POLICY, TARGETING), (OTHER, OTHER_TARGETING)], {"p1": VERDICT}, device_id="dev-1"
    )

    assert [entry.policy.id for entry in report.entries] == ["p1", "p2"]
    assert report.inconsistent_policies == ["p2"]
    assert report.incomplete_policies == ["p1", "p2"]
    assert report.entry("p2").state_label == INCONSISTENT
    (diagnostic,) = report.diagnostics
    assert diagnostic.kind is DiagnosticKind.PIPELINE_INCONSISTENCY
    assert diagnostic.severity is Severity.ERROR
    assert diagnostic.policy_id == "p2"


def test_render_table_shows_disagreement_and_gaps() -> None:
    report = build([(POLICY, TARGETING)], {"p1": VERDICT}, device_id="dev-1")
    text = render_table(report)

    assert "Policy audit for dev-1" in text
    assert "BitLocker Required" in text
    assert "nonCompliant" in text
    assert "disagree: display-name=compliant" in text
    assert "missing: report" in text


def test_render_table_marks_cancelled_runs() -> None:
    report = build([(POLICY, TARGETING)], {"p1": VERDICT}, device_id="dev-1", cancelled=True)

    assert "(cancelled, partial)" in render_table(report)


def test_render_json() -> None:
    report = build([(POLICY, TARGETING)], {"p1": VERDICT}, device_id="dev-1")
    payload = json.loads(render_json(report))

    assert payload["device_id"] == "dev-1"
    assert payload["cancelled"] is False
    assert payload["incomplete_policies"] == ["p1"]
    entry = payload["entries"][0]
    assert entry["status"] == "nonCompliant"
    assert entry["targeting"]["matched_groups"] == ["Finance"]
    assert entry["verdict"]["confidence"] == "low"
    assert entry["verdict"]["disagreeing_sources"] == [
        {"source_id": "display-name", "state": "compliant"}
    ]
    assert entry["verdict"]["missing_sources"] == ["report"]


def test_render_csv_guards_formula_cells() -> None:
    report = build([(POLICY, TARGETING), (OTHER, OTHER_TARGETING)], {"p1": VERDICT})
    rows = list(csv.reader(StringIO(render_csv(report))))

    assert rows[0] == [
        "policy_id",
        "policy_name",
        "kind",
        "targeting",
        "state",
        "confidence",
        "notes",
    ]
    assert rows[1][4] == "nonCompliant"
    assert rows[2][1] == "'=HYPERLINK(\"x\")"
    assert rows[2][4] == INCONSISTENT
    assert rows[2][6] == "no verdict"


def test_render_targeting_json_includes_warnings(snapshot) -> None:
    pairs = snapshot.policy_catalog().evaluate_all(
        snapshot.membership_set(), snapshot.filter_catalog()
    )
    payload = {item["policy_id"]: item for item in json.loads(render_targeting_json(pairs))}

    assert payload["cp-password"]["status"] == "Excluded"
    assert payload["cp-password"]["matched_groups"] == ["Finance", "Excluded: Pilot Ring"]
    assert payload["cfg-wifi"]["applied_filter"]["displayName"] == "Windows 11"
    assert payload["cfg-wifi"]["applied_filter_mode"] == "include"
    assert payload["cp-legacy"]["status"] == "Not Targeted"
    assert len(payload["cp-legacy"]["warnings"]) == 1
