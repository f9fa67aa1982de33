from __future__ import annotations

import csv
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from io import StringIO
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from policyscope.diagnostics import Diagnostic, DiagnosticKind, Severity, emit
from policyscope.models import Confidence, Policy, ReconciledVerdict, TargetingResult

logger = logging.getLogger(__name__)

INCONSISTENT = "Inconsistent"

_CATEGORY_STYLES = {"error": "red", "warning": "yellow", "success": "green", "neutral": "dim"}

# Cells opening with one of these are treated as formulas by spreadsheet apps.
_FORMULA_PREFIXES = ("=", "+", "-", "@")


@dataclass(frozen=True)
class AuditEntry:
    policy: Policy
    targeting: TargetingResult
    verdict: ReconciledVerdict | None

    @property
    def inconsistent(self) -> bool:
        return self.verdict is None

    @property
    def complete(self) -> bool:
        return self.verdict is not None and self.verdict.complete

    @property
    def state_label(self) -> str:
        return INCONSISTENT if self.verdict is None else self.verdict.state.value

    @property
    def category(self) -> str:
        return "error" if self.verdict is None else self.verdict.state.category


@dataclass(frozen=True)
class AuditReport:
    device_id: str
    entries: tuple[AuditEntry, ...]
    diagnostics: tuple[Diagnostic, ...] = ()
    cancelled: bool = False
    generated_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def inconsistent_policies(self) -> list[str]:
        return [entry.policy.id for entry in self.entries if entry.inconsistent]

    @property
    def incomplete_policies(self) -> list[str]:
        return [entry.policy.id for entry in self.entries if not entry.complete]

    def entry(self, policy_id: str) -> AuditEntry | None:
        for item in self.entries:
            if item.policy.id == policy_id:
                return item
        return None


def build(
    targeted: Sequence[tuple[Policy, TargetingResult]],
    verdicts_by_policy: Mapping[str, ReconciledVerdict],
    device_id: str = "",
    diagnostics: Iterable[Diagnostic] = (),
    cancelled: bool = False,
) -> AuditReport:
    """Pair each targeted policy with its verdict.

    A targeted policy without a verdict is kept as an ``Inconsistent`` entry
    and reported as a pipeline inconsistency rather than dropped.
    """
    entries: list[AuditEntry] = []
    collected = list(diagnostics)
    for policy, targeting in targeted:
        verdict = verdicts_by_policy.get(policy.id)
        if verdict is None:
            diagnostic = Diagnostic(
                DiagnosticKind.PIPELINE_INCONSISTENCY,
                Severity.ERROR,
                policy.id,
                f"targeted policy {policy.display_name} reached the report without a verdict",
            )
            emit(logger, diagnostic)
            collected.append(diagnostic)
        entries.append(AuditEntry(policy, targeting, verdict))
    return AuditReport(
        device_id=device_id,
        entries=tuple(entries),
        diagnostics=tuple(collected),
        cancelled=cancelled,
    )


def _export(table: Table) -> str:
    console = Console(record=True, width=160, file=StringIO())
    console.print(table)
    return console.export_text()


def _notes(entry: AuditEntry) -> str:
    verdict = entry.verdict
    if verdict is None:
        return "no verdict"
    notes: list[str] = []
    if verdict.confidence is Confidence.LOW and verdict.disagreeing_sources:
        notes.append(
            "disagree: "
            + ", ".join(f"{sid}={state.value}" for sid, state in verdict.disagreeing_sources)
        )
    if verdict.missing_sources:
        notes.append("missing: " + ", ".join(verdict.missing_sources))
    return "; ".join(notes)


def render_table(report: AuditReport) -> str:
    title = f"Policy audit for {report.device_id}" if report.device_id else "Policy audit"
    if report.cancelled:
        title += " (cancelled, partial)"
    table = Table(title=title)
    table.add_column("Policy")
    table.add_column("Kind")
    table.add_column("Assigned Via")
    table.add_column("State")
    table.add_column("Confidence")
    table.add_column("Notes")

    for entry in report.entries:
        style = _CATEGORY_STYLES[entry.category]
        confidence = entry.verdict.confidence.value if entry.verdict else ""
        table.add_row(
            escape(entry.policy.display_name),
            entry.policy.kind.value,
            escape(entry.targeting.assigned_via),
            f"[{style}]{entry.state_label}[/{style}]",
            confidence,
            escape(_notes(entry)),
        )

    return _export(table)


def _verdict_payload(verdict: ReconciledVerdict | None) -> dict[str, Any] | None:
    if verdict is None:
        return None
    return {
        "state": verdict.state.value,
        "confidence": verdict.confidence.value,
        "agreeing_sources": list(verdict.agreeing_sources),
        "disagreeing_sources": [
            {"source_id": sid, "state": state.value} for sid, state in verdict.disagreeing_sources
        ],
        "missing_sources": list(verdict.missing_sources),
        "not_found_sources": list(verdict.not_found_sources),
    }


def targeting_payload(targeting: TargetingResult) -> dict[str, Any]:
    return {
        "status": targeting.status,
        "matched_groups": list(targeting.matched_groups),
        "excluded": targeting.excluded,
        "applied_filter": (
            targeting.applied_filter.model_dump(by_alias=True)
            if targeting.applied_filter
            else None
        ),
        "applied_filter_mode": (
            targeting.applied_filter_mode.value if targeting.applied_filter_mode else None
        ),
    }


def render_json(report: AuditReport) -> str:
    payload = {
        "device_id": report.device_id,
        "generated_at": report.generated_at,
        "cancelled": report.cancelled,
        "incomplete_policies": report.incomplete_policies,
        "entries": [
            {
                "policy_id": entry.policy.id,
                "policy_name": entry.policy.display_name,
                "kind": entry.policy.kind.value,
                "platform": entry.policy.platform,
                "status": entry.state_label,
                "targeting": targeting_payload(entry.targeting),
                "verdict": _verdict_payload(entry.verdict),
            }
            for entry in report.entries
        ],
        "diagnostics": [diagnostic.as_dict() for diagnostic in report.diagnostics],
    }
    return json.dumps(payload, indent=2)


def _csv_cell(value: Any) -> str:
    text = "" if value is None else str(value)
    stripped = text.lstrip()
    if stripped and stripped[0] in _FORMULA_PREFIXES:
        return "'" + text
    return text


def render_csv(report: AuditReport) -> str:
    buffer = StringIO()
    writer = csv.writer(buffer)
    writer.writerow(
        ["policy_id", "policy_name", "kind", "targeting", "state", "confidence", "notes"]
    )
    for entry in report.entries:
        writer.writerow(
            [
                _csv_cell(entry.policy.id),
                _csv_cell(entry.policy.display_name),
                entry.policy.kind.value,
                _csv_cell(entry.targeting.status),
                entry.state_label,
                entry.verdict.confidence.value if entry.verdict else "",
                _csv_cell(_notes(entry)),
            ]
        )
    return buffer.getvalue()


def render_targeting_table(pairs: Iterable[tuple[Policy, TargetingResult]]) -> str:
    table = Table(title="Policy targeting")
    table.add_column("Policy")
    table.add_column("Kind")
    table.add_column("Status")
    table.add_column("Filter")
    for policy, result in pairs:
        applied = result.applied_filter.display_name if result.applied_filter else ""
        if applied and result.applied_filter_mode:
            applied = f"{applied} ({result.applied_filter_mode.value})"
        style = "green" if result.targeted else ("yellow" if result.excluded else "dim")
        table.add_row(
            escape(policy.display_name),
            policy.kind.value,
            f"[{style}]{escape(result.status)}[/{style}]",
            escape(applied),
        )
    return _export(table)


def render_targeting_json(pairs: Iterable[tuple[Policy, TargetingResult]]) -> str:
    payload = [
        {
            "policy_id": policy.id,
            "policy_name": policy.display_name,
            "kind": policy.kind.value,
            **targeting_payload(result),
            "warnings": [warning.as_dict() for warning in result.warnings],
        }
        for policy, result in pairs
    ]
    return json.dumps(payload, indent=2)
