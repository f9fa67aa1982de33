"""Fold the records of every compliance source into one verdict per policy.

Rules:

* ``NOT_FOUND`` records do not vote.
* If every voting source agrees, that state wins. Two or more agreeing sources
  give ``HIGH`` confidence, a single source gives ``MEDIUM``.
* If sources disagree, the highest-priority sources decide and confidence is
  ``LOW``. Among equally trusted sources the fail-safe order applies
  (non-compliant, error, conflict, unknown, not applicable, compliant) so a
  possible problem is surfaced rather than hidden.
* With no voting source at all the verdict is ``UNKNOWN`` / ``LOW``.

Sources that never answered (timeout, failure, cancellation) are listed as
missing. They are never counted as agreement.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence

from policyscope.diagnostics import Diagnostic, DiagnosticKind, Severity, emit
from policyscope.models import (
    FAIL_SAFE_RANK,
    ComplianceRecord,
    ComplianceState,
    Confidence,
    ReconciledVerdict,
    SourcePriority,
)

logger = logging.getLogger(__name__)


class ComplianceReconciler:
    def __init__(self, priorities: Mapping[str, SourcePriority]) -> None:
        self._priorities = dict(priorities)

    def priority(self, source_id: str) -> SourcePriority:
        return self._priorities.get(source_id, SourcePriority.LOW)

    def reconcile(
        self,
        policy_id: str,
        records: Sequence[ComplianceRecord],
        missing: Iterable[str] = (),
    ) -> ReconciledVerdict:
        missing_sources = tuple(sorted(set(missing)))
        voting = {r.source_id: r for r in records if r.state.determinate}
        not_found = tuple(
            sorted({r.source_id for r in records if not r.state.determinate} - set(voting))
        )

        if not voting:
            return ReconciledVerdict(
                policy_id=policy_id,
                state=ComplianceState.UNKNOWN,
                confidence=Confidence.LOW,
                missing_sources=missing_sources,
                not_found_sources=not_found,
            )

        states = {record.state for record in voting.values()}
        if len(states) == 1:
            (state,) = states
            return ReconciledVerdict(
                policy_id=policy_id,
                state=state,
                confidence=Confidence.HIGH if len(voting) >= 2 else Confidence.MEDIUM,
                agreeing_sources=tuple(sorted(voting)),
                missing_sources=missing_sources,
                not_found_sources=not_found,
            )

        top = max(self.priority(source_id) for source_id in voting)
        contenders = {r.state for sid, r in voting.items() if self.priority(sid) == top}
        winner = max(contenders, key=FAIL_SAFE_RANK.__getitem__)

        verdict = ReconciledVerdict(
            policy_id=policy_id,
            state=winner,
            confidence=Confidence.LOW,
            agreeing_sources=tuple(sorted(sid for sid, r in voting.items() if r.state is winner)),
            disagreeing_sources=tuple(
                sorted((sid, r.state) for sid, r in voting.items() if r.state is not winner)
            ),
            missing_sources=missing_sources,
            not_found_sources=not_found,
        )
        diagnostic = self.conflict(verdict)
        if diagnostic is not None:
            emit(logger, diagnostic)
        return verdict

    def conflict(self, verdict: ReconciledVerdict) -> Diagnostic | None:
        """The reconciliation-conflict diagnostic for ``verdict``, if sources disagreed."""
        if not verdict.disagreeing_sources:
            return None
        top = max(self.priority(source_id) for source_id in verdict.agreeing_sources)
        leaders = [sid for sid in verdict.agreeing_sources if self.priority(sid) == top]
        losers = ", ".join(f"{sid}={state.value}" for sid, state in verdict.disagreeing_sources)
        sources = set(verdict.agreeing_sources) | {sid for sid, _ in verdict.disagreeing_sources}
        return Diagnostic(
            DiagnosticKind.RECONCILIATION_CONFLICT,
            Severity.WARNING,
            verdict.policy_id,
            f"sources disagree; kept {verdict.state.value} from "
            f"{', '.join(leaders)} ({top.name.lower()} priority) over {losers}",
            source_ids=tuple(sorted(sources)),
        )
