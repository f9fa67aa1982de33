"""Drive one audit run end to end.

Targeting runs first. Every applicable (policy, source) fetch is then submitted
to a bounded thread pool. The collector loop on the calling thread settles
finished fetches, expires fetches that have run longer than the per-adapter
timeout, and stops early when the run is cancelled. A policy is reconciled
only once every one of its fetches has settled; fetches that never produced a
record are passed to the reconciler as missing.

Worker threads cannot be interrupted. A timed-out or cancelled fetch keeps its
thread until the backend call returns, but its result is discarded. When every
worker of the pool is held that way, the fetches still queued behind them move
to a fresh pool so each of them still gets its own deadline.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from policyscope.adapters import ComplianceBackend, ComplianceSourceAdapter, build_adapters
from policyscope.catalog import PolicyCatalog
from policyscope.context import RunContext
from policyscope.diagnostics import Diagnostic, DiagnosticKind, Severity, emit
from policyscope.errors import (
    AdapterCancelled,
    AdapterFailure,
    AdapterTimeout,
    PipelineInconsistency,
)
from policyscope.models import ComplianceRecord, Policy, ReconciledVerdict, TargetingResult
from policyscope.reconcile import ComplianceReconciler
from policyscope.report import AuditReport, build
from policyscope.snapshot import Snapshot, SnapshotBackend
from policyscope.targeting import AssignmentFilterCatalog, GroupMembershipSet

_POLL_INTERVAL_S = 0.05

_GAP_KINDS = {
    AdapterTimeout: DiagnosticKind.ADAPTER_TIMEOUT,
    AdapterCancelled: DiagnosticKind.ADAPTER_CANCELLED,
}

_Key = tuple[str, str]
_Pending = dict[Future, tuple[Policy, ComplianceSourceAdapter]]
_OnRecord = Callable[[Policy, ComplianceRecord], None]
_OnGap = Callable[[Policy, AdapterFailure], None]


class AuditRunner:
    def __init__(
        self,
        context: RunContext,
        catalog: PolicyCatalog,
        memberships: GroupMembershipSet,
        filters: AssignmentFilterCatalog,
        adapters: Sequence[ComplianceSourceAdapter],
        reconciler: ComplianceReconciler | None = None,
    ) -> None:
        self.context = context
        self.catalog = catalog
        self.memberships = memberships
        self.filters = filters
        self.adapters = list(adapters)
        self.reconciler = reconciler or ComplianceReconciler(
            {adapter.source_id: adapter.priority for adapter in self.adapters}
        )
        self._started: dict[_Key, float] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_snapshot(
        cls,
        snapshot: Snapshot,
        context: RunContext,
        backend: ComplianceBackend | None = None,
    ) -> AuditRunner:
        if backend is None:
            backend = SnapshotBackend(snapshot, page_size=context.config.page_size)
        return cls(
            context,
            snapshot.policy_catalog(),
            snapshot.membership_set(),
            snapshot.filter_catalog(),
            build_adapters(context, backend),
        )

    def run(self) -> AuditReport:
        evaluated = self.catalog.evaluate_all(self.memberships, self.filters)
        diagnostics: list[Diagnostic] = list(self.catalog.warnings)
        for _, result in evaluated:
            diagnostics.extend(result.warnings)
        targeted = [(policy, result) for policy, result in evaluated if result.targeted]
        self.context.logger.info(
            "%d of %d policies target the device",
            len(targeted),
            len(evaluated),
            extra={"device_id": self.context.device_id},
        )

        records, missing, gaps = self._fetch_all(targeted)
        diagnostics.extend(gaps)

        verdicts: dict[str, ReconciledVerdict] = {}
        for policy, _ in targeted:
            verdict = self.reconciler.reconcile(
                policy.id, records.get(policy.id, []), missing.get(policy.id, ())
            )
            conflict = self.reconciler.conflict(verdict)
            if conflict is not None:
                diagnostics.append(conflict)
            verdicts[verdict.policy_id] = verdict

        return self._assemble(targeted, verdicts, diagnostics)

    def _assemble(
        self,
        targeted: Sequence[tuple[Policy, TargetingResult]],
        verdicts: dict[str, ReconciledVerdict],
        diagnostics: list[Diagnostic],
    ) -> AuditReport:
        report = build(
            targeted,
            verdicts,
            device_id=self.context.device_id,
            diagnostics=diagnostics,
            cancelled=self.context.cancelled,
        )
        if report.inconsistent_policies:
            raise PipelineInconsistency(report.inconsistent_policies, report)
        return report

    def _fetch_all(
        self, targeted: Sequence[tuple[Policy, TargetingResult]]
    ) -> tuple[dict[str, list[ComplianceRecord]], dict[str, set[str]], list[Diagnostic]]:
        records: dict[str, list[ComplianceRecord]] = {}
        missing: dict[str, set[str]] = {}
        gaps: list[Diagnostic] = []

        def record_gap(policy: Policy, exc: AdapterFailure) -> None:
            missing.setdefault(policy.id, set()).add(exc.source_id)
            kind = _GAP_KINDS.get(type(exc), DiagnosticKind.ADAPTER_FAILURE)
            diagnostic = Diagnostic(
                kind, Severity.WARNING, policy.id, str(exc), source_ids=(exc.source_id,)
            )
            emit(self.context.logger, diagnostic)
            gaps.append(diagnostic)

        def record(policy: Policy, item: ComplianceRecord) -> None:
            records.setdefault(policy.id, []).append(item)

        with self._lock:
            self._started = {}
        pools: list[ThreadPoolExecutor] = []

        def new_pool() -> ThreadPoolExecutor:
            pool = ThreadPoolExecutor(
                max_workers=self.context.config.max_workers,
                thread_name_prefix="policyscope-fetch",
            )
            pools.append(pool)
            return pool

        pending: _Pending = {}
        try:
            pool = new_pool()
            for policy, _ in targeted:
                for adapter in self.adapters:
                    if adapter.applies_to(policy):
                        future = pool.submit(self._fetch_one, adapter, policy)
                        pending[future] = (policy, adapter)
            self._collect(pending, set(pending), new_pool, record, record_gap)
        finally:
            for pool in pools:
                pool.shutdown(wait=False, cancel_futures=True)
        return records, missing, gaps

    def _fetch_one(self, adapter: ComplianceSourceAdapter, policy: Policy) -> ComplianceRecord:
        if self.context.cancelled:
            raise AdapterCancelled(
                adapter.source_id, policy.id, "run cancelled before the fetch started"
            )
        with self._lock:
            self._started[(policy.id, adapter.source_id)] = time.monotonic()
        return adapter.fetch(self.context.device_id, policy)

    def _collect(
        self,
        pending: _Pending,
        in_pool: set[Future],
        new_pool: Callable[[], ThreadPoolExecutor],
        record: _OnRecord,
        record_gap: _OnGap,
    ) -> None:
        """Settle every pending fetch.

        ``in_pool`` holds the futures submitted to the current pool. Timed-out
        fetches keep their worker, so once every worker of the current pool is
        held by one, the fetches still queued there are moved to a fresh pool.
        """
        timeout = self.context.config.adapter_timeout_s
        workers = self.context.config.max_workers
        held: set[Future] = set()
        while pending:
            if self.context.cancelled:
                for future, (policy, adapter) in pending.items():
                    if future.done():
                        self._settle(future, policy, adapter, record, record_gap)
                        continue
                    future.cancel()
                    record_gap(
                        policy,
                        AdapterCancelled(
                            adapter.source_id, policy.id, "run cancelled before the fetch finished"
                        ),
                    )
                pending.clear()
                return

            done, _ = wait(
                pending, timeout=min(_POLL_INTERVAL_S, timeout), return_when=FIRST_COMPLETED
            )
            for future in done:
                policy, adapter = pending.pop(future)
                self._settle(future, policy, adapter, record, record_gap)

            now = time.monotonic()
            with self._lock:
                started = dict(self._started)
            for future, (policy, adapter) in list(pending.items()):
                began = started.get((policy.id, adapter.source_id))
                if began is None or now - began < timeout or future.done():
                    continue
                del pending[future]
                future.cancel()
                if future in in_pool:
                    held.add(future)
                record_gap(
                    policy,
                    AdapterTimeout(adapter.source_id, policy.id, f"no answer within {timeout:g}s"),
                )

            held = {future for future in held if not future.done()}
            if len(held) < workers:
                continue
            queued = [future for future in pending if future in in_pool and future.cancel()]
            if not queued:
                continue
            self.context.logger.warning(
                "all %d fetch workers are held by timed-out fetches; moving %d queued "
                "fetch(es) to a new pool",
                workers,
                len(queued),
                extra={"device_id": self.context.device_id},
            )
            pool = new_pool()
            in_pool = set()
            held = set()
            for future in queued:
                policy, adapter = pending.pop(future)
                moved = pool.submit(self._fetch_one, adapter, policy)
                pending[moved] = (policy, adapter)
                in_pool.add(moved)

    def _settle(
        self,
        future: Future[ComplianceRecord],
        policy: Policy,
        adapter: ComplianceSourceAdapter,
        record: _OnRecord,
        record_gap: _OnGap,
    ) -> None:
        try:
            item = future.result()
        except AdapterFailure as exc:
            record_gap(policy, exc)
            return
        except Exception as exc:
            self.context.logger.exception(
                "%s raised while fetching %s",
                adapter.source_id,
                policy.id,
                extra={"policy_id": policy.id, "source_ids": [adapter.source_id]},
            )
            record_gap(policy, AdapterFailure(adapter.source_id, policy.id, repr(exc)))
            return
        record(policy, item)


def run_audit(
    snapshot: Snapshot,
    context: RunContext,
    backend: ComplianceBackend | None = None,
) -> AuditReport:
    return AuditRunner.from_snapshot(snapshot, context, backend).run()
