"""Compliance sources: one adapter per backend query strategy.

Each adapter asks the backend the same question (what is this device's state
for this policy?) a different way and normalizes the answer into a
:class:`ComplianceRecord`. Raw state text is mapped onto
:class:`ComplianceState` here and nowhere else. Adapters declare a trust
priority that the reconciler uses when their answers disagree.

An adapter either returns a record (``NOT_FOUND`` when the backend has nothing
for the device) or raises :class:`AdapterFailure`.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar, Protocol

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic.alias_generators import to_camel, to_pascal

from policyscope.context import RunContext
from policyscope.errors import AdapterCancelled, AdapterFailure, BackendError
from policyscope.models import (
    FAIL_SAFE_RANK,
    ComplianceRecord,
    ComplianceState,
    Policy,
    PolicyKind,
    SourcePriority,
)

logger = logging.getLogger(__name__)

_STATE_WORDS = {
    "compliant": ComplianceState.COMPLIANT,
    "success": ComplianceState.COMPLIANT,
    "succeeded": ComplianceState.COMPLIANT,
    "applied": ComplianceState.COMPLIANT,
    "installed": ComplianceState.COMPLIANT,
    "remediated": ComplianceState.COMPLIANT,
    "withoutissues": ComplianceState.COMPLIANT,
    "noncompliant": ComplianceState.NON_COMPLIANT,
    "notcompliant": ComplianceState.NON_COMPLIANT,
    "ingraceperiod": ComplianceState.NON_COMPLIANT,
    "notinstalled": ComplianceState.NON_COMPLIANT,
    "recurred": ComplianceState.NON_COMPLIANT,
    "withissues": ComplianceState.NON_COMPLIANT,
    "error": ComplianceState.ERROR,
    "failed": ComplianceState.ERROR,
    "installfailed": ComplianceState.ERROR,
    "uninstallfailed": ComplianceState.ERROR,
    "scripterror": ComplianceState.ERROR,
    "remediationfailed": ComplianceState.ERROR,
    "conflict": ComplianceState.CONFLICT,
    "unknown": ComplianceState.UNKNOWN,
    "pending": ComplianceState.UNKNOWN,
    "installpending": ComplianceState.UNKNOWN,
    "notevaluated": ComplianceState.UNKNOWN,
    "notapplicable": ComplianceState.NOT_APPLICABLE,
    "na": ComplianceState.NOT_APPLICABLE,
    "excluded": ComplianceState.NOT_APPLICABLE,
    "notfound": ComplianceState.NOT_FOUND,
}


def normalize_state(value: Any) -> ComplianceState:
    """Map backend state text onto the closed state enumeration.

    Unrecognized text is ``UNKNOWN``; it never silently becomes compliant.
    """
    if isinstance(value, ComplianceState):
        return value
    key = re.sub(r"[^a-z]", "", str(value or "").lower())
    state = _STATE_WORDS.get(key)
    if state is None:
        if key:
            logger.debug("unrecognized compliance state %r", value)
        return ComplianceState.UNKNOWN
    return state


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _latest_key(row: Any) -> float:
    observed = _as_utc(row.last_reported_date_time)
    return observed.timestamp() if observed is not None else float("-inf")


@dataclass(frozen=True)
class Page:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_page_token: str | None = None


class ComplianceBackend(Protocol):
    """Transport-side queries the adapters are built on.

    Implementations raise :class:`BackendError` for transport problems and own
    any retry policy.
    """

    def policy_states(self, device_id: str, kind: PolicyKind) -> list[dict[str, Any]]: ...

    def device_statuses(
        self,
        policy_id: str,
        kind: PolicyKind,
        device_id: str | None = None,
        page_token: str | None = None,
    ) -> Page: ...

    def setting_states(
        self, device_id: str, policy_id: str, kind: PolicyKind
    ) -> list[dict[str, Any]]: ...

    def report_rows(self, device_id: str, kind: PolicyKind) -> list[dict[str, Any]]: ...


class _Row(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_camel)


class PolicyStateRow(_Row):
    id: str
    display_name: str = ""
    state: str = "unknown"
    last_reported_date_time: datetime | None = None


class DeviceStatusRow(_Row):
    device_id: str
    status: str = "unknown"
    last_reported_date_time: datetime | None = None


class SettingStateRow(_Row):
    setting: str = ""
    setting_name: str | None = None
    state: str = "unknown"


class ReportRow(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, alias_generator=to_pascal)

    policy_id: str
    policy_status: str = "unknown"
    device_id: str | None = None
    last_reported_date_time: datetime | None = None


_POLICY_STATE_ROWS = TypeAdapter(list[PolicyStateRow])
_DEVICE_STATUS_ROWS = TypeAdapter(list[DeviceStatusRow])
_SETTING_STATE_ROWS = TypeAdapter(list[SettingStateRow])
_REPORT_ROWS = TypeAdapter(list[ReportRow])

_LISTED_KINDS = frozenset(
    {PolicyKind.COMPLIANCE_POLICY, PolicyKind.CONFIGURATION_PROFILE, PolicyKind.APP}
)
_SETTING_KINDS = frozenset({PolicyKind.COMPLIANCE_POLICY, PolicyKind.CONFIGURATION_PROFILE})
_REPORT_KINDS = frozenset(
    {
        PolicyKind.COMPLIANCE_POLICY,
        PolicyKind.CONFIGURATION_PROFILE,
        PolicyKind.REMEDIATION_SCRIPT,
    }
)


class ComplianceSourceAdapter(ABC):
    source_id: ClassVar[str]
    priority: ClassVar[SourcePriority]
    kinds: ClassVar[frozenset[PolicyKind]] = frozenset(PolicyKind)

    def __init__(self, context: RunContext, backend: ComplianceBackend) -> None:
        self.context = context
        self.backend = backend

    def applies_to(self, policy: Policy) -> bool:
        return policy.kind in self.kinds

    def fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        try:
            return self._fetch(device_id, policy)
        except BackendError as exc:
            raise AdapterFailure(self.source_id, policy.id, str(exc)) from exc
        except ValidationError as exc:
            raise AdapterFailure(
                self.source_id,
                policy.id,
                f"unexpected payload shape ({exc.error_count()} validation error(s))",
            ) from exc

    @abstractmethod
    def _fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        raise NotImplementedError

    def _record(
        self,
        policy: Policy,
        state: ComplianceState,
        observed_at: datetime | None = None,
        **raw: Any,
    ) -> ComplianceRecord:
        return ComplianceRecord(
            policy_id=policy.id,
            source_id=self.source_id,
            state=state,
            observed_at=_as_utc(observed_at),
            raw=raw,
        )

    def _not_found(self, policy: Policy, **raw: Any) -> ComplianceRecord:
        return self._record(policy, ComplianceState.NOT_FOUND, **raw)


class ByDisplayNameMatch(ComplianceSourceAdapter):
    """Device policy-state listing matched on display name, first match wins.

    Names can collide across tenants and locales, so this source is trusted least.
    """

    source_id = "display-name"
    priority = SourcePriority.LOW
    kinds = _LISTED_KINDS

    def _fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        listed = self.backend.policy_states(device_id, policy.kind)
        rows = _POLICY_STATE_ROWS.validate_python(listed)
        wanted = policy.display_name.casefold()
        matches = [row for row in rows if row.display_name.casefold() == wanted]
        if not matches:
            return self._not_found(policy, listed=len(rows))
        if len(matches) > 1:
            logger.debug(
                "display name %r matches %d listed policies; using the first",
                policy.display_name,
                len(matches),
                extra={"policy_id": policy.id, "source_ids": [self.source_id]},
            )
        row = matches[0]
        return self._record(
            policy,
            normalize_state(row.state),
            row.last_reported_date_time,
            matched_id=row.id,
            reported_state=row.state,
            collisions=len(matches) - 1,
        )


class ByPolicyId(ComplianceSourceAdapter):
    source_id = "policy-id"
    priority = SourcePriority.MEDIUM
    kinds = _LISTED_KINDS

    def _fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        listed = self.backend.policy_states(device_id, policy.kind)
        rows = _POLICY_STATE_ROWS.validate_python(listed)
        for row in rows:
            if row.id == policy.id:
                return self._record(
                    policy,
                    normalize_state(row.state),
                    row.last_reported_date_time,
                    reported_state=row.state,
                )
        return self._not_found(policy, listed=len(rows))


class ByDeviceFilteredQuery(ComplianceSourceAdapter):
    """Per-policy device-status collection, filtered server-side to the device."""

    source_id = "device-status"
    priority = SourcePriority.HIGH

    def _fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        page = self.backend.device_statuses(policy.id, policy.kind, device_id=device_id)
        rows = [
            row
            for row in _DEVICE_STATUS_ROWS.validate_python(page.items)
            if row.device_id == device_id
        ]
        if not rows:
            return self._not_found(policy)
        row = max(rows, key=_latest_key)
        return self._record(
            policy,
            normalize_state(row.status),
            row.last_reported_date_time,
            reported_state=row.status,
            records=len(rows),
        )


class ByPaginatedScan(ComplianceSourceAdapter):
    """Same collection as :class:`ByDeviceFilteredQuery`, scanned page by page.

    Stops at the device's record, at the last page or at ``max_scan_pages``.
    Not finding the device is ambiguous (not evaluated yet, or a backend gap),
    so it is reported as ``NOT_FOUND`` with the scan extent attached.
    """

    source_id = "device-status-scan"
    priority = SourcePriority.HIGH

    def _fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        max_pages = self.context.config.max_scan_pages
        token: str | None = None
        pages = 0
        scanned = 0
        while True:
            if self.context.cancelled:
                raise AdapterCancelled(
                    self.source_id, policy.id, f"cancelled after {pages} page(s)"
                )
            page = self.backend.device_statuses(policy.id, policy.kind, page_token=token)
            pages += 1
            rows = _DEVICE_STATUS_ROWS.validate_python(page.items)
            scanned += len(rows)
            for row in rows:
                if row.device_id == device_id:
                    return self._record(
                        policy,
                        normalize_state(row.status),
                        row.last_reported_date_time,
                        reported_state=row.status,
                        pages_scanned=pages,
                    )
            token = page.next_page_token
            if not token:
                return self._not_found(
                    policy, pages_scanned=pages, rows_scanned=scanned, exhausted=True
                )
            if pages >= max_pages:
                logger.warning(
                    "stopped scanning device statuses for %s after %d page(s)",
                    policy.id,
                    pages,
                    extra={"policy_id": policy.id, "source_ids": [self.source_id]},
                )
                return self._not_found(
                    policy, pages_scanned=pages, rows_scanned=scanned, exhausted=False
                )


class ByPerSettingAggregation(ComplianceSourceAdapter):
    """Roll per-setting states up into one policy state, worst setting wins."""

    source_id = "setting-states"
    priority = SourcePriority.MEDIUM
    kinds = _SETTING_KINDS

    def _fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        rows = _SETTING_STATE_ROWS.validate_python(
            self.backend.setting_states(device_id, policy.id, policy.kind)
        )
        states = [(row, normalize_state(row.state)) for row in rows]
        determinate = [state for _, state in states if state.determinate]
        if not determinate:
            return self._not_found(policy, settings=len(rows))
        state = aggregate_setting_states(determinate)
        flagged = sorted(
            row.setting_name or row.setting
            for row, item in states
            if item is state and state is not ComplianceState.COMPLIANT
        )
        return self._record(policy, state, settings=len(rows), flagged_settings=flagged)


def aggregate_setting_states(states: Iterable[ComplianceState]) -> ComplianceState:
    return max(states, key=FAIL_SAFE_RANK.__getitem__, default=ComplianceState.NOT_FOUND)


class ByPrecomputedReport(ComplianceSourceAdapter):
    """Backend rollup report filtered to the device. Authoritative but may lag."""

    source_id = "report"
    priority = SourcePriority.HIGH
    kinds = _REPORT_KINDS

    def _fetch(self, device_id: str, policy: Policy) -> ComplianceRecord:
        rows = _REPORT_ROWS.validate_python(self.backend.report_rows(device_id, policy.kind))
        matches = [
            row
            for row in rows
            if row.policy_id == policy.id and row.device_id in (None, device_id)
        ]
        if not matches:
            return self._not_found(policy, report_rows=len(rows))
        row = max(matches, key=_latest_key)
        return self._record(
            policy,
            normalize_state(row.policy_status),
            row.last_reported_date_time,
            reported_state=row.policy_status,
        )


ADAPTER_TYPES: tuple[type[ComplianceSourceAdapter], ...] = (
    ByDisplayNameMatch,
    ByPolicyId,
    ByDeviceFilteredQuery,
    ByPaginatedScan,
    ByPerSettingAggregation,
    ByPrecomputedReport,
)

SOURCE_IDS = tuple(adapter.source_id for adapter in ADAPTER_TYPES)


def build_adapters(
    context: RunContext, backend: ComplianceBackend
) -> list[ComplianceSourceAdapter]:
    enabled = context.config.sources
    if enabled is None:
        return [adapter_type(context, backend) for adapter_type in ADAPTER_TYPES]
    unknown = sorted(set(enabled) - set(SOURCE_IDS))
    if unknown:
        raise ValueError(f"Unknown compliance source(s): {', '.join(unknown)}")
    return [
        adapter_type(context, backend)
        for adapter_type in ADAPTER_TYPES
        if adapter_type.source_id in enabled
    ]
