"""Offline input: one fully-fetched backend snapshot for a single device.

The snapshot holds the device's group memberships, the tenant's assignment
filters and policies, and the raw payloads each compliance query strategy
returned. :class:`SnapshotBackend` serves those payloads to the adapters
through the same protocol a live transport would implement.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field

from policyscope.adapters import Page
from policyscope.catalog import PolicyCatalog
from policyscope.errors import BackendError, SnapshotError
from policyscope.models import AssignmentFilter, Group, Policy, PolicyKind, SnapshotModel
from policyscope.targeting import AssignmentFilterCatalog, GroupMembershipSet

_YAML_SUFFIXES = {".yaml", ".yml"}


class DeviceInfo(SnapshotModel):
    id: str = Field(..., min_length=1)
    display_name: str | None = None


class CompliancePayloads(SnapshotModel):
    policy_states: dict[PolicyKind, list[dict[str, Any]]] = Field(default_factory=dict)
    device_statuses: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    setting_states: dict[str, list[dict[str, Any]]] = Field(default_factory=dict)
    report: dict[PolicyKind, list[dict[str, Any]]] = Field(default_factory=dict)


class Snapshot(SnapshotModel):
    device: DeviceInfo
    memberships: tuple[Group, ...] = ()
    groups: tuple[Group, ...] | None = None
    filters: tuple[AssignmentFilter, ...] = ()
    policies: tuple[Policy, ...] = ()
    compliance: CompliancePayloads = Field(default_factory=CompliancePayloads)

    def membership_set(self) -> GroupMembershipSet:
        return GroupMembershipSet(self.memberships, self.groups)

    def filter_catalog(self) -> AssignmentFilterCatalog:
        return AssignmentFilterCatalog(self.filters)

    def policy_catalog(self) -> PolicyCatalog:
        return PolicyCatalog.from_policies(self.policies)


def parse_snapshot(text: str, yaml_format: bool = False) -> Snapshot:
    data = yaml.safe_load(text) if yaml_format else json.loads(text)
    if not isinstance(data, dict):
        raise SnapshotError("Snapshot must be a mapping")
    return Snapshot.model_validate(data)


def load_snapshot(path: Path) -> Snapshot:
    text = path.read_text(encoding="utf-8")
    return parse_snapshot(text, yaml_format=path.suffix.lower() in _YAML_SUFFIXES)


def snapshot_json_schema() -> dict[str, Any]:
    return Snapshot.model_json_schema(by_alias=True)


class SnapshotBackend:
    """Serves recorded compliance payloads, paging device statuses like the live API."""

    def __init__(self, snapshot: Snapshot, page_size: int = 100) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._device_id = snapshot.device.id
        self._payloads = snapshot.compliance
        self._page_size = page_size

    def policy_states(self, device_id: str, kind: PolicyKind) -> list[dict[str, Any]]:
        if device_id != self._device_id:
            return []
        return list(self._payloads.policy_states.get(kind, []))

    def device_statuses(
        self,
        policy_id: str,
        kind: PolicyKind,
        device_id: str | None = None,
        page_token: str | None = None,
    ) -> Page:
        rows = self._payloads.device_statuses.get(policy_id, [])
        if device_id is not None:
            return Page([row for row in rows if row.get("deviceId") == device_id])
        try:
            start = int(page_token or 0)
        except ValueError as exc:
            raise BackendError(f"invalid page token {page_token!r}") from exc
        if start < 0 or start > len(rows):
            raise BackendError(f"page token {page_token!r} out of range")
        end = start + self._page_size
        next_token = str(end) if end < len(rows) else None
        return Page(list(rows[start:end]), next_token)

    def setting_states(
        self, device_id: str, policy_id: str, kind: PolicyKind
    ) -> list[dict[str, Any]]:
        if device_id != self._device_id:
            return []
        return list(self._payloads.setting_states.get(policy_id, []))

    def report_rows(self, device_id: str, kind: PolicyKind) -> list[dict[str, Any]]:
        return [
            row
            for row in self._payloads.report.get(kind, [])
            if row.get("DeviceId") in (None, device_id)
        ]
