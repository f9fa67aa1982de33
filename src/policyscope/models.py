from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from policyscope.diagnostics import Diagnostic

NOT_TARGETED = "Not Targeted"
EXCLUDED = "Excluded"
ALL_DEVICES_LABEL = "All Devices"
ALL_USERS_LABEL = "All Licensed Users"
EXCLUDED_PREFIX = "Excluded: "


class TargetKind(str, Enum):
    ALL_DEVICES = "allDevices"
    ALL_USERS = "allUsers"
    INCLUDE_GROUP = "includeGroup"
    EXCLUDE_GROUP = "excludeGroup"


class FilterMode(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class PolicyKind(str, Enum):
    COMPLIANCE_POLICY = "compliancePolicy"
    CONFIGURATION_PROFILE = "configurationProfile"
    APP = "app"
    REMEDIATION_SCRIPT = "remediationScript"


POLICY_KIND_ORDER = {kind: index for index, kind in enumerate(PolicyKind)}


class ComplianceState(str, Enum):
    COMPLIANT = "compliant"
    NON_COMPLIANT = "nonCompliant"
    ERROR = "error"
    CONFLICT = "conflict"
    UNKNOWN = "unknown"
    NOT_APPLICABLE = "notApplicable"
    NOT_FOUND = "notFound"

    @property
    def determinate(self) -> bool:
        return self is not ComplianceState.NOT_FOUND

    @property
    def category(self) -> str:
        return _STATE_CATEGORIES[self]


# Higher rank wins same-priority ties and per-setting rollups.
FAIL_SAFE_RANK = {
    ComplianceState.NON_COMPLIANT: 6,
    ComplianceState.ERROR: 5,
    ComplianceState.CONFLICT: 4,
    ComplianceState.UNKNOWN: 3,
    ComplianceState.NOT_APPLICABLE: 2,
    ComplianceState.COMPLIANT: 1,
    ComplianceState.NOT_FOUND: 0,
}

_STATE_CATEGORIES = {
    ComplianceState.COMPLIANT: "success",
    ComplianceState.NON_COMPLIANT: "error",
    ComplianceState.ERROR: "error",
    ComplianceState.CONFLICT: "warning",
    ComplianceState.UNKNOWN: "neutral",
    ComplianceState.NOT_APPLICABLE: "neutral",
    ComplianceState.NOT_FOUND: "neutral",
}


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SourcePriority(IntEnum):
    LOW = 1
    MEDIUM = 2
    HIGH = 3


# Graph odata types and the legacy "Include Group:" / "Exclude:" shapes.
_TARGET_ALIASES = {
    "alldevices": TargetKind.ALL_DEVICES,
    "#microsoft.graph.alldevicesassignmenttarget": TargetKind.ALL_DEVICES,
    "allusers": TargetKind.ALL_USERS,
    "alllicensedusers": TargetKind.ALL_USERS,
    "#microsoft.graph.alllicensedusersassignmenttarget": TargetKind.ALL_USERS,
    "include": TargetKind.INCLUDE_GROUP,
    "includegroup": TargetKind.INCLUDE_GROUP,
    "group": TargetKind.INCLUDE_GROUP,
    "#microsoft.graph.groupassignmenttarget": TargetKind.INCLUDE_GROUP,
    "exclude": TargetKind.EXCLUDE_GROUP,
    "excludegroup": TargetKind.EXCLUDE_GROUP,
    "exclusiongroup": TargetKind.EXCLUDE_GROUP,
    "#microsoft.graph.exclusiongroupassignmenttarget": TargetKind.EXCLUDE_GROUP,
}


def _alias_key(value: str) -> str:
    return re.sub(r"[\s_\-:]", "", value.strip().lower())


class SnapshotModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        populate_by_name=True,
        alias_generator=to_camel,
    )


class Group(SnapshotModel):
    id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)


class AssignmentFilter(SnapshotModel):
    id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    platform: str = ""
    rule: str = ""


class Assignment(SnapshotModel):
    target_kind: TargetKind
    group_id: str | None = None
    filter_id: str | None = None
    filter_mode: FilterMode | None = None

    @field_validator("target_kind", mode="before")
    @classmethod
    def _normalize_target_kind(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _TARGET_ALIASES.get(_alias_key(value), value)
        return value

    @field_validator("filter_mode", mode="before")
    @classmethod
    def _normalize_filter_mode(cls, value: Any) -> Any:
        if isinstance(value, str):
            text = value.strip().lower()
            if text in {"", "none"}:
                return None
            return text
        return value

    @model_validator(mode="after")
    def _check_group(self) -> Assignment:
        if self.target_kind in {TargetKind.INCLUDE_GROUP, TargetKind.EXCLUDE_GROUP}:
            if not self.group_id:
                raise ValueError(f"{self.target_kind.value} assignment requires groupId")
        return self


class Policy(SnapshotModel):
    id: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)
    kind: PolicyKind = PolicyKind.COMPLIANCE_POLICY
    platform: str = ""
    description: str | None = None
    assignments: tuple[Assignment, ...] = ()


@dataclass(frozen=True)
class TargetingResult:
    policy_id: str
    status: str
    matched_groups: tuple[str, ...] = ()
    excluded: bool = False
    applied_filter: AssignmentFilter | None = None
    applied_filter_mode: FilterMode | None = None
    warnings: tuple[Diagnostic, ...] = ()

    @property
    def targeted(self) -> bool:
        return self.status not in {NOT_TARGETED, EXCLUDED}

    @property
    def assigned_via(self) -> str:
        """First matched group plus a count of the rest, e.g. ``Finance (+2 more)``."""
        if not self.matched_groups:
            return ""
        first = self.matched_groups[0]
        if len(self.matched_groups) == 1:
            return first
        return f"{first} (+{len(self.matched_groups) - 1} more)"


@dataclass(frozen=True)
class ComplianceRecord:
    policy_id: str
    source_id: str
    state: ComplianceState
    observed_at: datetime | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReconciledVerdict:
    policy_id: str
    state: ComplianceState
    confidence: Confidence
    agreeing_sources: tuple[str, ...] = ()
    disagreeing_sources: tuple[tuple[str, ComplianceState], ...] = ()
    missing_sources: tuple[str, ...] = ()
    not_found_sources: tuple[str, ...] = ()

    @property
    def complete(self) -> bool:
        return not self.missing_sources
