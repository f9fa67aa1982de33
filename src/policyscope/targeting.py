"""Resolve which policies are assigned to a device.

Evaluation is order independent: every assignment is scanned, exclusion is
terminal, and matched group names are sorted before they are joined into the
status string. Dangling group or filter references never raise; they are
skipped and reported as data-integrity warnings.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping
from types import MappingProxyType

from policyscope.diagnostics import Diagnostic, data_integrity, emit
from policyscope.models import (
    ALL_DEVICES_LABEL,
    ALL_USERS_LABEL,
    EXCLUDED,
    EXCLUDED_PREFIX,
    NOT_TARGETED,
    Assignment,
    AssignmentFilter,
    FilterMode,
    Group,
    Policy,
    TargetingResult,
    TargetKind,
)

logger = logging.getLogger(__name__)


class GroupMembershipSet:
    """Groups a device belongs to, plus the directory of groups the tenant knows.

    Without a directory every referenced group id is assumed to exist, so only
    the device's own groups can be named and nothing is reported as dangling.
    """

    def __init__(
        self, memberships: Iterable[Group], directory: Iterable[Group] | None = None
    ) -> None:
        members: dict[str, Group] = {}
        for group in memberships:
            members.setdefault(group.id, group)
        self._members = MappingProxyType(members)
        if directory is None:
            self._directory: Mapping[str, Group] | None = None
        else:
            known = {group.id: group for group in directory}
            for group_id, group in members.items():
                known.setdefault(group_id, group)
            self._directory = MappingProxyType(known)

    def __contains__(self, group_id: object) -> bool:
        return group_id in self._members

    def __iter__(self) -> Iterator[str]:
        return iter(self._members)

    def __len__(self) -> int:
        return len(self._members)

    @property
    def group_ids(self) -> frozenset[str]:
        return frozenset(self._members)

    def is_known(self, group_id: str) -> bool:
        if self._directory is None:
            return True
        return group_id in self._directory

    def display_name(self, group_id: str) -> str:
        group = self._members.get(group_id)
        if group is None and self._directory is not None:
            group = self._directory.get(group_id)
        return group.display_name if group is not None else group_id


class AssignmentFilterCatalog:
    def __init__(self, filters: Iterable[AssignmentFilter] = ()) -> None:
        self._filters = MappingProxyType({item.id: item for item in filters})

    def get(self, filter_id: str) -> AssignmentFilter | None:
        return self._filters.get(filter_id)

    def __contains__(self, filter_id: object) -> bool:
        return filter_id in self._filters

    def __len__(self) -> int:
        return len(self._filters)

    def __iter__(self) -> Iterator[AssignmentFilter]:
        return iter(self._filters.values())


def _sort_key(name: str) -> tuple[str, str]:
    return (name.casefold(), name)


def _describe(assignment: Assignment) -> str:
    if assignment.group_id:
        return f"{assignment.target_kind.value} assignment for group {assignment.group_id}"
    return f"{assignment.target_kind.value} assignment"


def _integrity_problem(
    assignment: Assignment,
    memberships: GroupMembershipSet,
    filters: AssignmentFilterCatalog,
) -> str | None:
    problems: list[str] = []
    if assignment.group_id and not memberships.is_known(assignment.group_id):
        problems.append(f"unknown group {assignment.group_id}")
    if assignment.filter_id and assignment.filter_id not in filters:
        problems.append(f"unknown filter {assignment.filter_id}")
    if not problems:
        return None
    return f"{_describe(assignment)} skipped: {' and '.join(problems)}"


def evaluate(
    policy: Policy,
    memberships: GroupMembershipSet,
    filters: AssignmentFilterCatalog,
) -> TargetingResult:
    matched: set[str] = set()
    excluded_by: set[str] = set()
    filter_candidates: list[tuple[AssignmentFilter, FilterMode | None]] = []
    warnings: list[Diagnostic] = []

    for assignment in policy.assignments:
        problem = _integrity_problem(assignment, memberships, filters)
        if problem is not None:
            warnings.append(data_integrity(policy.id, problem))
            continue

        contributed = True
        if assignment.target_kind is TargetKind.ALL_DEVICES:
            matched.add(ALL_DEVICES_LABEL)
        elif assignment.target_kind is TargetKind.ALL_USERS:
            matched.add(ALL_USERS_LABEL)
        elif assignment.group_id in memberships:
            name = memberships.display_name(assignment.group_id)
            if assignment.target_kind is TargetKind.EXCLUDE_GROUP:
                excluded_by.add(name)
            else:
                matched.add(name)
        else:
            contributed = False

        if contributed and assignment.filter_id:
            applied = filters.get(assignment.filter_id)
            if applied is not None:
                filter_candidates.append((applied, assignment.filter_mode))

    applied_filter: AssignmentFilter | None = None
    applied_mode: FilterMode | None = None
    if filter_candidates:
        applied_filter, applied_mode = min(
            filter_candidates,
            key=lambda item: (
                _sort_key(item[0].display_name),
                item[0].id,
                item[1].value if item[1] else "",
            ),
        )

    sorted_warnings = tuple(sorted(warnings, key=lambda item: item.message))
    for warning in sorted_warnings:
        emit(logger, warning)

    matched_groups = sorted(matched, key=_sort_key)
    if excluded_by:
        provenance = [f"{EXCLUDED_PREFIX}{name}" for name in sorted(excluded_by, key=_sort_key)]
        return TargetingResult(
            policy_id=policy.id,
            status=EXCLUDED,
            matched_groups=tuple(matched_groups + provenance),
            excluded=True,
            applied_filter=applied_filter,
            applied_filter_mode=applied_mode,
            warnings=sorted_warnings,
        )
    if matched_groups:
        return TargetingResult(
            policy_id=policy.id,
            status=", ".join(matched_groups),
            matched_groups=tuple(matched_groups),
            applied_filter=applied_filter,
            applied_filter_mode=applied_mode,
            warnings=sorted_warnings,
        )
    return TargetingResult(
        policy_id=policy.id,
        status=NOT_TARGETED,
        warnings=sorted_warnings,
    )
