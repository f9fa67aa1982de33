import itertools

import pytest
from pydantic import ValidationError

from policyscope.diagnostics import DiagnosticKind
from policyscope.models import (
    EXCLUDED,
    NOT_TARGETED,
    Assignment,
    AssignmentFilter,
    FilterMode,
    Group,
    Policy,
    TargetKind,
)
from policyscope.targeting import AssignmentFilterCatalog, GroupMembershipSet, evaluate

FINANCE = Group(id="g1", display_name="Finance")
PILOT = Group(id="g2", display_name="Pilot Ring")
ENGINEERING = Group(id="g3", display_name="Engineering")
SALES = Group(id="g4", display_name="Sales")

WIN11 = AssignmentFilter(id="f1", display_name="Windows 11", platform="windows10AndLater")


def _policy(*assignments: Assignment) -> Policy:
    return Policy(id="p1", display_name="Policy", assignments=assignments)


def _members(*groups: Group) -> GroupMembershipSet:
    return GroupMembershipSet(groups, directory=[FINANCE, PILOT, ENGINEERING, SALES])


def test_all_devices_targets() -> None:
    policy = _policy(Assignment(target_kind=TargetKind.ALL_DEVICES))
    result = evaluate(policy, _members(), AssignmentFilterCatalog())

    assert result.status == "All Devices"
    assert result.matched_groups == ("All Devices",)
    assert result.excluded is False
    assert result.targeted is True


def test_all_users_label() -> None:
    policy = _policy(Assignment(target_kind=TargetKind.ALL_USERS))
    result = evaluate(policy, _members(), AssignmentFilterCatalog())

    assert result.status == "All Licensed Users"


def test_exclude_wins_over_include() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g1"),
        Assignment(target_kind=TargetKind.EXCLUDE_GROUP, group_id="g2"),
    )
    result = evaluate(policy, _members(FINANCE, PILOT), AssignmentFilterCatalog())

    assert result.status == EXCLUDED
    assert result.excluded is True
    assert result.targeted is False
    assert "Excluded: Pilot Ring" in result.matched_groups


def test_matched_groups_sorted_by_display_name() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g1"),
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g3"),
    )
    result = evaluate(policy, _members(FINANCE, ENGINEERING), AssignmentFilterCatalog())

    assert result.matched_groups == ("Engineering", "Finance")
    assert result.status == "Engineering, Finance"
    assert result.assigned_via == "Engineering (+1 more)"


def test_group_the_device_is_not_in_does_not_target() -> None:
    policy = _policy(Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g4"))
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog())

    assert result.status == NOT_TARGETED
    assert result.matched_groups == ()
    assert result.warnings == ()


def test_exclusion_of_other_group_does_not_exclude() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.ALL_DEVICES),
        Assignment(target_kind=TargetKind.EXCLUDE_GROUP, group_id="g4"),
    )
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog())

    assert result.status == "All Devices"


def test_exclusion_dominates_every_permutation() -> None:
    assignments = [
        Assignment(target_kind=TargetKind.ALL_DEVICES),
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g1"),
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g3"),
        Assignment(target_kind=TargetKind.EXCLUDE_GROUP, group_id="g2"),
    ]
    members = _members(FINANCE, PILOT, ENGINEERING)
    for order in itertools.permutations(assignments):
        result = evaluate(_policy(*order), members, AssignmentFilterCatalog())
        assert result.status == EXCLUDED


def test_result_is_identical_for_every_permutation() -> None:
    assignments = [
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g1", filter_id="f1"),
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g3"),
        Assignment(target_kind=TargetKind.ALL_USERS),
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="missing"),
        Assignment(target_kind=TargetKind.EXCLUDE_GROUP, group_id="g4"),
    ]
    members = _members(FINANCE, ENGINEERING)
    filters = AssignmentFilterCatalog([WIN11])
    results = {
        evaluate(_policy(*order), members, filters)
        for order in itertools.permutations(assignments)
    }

    assert len(results) == 1
    (result,) = results
    assert result.status == "All Licensed Users, Engineering, Finance"


def test_unknown_group_reference_warns_once() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="deleted-group"),
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g1"),
    )
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog())

    assert result.status == "Finance"
    assert len(result.warnings) == 1
    warning = result.warnings[0]
    assert warning.kind is DiagnosticKind.DATA_INTEGRITY
    assert warning.policy_id == "p1"
    assert "deleted-group" in warning.message


def test_each_skipped_assignment_gets_its_own_warning() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="deleted-group"),
        Assignment(target_kind=TargetKind.EXCLUDE_GROUP, group_id="deleted-group"),
    )
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog())

    assert len(result.warnings) == 2
    assert all("deleted-group" in warning.message for warning in result.warnings)


def test_unknown_exclusion_group_is_skipped() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.ALL_DEVICES),
        Assignment(target_kind=TargetKind.EXCLUDE_GROUP, group_id="deleted-group"),
    )
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog())

    assert result.status == "All Devices"
    assert len(result.warnings) == 1


def test_unknown_filter_skips_assignment() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g1", filter_id="nope"),
    )
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog([WIN11]))

    assert result.status == NOT_TARGETED
    assert len(result.warnings) == 1
    assert "unknown filter nope" in result.warnings[0].message


def test_applied_filter_is_informational() -> None:
    policy = _policy(
        Assignment(
            target_kind=TargetKind.INCLUDE_GROUP,
            group_id="g1",
            filter_id="f1",
            filter_mode=FilterMode.EXCLUDE,
        ),
    )
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog([WIN11]))

    assert result.status == "Finance"
    assert result.applied_filter == WIN11
    assert result.applied_filter_mode is FilterMode.EXCLUDE


def test_filter_on_non_matching_assignment_is_not_applied() -> None:
    policy = _policy(
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g4", filter_id="f1"),
        Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="g1"),
    )
    result = evaluate(policy, _members(FINANCE), AssignmentFilterCatalog([WIN11]))

    assert result.applied_filter is None


def test_without_directory_every_group_is_known() -> None:
    members = GroupMembershipSet([FINANCE])
    policy = _policy(Assignment(target_kind=TargetKind.INCLUDE_GROUP, group_id="anything"))
    result = evaluate(policy, members, AssignmentFilterCatalog())

    assert result.status == NOT_TARGETED
    assert result.warnings == ()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("#microsoft.graph.allDevicesAssignmentTarget", TargetKind.ALL_DEVICES),
        ("#microsoft.graph.groupAssignmentTarget", TargetKind.INCLUDE_GROUP),
        ("#microsoft.graph.exclusionGroupAssignmentTarget", TargetKind.EXCLUDE_GROUP),
        ("Exclude Group:", TargetKind.EXCLUDE_GROUP),
        ("Include", TargetKind.INCLUDE_GROUP),
    ],
)
def test_backend_target_names_are_normalized(raw: str, expected: TargetKind) -> None:
    assignment = Assignment.model_validate({"targetKind": raw, "groupId": "g1"})
    assert assignment.target_kind is expected


def test_group_assignment_requires_group_id() -> None:
    with pytest.raises(ValidationError):
        Assignment.model_validate({"targetKind": "includeGroup"})
