from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from policyscope.diagnostics import Diagnostic, data_integrity, emit
from policyscope.models import POLICY_KIND_ORDER, Policy, PolicyKind, TargetingResult
from policyscope.targeting import AssignmentFilterCatalog, GroupMembershipSet, evaluate

logger = logging.getLogger(__name__)

PolicyFetch = Callable[[], Iterable[Policy]]


def _policy_sort_key(policy: Policy) -> tuple[int, str, str]:
    return (POLICY_KIND_ORDER[policy.kind], policy.display_name.casefold(), policy.id)


class PolicyCatalog:
    """Every policy fetched from the backend for one run, across all policy kinds."""

    def __init__(self, fetch: PolicyFetch) -> None:
        self._fetch = fetch
        self._policies: list[Policy] | None = None
        self._warnings: list[Diagnostic] = []

    @classmethod
    def from_policies(cls, policies: Iterable[Policy]) -> PolicyCatalog:
        items = list(policies)
        return cls(lambda: items)

    @property
    def warnings(self) -> list[Diagnostic]:
        self.load_all()
        return list(self._warnings)

    def load_all(self) -> list[Policy]:
        """Every policy once, ordered by kind then name.

        Policy ids are unique across kinds; when a backend returns the same id
        twice, the first policy in that order is kept.
        """
        if self._policies is None:
            seen: set[str] = set()
            policies: list[Policy] = []
            for policy in sorted(self._fetch(), key=_policy_sort_key):
                if policy.id in seen:
                    warning = data_integrity(
                        policy.id,
                        f"duplicate policy id {policy.id}: {policy.kind.value} "
                        f"{policy.display_name} ignored",
                    )
                    emit(logger, warning)
                    self._warnings.append(warning)
                    continue
                seen.add(policy.id)
                policies.append(policy)
            self._policies = policies
        return list(self._policies)

    def __iter__(self):
        return iter(self.load_all())

    def __len__(self) -> int:
        return len(self.load_all())

    def by_kind(self) -> dict[PolicyKind, list[Policy]]:
        grouped: dict[PolicyKind, list[Policy]] = {}
        for policy in self.load_all():
            grouped.setdefault(policy.kind, []).append(policy)
        return grouped

    def evaluate_all(
        self, memberships: GroupMembershipSet, filters: AssignmentFilterCatalog
    ) -> list[tuple[Policy, TargetingResult]]:
        return [(policy, evaluate(policy, memberships, filters)) for policy in self.load_all()]

    def filter_targeted(
        self, memberships: GroupMembershipSet, filters: AssignmentFilterCatalog
    ) -> list[tuple[Policy, TargetingResult]]:
        return [
            (policy, result)
            for policy, result in self.evaluate_all(memberships, filters)
            if result.targeted
        ]
