from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from policyscope.report import AuditReport


class PolicyScopeError(Exception):
    """Base error for policyscope."""


class SnapshotError(PolicyScopeError, ValueError):
    """Snapshot or config input could not be parsed."""


class BackendError(PolicyScopeError):
    """Raised by backend transports when a query cannot be answered."""


class AdapterFailure(PolicyScopeError):
    """A compliance source could not produce a record for a policy."""

    def __init__(self, source_id: str, policy_id: str, message: str) -> None:
        super().__init__(f"{source_id} failed for policy {policy_id}: {message}")
        self.source_id = source_id
        self.policy_id = policy_id
        self.reason = message


class AdapterTimeout(AdapterFailure):
    """The fetch did not finish within the per-adapter timeout."""


class AdapterCancelled(AdapterFailure):
    """The run was cancelled before the fetch finished."""


class PipelineInconsistency(PolicyScopeError):
    """A targeted policy reached report assembly without a verdict.

    The partially assembled report is attached so callers can still show it.
    """

    def __init__(self, policy_ids: list[str], report: AuditReport | None = None) -> None:
        joined = ", ".join(policy_ids)
        super().__init__(f"targeted policies without a verdict: {joined}")
        self.policy_ids = policy_ids
        self.report = report
