"""Reportable conditions raised while auditing a device.

Diagnostics are plain values: components return them and the runner collects
them into the report. Every diagnostic is also written to the logger once, with
its fields attached as ``extra`` so structured handlers can pick them up.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum


class DiagnosticKind(str, Enum):
    DATA_INTEGRITY = "dataIntegrityWarning"
    ADAPTER_FAILURE = "adapterFailure"
    ADAPTER_TIMEOUT = "adapterTimeout"
    ADAPTER_CANCELLED = "adapterCancelled"
    RECONCILIATION_CONFLICT = "reconciliationConflict"
    PIPELINE_INCONSISTENCY = "pipelineInconsistency"


class Severity(str, Enum):
    ERROR = "Error"
    WARNING = "Warning"
    INFO = "Info"


_LOG_LEVELS = {
    Severity.ERROR: logging.ERROR,
    Severity.WARNING: logging.WARNING,
    Severity.INFO: logging.INFO,
}


@dataclass(frozen=True)
class Diagnostic:
    kind: DiagnosticKind
    severity: Severity
    policy_id: str
    message: str
    source_ids: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "policy_id": self.policy_id,
            "source_ids": list(self.source_ids),
            "message": self.message,
        }


def data_integrity(policy_id: str, message: str) -> Diagnostic:
    return Diagnostic(DiagnosticKind.DATA_INTEGRITY, Severity.WARNING, policy_id, message)


def emit(logger: logging.Logger, diagnostic: Diagnostic) -> None:
    logger.log(
        _LOG_LEVELS[diagnostic.severity],
        "%s: %s",
        diagnostic.kind.value,
        diagnostic.message,
        extra={
            "diagnostic": diagnostic.kind.value,
            "policy_id": diagnostic.policy_id,
            "source_ids": list(diagnostic.source_ids),
        },
    )
