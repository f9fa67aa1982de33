from __future__ import annotations

import logging
import threading

from policyscope.config import AuditConfig


class RunContext:
    """Per-run state handed to every component.

    Holds the configuration, the device being audited, a logger and the
    run-level cancellation token. Nothing here outlives the run.
    """

    def __init__(
        self,
        device_id: str,
        config: AuditConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.device_id = device_id
        self.config = config or AuditConfig()
        self.logger = logger or logging.getLogger("policyscope.run")
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        if not self._cancelled.is_set():
            self.logger.warning("run cancelled", extra={"device_id": self.device_id})
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait_cancelled(self, timeout: float) -> bool:
        return self._cancelled.wait(timeout)
