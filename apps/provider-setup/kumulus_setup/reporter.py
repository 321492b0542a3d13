"""
Progress Reporter / Error Escalator
===================================

ProgressReporter is a fire-and-forget sink: notify() logs the transition
locally, tries to deliver it to the control plane within a bounded timeout
and retry budget, and never raises. Whether the control plane heard about a
step has no effect on what the installer does next.

ErrorEscalator is the single exit path for fatal conditions: it logs, sends
exactly one "failed" report, then raises InstallationAborted.
"""

from __future__ import annotations
import logging
import time
from typing import Optional

from .control_plane import ControlPlaneClient, REPORT_TIMEOUT
from .errors import InstallationAborted, TransportError

log = logging.getLogger(__name__)

STATUS_ICONS = {
    "in_progress": "…",
    "completed":   "✓",
    "failed":      "✗",
}


def utc_timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class ProgressReporter:
    def __init__(
        self,
        client:      ControlPlaneClient,
        timeout:     float = REPORT_TIMEOUT,
        retries:     int   = 1,
        retry_delay: float = 1.0,
    ):
        self.client      = client
        self.timeout     = timeout
        self.retries     = retries
        self.retry_delay = retry_delay

    @property
    def enabled(self) -> bool:
        identity = self.client.identity
        return bool(identity.resource_id and identity.backend_url)

    def notify(self, step: str, status: str, message: str = "", timestamp: Optional[str] = None):
        """Deliver one status transition. Never raises."""
        icon = STATUS_ICONS.get(status, "·")
        log.info(f"[report] {icon} {step}: {status}{' — ' + message if message else ''}")

        if not self.enabled:
            return

        event = {
            "step":      step,
            "status":    status,
            "message":   message,
            "timestamp": timestamp or utc_timestamp(),
        }
        for attempt in range(self.retries + 1):
            try:
                self.client.report_installation(event, timeout=self.timeout)
                return
            except TransportError as e:
                log.warning(
                    f"[report] Failed to report {step}/{status} "
                    f"(attempt {attempt + 1}/{self.retries + 1}): {e}"
                )
            except Exception as e:
                log.warning(f"[report] Unexpected reporting error for {step}: {e}")
                return
            if attempt < self.retries:
                time.sleep(self.retry_delay)
        log.warning(f"[report] Giving up on {step}/{status} report (continuing anyway)")


class ErrorEscalator:
    def __init__(self, reporter: ProgressReporter):
        self.reporter = reporter

    def escalate(self, step: str, message: str, cause: Optional[BaseException] = None):
        """Report `step` as failed and abort the run. Does not return."""
        log.error(f"ERROR in {step}: {message}")
        if cause is not None:
            log.debug(f"{step} failure detail", exc_info=(type(cause), cause, cause.__traceback__))
        self.reporter.notify(step, "failed", message)
        raise InstallationAborted(step, message)
