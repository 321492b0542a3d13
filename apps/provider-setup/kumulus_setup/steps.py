"""
Step Runner
===========

Runs a fixed, ordered list of named steps. Each step is a callable that
returns a completion message or raises.

  in_progress  reported before the action runs
  completed    reported with the action's return value
  failed       reported once by the ErrorEscalator, then the run aborts

Actions are expected to check their target state first and return early
when it already holds, so a run can always be restarted from step one.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from .errors import InstallationAborted
from .reporter import ErrorEscalator, ProgressReporter, utc_timestamp

log = logging.getLogger(__name__)

StepAction = Callable[[], str]


class StepStatus(str, Enum):
    PENDING     = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED   = "completed"
    FAILED      = "failed"


@dataclass
class InstallationStep:
    name:      str
    status:    StepStatus = StepStatus.PENDING
    message:   str        = ""
    timestamp: str        = field(default_factory=utc_timestamp)

    def transition(self, status: StepStatus, message: str = ""):
        self.status    = status
        self.message   = message
        self.timestamp = utc_timestamp()


class StepRunner:
    def __init__(self, reporter: ProgressReporter, escalator: ErrorEscalator):
        self.reporter  = reporter
        self.escalator = escalator
        self.steps: dict[str, InstallationStep] = {}

    def _emit(self, step: InstallationStep, status: StepStatus, message: str = ""):
        step.transition(status, message)
        self.reporter.notify(step.name, status.value, message, timestamp=step.timestamp)

    def run_step(self, name: str, action: StepAction) -> str:
        step = self.steps.get(name)
        if step is None:
            step = self.steps[name] = InstallationStep(name)
        elif step.status == StepStatus.COMPLETED:
            log.debug(f"[steps] {name} already completed in this run — skipping")
            return step.message

        self._emit(step, StepStatus.IN_PROGRESS)
        try:
            message = action() or ""
        except InstallationAborted:
            # A nested step already escalated and reported.
            step.transition(StepStatus.FAILED, "aborted")
            raise
        except KeyboardInterrupt:
            # Ctrl-C, or SIGTERM re-raised by the CLI.
            step.transition(StepStatus.FAILED, "interrupted")
            self.escalator.escalate(name, "Installation interrupted")
            raise
        except Exception as e:
            step.transition(StepStatus.FAILED, str(e))
            self.escalator.escalate(name, str(e) or type(e).__name__, cause=e)
            raise  # escalate() never returns

        self._emit(step, StepStatus.COMPLETED, message)
        return message

    def run(self, plan: list[tuple[str, StepAction]]):
        """Execute `plan` in order. Stops at the first failure."""
        for name, _ in plan:
            self.steps.setdefault(name, InstallationStep(name))
        for name, action in plan:
            self.run_step(name, action)

    def status_of(self, name: str) -> Optional[StepStatus]:
        step = self.steps.get(name)
        return step.status if step else None
