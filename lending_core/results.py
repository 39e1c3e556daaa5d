"""
Operation Results Module

Structured outcome of a coordinated operation that touches more than one
aggregate (installment, ledger, capital source, agreement). Each persistence
step is recorded in order so a caller can tell which ones took effect.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import time
import uuid

from .errors import DeadlineExceededError, OperationFailedError


class Deadline:
    """Absolute point in (monotonic) time a caller is willing to wait until"""

    def __init__(self, expires_at: float):
        self.expires_at = expires_at

    @classmethod
    def after(cls, seconds: float) -> "Deadline":
        return cls(time.monotonic() + seconds)

    @classmethod
    def from_seconds(cls, seconds: Optional[float]) -> Optional["Deadline"]:
        return cls.after(seconds) if seconds is not None else None

    def remaining(self) -> float:
        return self.expires_at - time.monotonic()

    def expired(self) -> bool:
        return self.remaining() <= 0


class StepStatus(Enum):
    """Outcome of a single step"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class StepOutcome:
    """Outcome of one persistence step"""
    name: str
    status: StepStatus
    detail: Optional[str] = None


@dataclass
class OperationResult:
    """
    Ordered record of the steps of one operation.

    ``value`` carries what the operation produced (the posted entry, the
    updated agreement, ...) once every step succeeded.
    """
    operation: str
    correlation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    steps: List[StepOutcome] = field(default_factory=list)
    value: Any = None

    def succeeded(self, name: str, detail: Optional[str] = None) -> None:
        self.steps.append(StepOutcome(name, StepStatus.SUCCEEDED, detail))

    def failed(self, name: str, detail: Optional[str] = None) -> None:
        self.steps.append(StepOutcome(name, StepStatus.FAILED, detail))

    def skipped(self, name: str, detail: Optional[str] = None) -> None:
        self.steps.append(StepOutcome(name, StepStatus.SKIPPED, detail))

    def run(self, name: str, action: Callable[[], Any], deadline: Optional[Deadline] = None) -> Any:
        """
        Execute one persistence step and record its outcome.

        Raises:
            OperationFailedError: If the deadline has passed before the step
                starts or the step raises; the original error is chained
        """
        if deadline is not None and deadline.expired():
            self.failed(name, "deadline exceeded")
            cause = DeadlineExceededError(f"Deadline passed before step {name}")
            raise OperationFailedError(
                f"{self.operation} stopped before {name}: deadline exceeded", self
            ) from cause

        try:
            value = action()
        except Exception as exc:
            self.failed(name, str(exc))
            raise OperationFailedError(f"{self.operation} failed at {name}: {exc}", self) from exc

        self.succeeded(name)
        return value

    @property
    def completed_steps(self) -> List[str]:
        return [s.name for s in self.steps if s.status == StepStatus.SUCCEEDED]

    @property
    def failed_step(self) -> Optional[str]:
        for step in self.steps:
            if step.status == StepStatus.FAILED:
                return step.name
        return None

    @property
    def ok(self) -> bool:
        return self.failed_step is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation,
            "correlation_id": self.correlation_id,
            "ok": self.ok,
            "steps": [
                {"name": s.name, "status": s.status.value, "detail": s.detail}
                for s in self.steps
            ],
        }
