"""Exception hierarchy for the lending engine."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .results import OperationResult


class LendingError(Exception):
    """Base exception for all lending engine errors."""


class ValidationError(LendingError, ValueError):
    """Raised when input is malformed (negative principal, bad date, sign mismatch)."""


class ConsistencyError(LendingError):
    """Raised when installment, ledger or version state diverge."""


class ReversalNotAllowedError(LendingError):
    """Raised when reversing an audit/system entry or an already reversed one."""


class AgreementStateError(LendingError):
    """Raised when an agreement transition is not allowed from its current status."""


class NotFoundError(LendingError, LookupError):
    """Raised when a referenced loan, installment, entry, agreement or source does not exist."""


class DeadlineExceededError(LendingError):
    """Raised when a caller-supplied deadline passes before a persistence step."""


class OperationFailedError(LendingError):
    """
    Raised when a coordinated operation fails part way.

    ``result`` records which steps completed before the failure so the caller
    can tell "nothing happened" from "partially happened".
    """

    def __init__(self, message: str, result: "OperationResult"):
        super().__init__(message)
        self.result = result

    @property
    def partially_applied(self) -> bool:
        return bool(self.result.completed_steps)
