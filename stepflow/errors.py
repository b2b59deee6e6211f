"""Error taxonomy for the stepflow execution engine."""

from __future__ import annotations

from typing import Any, Optional


class StepflowError(Exception):
    """Base class for all engine errors."""


class StepError(StepflowError):
    """Failure raised while executing a single workflow step."""

    retryable: bool = False

    def __init__(self, message: str, *, status_code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.data = data


class RetryableStepError(StepError):
    """Transient failure: network, timeout, 5xx or 429."""

    retryable = True


class NonRetryableStepError(StepError):
    """Permanent failure: 4xx other than 429, validation, credentials."""

    retryable = False


class StepValidationError(NonRetryableStepError):
    """The step definition or its rendered parameters are invalid."""


class CredentialUnavailableError(NonRetryableStepError):
    """The credential resolver could not produce a client for a connection."""


class InvalidStateError(StepflowError):
    """A control operation is not allowed in the execution's current state."""


class ConflictError(InvalidStateError):
    """The execution is terminal and accepts no further transitions."""


class NotFoundError(StepflowError):
    """The requested workflow or execution does not exist."""


class StoreConsistencyError(StepflowError):
    """A conditional write lost a race against a concurrent update."""


class InvariantViolation(RuntimeError):
    """Programming error in the coordinator. Never retried."""
