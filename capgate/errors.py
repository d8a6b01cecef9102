"""
Error taxonomy.

Every error carries a stable ``code`` so that failures crossing the gateway
boundary can be reported as data (``OperationResult.error_code``) instead of
raised.
"""

from typing import Optional


class CapgateError(Exception):
    """Base class for all capgate errors."""

    code = "CAPGATE_ERROR"


class ValidationError(CapgateError):
    """Malformed input or out-of-range value."""

    code = "VALIDATION_ERROR"


class InvalidOperationSchema(ValidationError):
    """Unknown operation or parameters that do not match its schema."""

    code = "INVALID_OPERATION_SCHEMA"


class AuthorizationError(CapgateError):
    """Missing, expired or mismatched grant, or operation outside the grant."""

    code = "AUTHORIZATION_ERROR"


class PolicyViolation(CapgateError):
    """Command or repository denied by the command policy."""

    code = "POLICY_VIOLATION"


class BackendError(CapgateError):
    """Compute backend failure."""

    code = "BACKEND_ERROR"


class OperationTimeoutError(CapgateError, TimeoutError):
    """A backend call exceeded its timeout."""

    code = "TIMEOUT"


class WorkflowStepError(CapgateError):
    """A workflow step handler failed."""

    code = "WORKFLOW_STEP_ERROR"

    def __init__(self, message: str, step_id: Optional[str] = None):
        super().__init__(message)
        self.step_id = step_id


class WorkflowNotFoundError(CapgateError):
    """Raised when a workflow id is unknown."""

    code = "WORKFLOW_NOT_FOUND"


class WorkflowStateError(CapgateError):
    """Raised when a workflow transition is not allowed from its current state."""

    code = "WORKFLOW_STATE_ERROR"


class RetryExhaustedError(CapgateError):
    """All retry attempts failed."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, message: str, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error
