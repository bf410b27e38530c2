"""Error taxonomy for the Refinery transformation engine."""

from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Error categories for better handling."""

    VALIDATION = "validation"
    STATE = "state"
    NOT_FOUND = "not_found"
    NETWORK = "network"
    API = "api"
    DATABASE = "database"
    SANDBOX = "sandbox"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class RefineryError(Exception):
    """Base exception class for Refinery with category and severity."""

    default_category = ErrorCategory.UNKNOWN
    default_severity = ErrorSeverity.MEDIUM

    def __init__(
        self,
        message: str,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
        original_error: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.severity = severity or self.default_severity
        self.original_error = original_error

        # Auto-classify error if not provided
        if self.category == ErrorCategory.UNKNOWN and original_error:
            self.category = self._classify_error(original_error)

    def _classify_error(self, error: Exception) -> ErrorCategory:
        """Automatically classify error based on type and message."""
        error_str = str(error).lower()
        error_type = type(error).__name__.lower()

        if "timeout" in error_str or error_type in ("timeouterror", "apitimeouterror"):
            return ErrorCategory.TIMEOUT
        elif "network" in error_str or "connection" in error_str:
            return ErrorCategory.NETWORK
        elif (
            "api" in error_str
            or "http" in error_str
            or error_type in ["httperror", "apierror", "apistatuserror"]
        ):
            return ErrorCategory.API
        elif "database" in error_str or error_type == "databaseerror":
            return ErrorCategory.DATABASE
        else:
            return ErrorCategory.UNKNOWN

    def get_user_message(self) -> str:
        """Get user-friendly error message."""
        base_message = self.message

        if self.category == ErrorCategory.VALIDATION:
            return f"Validation error: {base_message}"
        elif self.category == ErrorCategory.STATE:
            return f"Invalid operation: {base_message}"
        elif self.category == ErrorCategory.NOT_FOUND:
            return f"Not found: {base_message}"
        elif self.category in (ErrorCategory.NETWORK, ErrorCategory.API):
            return (
                f"Service error: {base_message}\n"
                "Check your API credentials and network connection."
            )
        elif self.category == ErrorCategory.TIMEOUT:
            return f"Operation timed out: {base_message}"
        else:
            return f"Error: {base_message}"


class ValidationError(RefineryError):
    """A request or operation input is missing or malformed."""

    default_category = ErrorCategory.VALIDATION
    default_severity = ErrorSeverity.LOW


class MissingReviewerError(ValidationError):
    """An approval decision was submitted without a reviewer."""


class MissingReasonError(ValidationError):
    """A rejection was submitted without a reason."""


class PlanNotFoundError(RefineryError):
    """No plan exists with the requested id."""

    default_category = ErrorCategory.NOT_FOUND
    default_severity = ErrorSeverity.LOW


class InvalidStateTransitionError(RefineryError):
    """Operation attempted from a plan status that does not allow it."""

    default_category = ErrorCategory.STATE
    default_severity = ErrorSeverity.LOW

    def __init__(
        self,
        plan_id: str,
        current_status: str | None,
        operation: str,
        allowed: tuple[str, ...] = (),
    ):
        expected = f" (requires {', '.join(allowed)})" if allowed else ""
        super().__init__(
            f"Cannot {operation} plan {plan_id} in status "
            f"'{current_status}'{expected}"
        )
        self.plan_id = plan_id
        self.current_status = current_status
        self.operation = operation
        self.allowed = allowed


class StaleCodeError(RefineryError):
    """The plan's code no longer matches the iteration that passed evaluation."""

    default_category = ErrorCategory.STATE
    default_severity = ErrorSeverity.HIGH


class InfrastructureError(RefineryError):
    """An oracle, the sandbox launcher or storage could not be reached."""

    default_severity = ErrorSeverity.HIGH


class StepFailedError(InfrastructureError):
    """A workflow step kept failing after all retries."""

    def __init__(self, step_name: str, attempts: int, last_error: Exception):
        super().__init__(
            f"Step '{step_name}' failed after {attempts} attempts: {last_error}",
            original_error=last_error,
        )
        self.step_name = step_name
        self.attempts = attempts


class ExecutionFailure(RefineryError):
    """Generated code failed inside the sandbox."""

    default_category = ErrorCategory.SANDBOX


class EvaluationParseFailure(RefineryError):
    """The evaluation oracle returned text that could not be parsed."""

    default_severity = ErrorSeverity.LOW
