"""Domain-level exceptions raised by value constructors and the status machine."""

from typing import Any, Dict, List, Optional


class DomainError(Exception):
    """Base class for domain rule violations."""

    code = "DOMAIN_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidValueError(DomainError, ValueError):
    """A value failed its smart-constructor check."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str, value: Any = None):
        details: Dict[str, Any] = {"field": field}
        if value is not None:
            details["value"] = str(value)
        super().__init__(f"Invalid {field}: {message}", details)
        self.field = field


class ValidationFailedError(DomainError):
    """One or more validation rules failed; carries every violation."""

    code = "VALIDATION_ERROR"

    def __init__(self, errors: List[str]):
        super().__init__("Server validation failed", {"errors": list(errors)})
        self.errors = list(errors)


class InvalidTransitionError(DomainError):
    """Requested lifecycle transition is illegal from the current status."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot transition from '{current}' to '{target}'",
            {"current": current, "target": target},
        )
        self.current = current
        self.target = target


class AlreadyRunningError(InvalidTransitionError):
    """Start requested for a server that is already running."""

    code = "ALREADY_RUNNING"

    def __init__(self):
        super().__init__("running", "running", "Server is already running")


class NotRunningError(InvalidTransitionError):
    """Stop requested for a server that is not running."""

    code = "NOT_RUNNING"

    def __init__(self, current: str):
        super().__init__(current, "stopped", f"Server is not running (status: {current})")


class RetryExhaustedError(InvalidTransitionError):
    """Start rejected because the error retry limit has been exceeded."""

    code = "RETRY_EXHAUSTED"

    def __init__(self, retry_count: int, retry_limit: int):
        super().__init__(
            "error",
            "running",
            f"Retry limit exhausted ({retry_count} failures, limit {retry_limit})",
        )
        self.details.update({"retry_count": retry_count, "retry_limit": retry_limit})
