"""Typed success/failure results returned across the service boundary."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, Tuple, TypeVar

from ..domain.exceptions import DomainError, ValidationFailedError
from ..management.process_manager import ProcessError, ProcessStopError
from ..storage.base import NotFoundError, RepositoryError, VersionConflictError
from ..storage.serialization import SerializationError

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Stable error codes surfaced to CLI and API callers."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    DUPLICATE_NAME = "DUPLICATE_NAME"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ALREADY_RUNNING = "ALREADY_RUNNING"
    NOT_RUNNING = "NOT_RUNNING"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    START_ERROR = "START_ERROR"
    STOP_ERROR = "STOP_ERROR"
    REPOSITORY_ERROR = "REPOSITORY_ERROR"
    CONFIG_IO_ERROR = "CONFIG_IO_ERROR"


@dataclass
class ServiceError:
    code: ErrorCode
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    cause: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            payload["details"] = self.details
        if self.cause is not None:
            payload["cause"] = f"{type(self.cause).__name__}: {self.cause}"
        return payload


class ServiceResultError(Exception):
    """Raised by :meth:`ServiceResult.unwrap` on a failed result."""

    def __init__(self, error: ServiceError):
        self.error = error
        super().__init__(f"{error.code.value}: {error.message}")


@dataclass
class ServiceResult(Generic[T]):
    ok: bool
    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def success(cls, value: T = None) -> "ServiceResult[T]":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: ServiceError) -> "ServiceResult[T]":
        return cls(ok=False, error=error)

    def unwrap(self) -> T:
        if not self.ok:
            raise ServiceResultError(self.error)
        return self.value


@dataclass
class BatchOutcome(Generic[T]):
    """Per-member results of a batch; members succeed or fail independently."""

    succeeded: List[T] = field(default_factory=list)
    failed: List[Tuple[Any, ServiceError]] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


def error_from_exception(
    exc: BaseException, operation: str, server_id: Optional[str] = None
) -> ServiceError:
    """Translate a lower-layer exception into a :class:`ServiceError`."""
    details: Dict[str, Any] = {"operation": operation}
    if server_id is not None:
        details["server_id"] = str(server_id)

    if isinstance(exc, ValidationFailedError):
        details["errors"] = exc.errors
        return ServiceError(ErrorCode.VALIDATION_ERROR, exc.message, details, exc)
    if isinstance(exc, DomainError):
        details.update(exc.details)
        if exc.code == ErrorCode.VALIDATION_ERROR.value:
            details.setdefault("errors", [exc.message])
        code = exc.code if exc.code in ErrorCode.__members__ else ErrorCode.VALIDATION_ERROR.value
        return ServiceError(ErrorCode(code), exc.message, details, exc)
    if isinstance(exc, NotFoundError):
        return ServiceError(ErrorCode.NOT_FOUND, exc.message, details, exc)
    if isinstance(exc, VersionConflictError):
        details.update(
            {"expected_version": exc.expected, "actual_version": exc.actual}
        )
        return ServiceError(
            ErrorCode.CONCURRENT_MODIFICATION,
            "Server was modified concurrently; re-fetch and retry",
            details,
            exc,
        )
    if isinstance(exc, RepositoryError):
        details.update(exc.details)
        return ServiceError(ErrorCode.REPOSITORY_ERROR, exc.message, details, exc)
    if isinstance(exc, ProcessStopError):
        return ServiceError(ErrorCode.STOP_ERROR, exc.message, details, exc)
    if isinstance(exc, ProcessError):
        return ServiceError(ErrorCode.START_ERROR, exc.message, details, exc)
    if isinstance(exc, SerializationError):
        details["errors"] = [str(exc)]
        return ServiceError(ErrorCode.VALIDATION_ERROR, str(exc), details, exc)

    code = getattr(exc, "code", None)
    if code in ErrorCode.__members__:
        return ServiceError(ErrorCode(code), getattr(exc, "message", str(exc)), details, exc)
    raise TypeError(f"No service error mapping for {type(exc).__name__}") from exc
