"""Service layer: server use cases and their result types."""

from .results import (
    BatchOutcome,
    ErrorCode,
    ServiceError,
    ServiceResult,
    ServiceResultError,
    error_from_exception,
)
from .server_service import ServerService

__all__ = [
    "BatchOutcome",
    "ErrorCode",
    "ServerService",
    "ServiceError",
    "ServiceResult",
    "ServiceResultError",
    "error_from_exception",
]
