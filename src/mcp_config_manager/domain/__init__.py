"""Server domain model: value types, status machine, aggregate and events."""

from .events import EventType, ServerEvent
from .exceptions import (
    AlreadyRunningError,
    DomainError,
    InvalidTransitionError,
    InvalidValueError,
    NotRunningError,
    RetryExhaustedError,
    ValidationFailedError,
)
from .models import (
    CreateServerInput,
    HealthCheckSettings,
    Pagination,
    QueryResult,
    Server,
    ServerConfiguration,
    ServerDelta,
    ServerFilters,
    ServerMetrics,
    ServerSort,
    SortField,
    SortOrder,
    UpdateServerInput,
    is_server_healthy,
)
from .status import (
    ErrorInfo,
    ErrorStatus,
    IdleStatus,
    RunningStatus,
    ServerStatus,
    StatusKind,
    StoppedStatus,
    UpdatingStatus,
    status_text,
)
from .validation import ServerValidator, ValidationReport
from .values import Command, Port, ServerId, ServerName

__all__ = [
    "AlreadyRunningError",
    "Command",
    "CreateServerInput",
    "DomainError",
    "ErrorInfo",
    "ErrorStatus",
    "EventType",
    "HealthCheckSettings",
    "IdleStatus",
    "InvalidTransitionError",
    "InvalidValueError",
    "NotRunningError",
    "Pagination",
    "Port",
    "QueryResult",
    "RetryExhaustedError",
    "RunningStatus",
    "Server",
    "ServerConfiguration",
    "ServerDelta",
    "ServerEvent",
    "ServerFilters",
    "ServerId",
    "ServerMetrics",
    "ServerName",
    "ServerSort",
    "ServerStatus",
    "ServerValidator",
    "SortField",
    "SortOrder",
    "StatusKind",
    "StoppedStatus",
    "UpdateServerInput",
    "UpdatingStatus",
    "ValidationFailedError",
    "ValidationReport",
    "is_server_healthy",
    "status_text",
]
