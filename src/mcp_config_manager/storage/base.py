"""Server repository contract and repository exceptions."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Dict, List, Optional, Sequence, Tuple, Union

from ..domain.events import ServerEvent
from ..domain.models import (
    CreateServerInput,
    Pagination,
    QueryResult,
    Server,
    ServerDelta,
    ServerFilters,
    ServerSort,
    UpdateServerInput,
)
from ..events.bus import StreamSubscription

SEARCH_FIELDS = ("name", "description", "tags")
EXPORT_FORMATS = ("json", "yaml", "csv")

DeltaLike = Union[ServerDelta, UpdateServerInput]


class RepositoryError(Exception):
    """Base exception for repository operations."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.details = details or {}
        self.cause = cause
        super().__init__(message)


class NotFoundError(RepositoryError):
    """Raised when a requested entity is not found."""

    def __init__(self, server_id: str):
        super().__init__(f"Server {server_id} not found", {"server_id": str(server_id)})
        self.server_id = server_id


class VersionConflictError(RepositoryError):
    """Raised when the stored version differs from the expected version."""

    def __init__(self, server_id: str, expected: Optional[int], actual: Optional[int]):
        super().__init__(
            f"Version conflict on server {server_id}: expected {expected}, found {actual}",
            {"server_id": str(server_id), "expected_version": expected, "actual_version": actual},
        )
        self.server_id = server_id
        self.expected = expected
        self.actual = actual


class ConflictError(RepositoryError):
    """Raised when an operation conflicts with existing data."""


class RepositoryTimeoutError(RepositoryError):
    """Raised when a storage operation exceeds its configured timeout."""

    def __init__(self, operation: str, timeout_ms: int):
        super().__init__(
            f"Repository operation '{operation}' timed out after {timeout_ms}ms",
            {"operation": operation, "timeout_ms": timeout_ms},
        )


@dataclass
class RepositoryOptions:
    """Factory inputs shared by every repository backend."""

    cache_size: int = 256
    cache_ttl_ms: int = 30_000
    enable_watchers: bool = True
    enable_events: bool = True
    enable_transactions: bool = True
    connection_timeout_ms: int = 5_000
    query_timeout_ms: int = 5_000
    retry_count: int = 3
    encryption_key: Optional[str] = None

    @classmethod
    def from_config(cls, config: Any) -> "RepositoryOptions":
        """Build options from a ``RepositoryConfig`` settings section."""
        return cls(
            cache_size=config.cache_size,
            cache_ttl_ms=config.cache_ttl_ms,
            enable_watchers=config.enable_watchers,
            enable_events=config.enable_events,
            enable_transactions=config.enable_transactions,
            connection_timeout_ms=config.connection_timeout_ms,
            query_timeout_ms=config.query_timeout_ms,
            retry_count=config.retry_count,
            encryption_key=config.encryption_key,
        )


@dataclass
class RepositoryHealth:
    is_healthy: bool
    latency_ms: float
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RepositoryStatistics:
    total_servers: int
    cache_hit_rate: float
    query_count: int
    average_query_time_ms: float


class ServerRepository(ABC):
    """Persistence contract for servers and their event log.

    ``update`` is a compare-and-swap on ``version``: when the stored version
    differs from ``expected_version`` it raises :class:`VersionConflictError`
    and nothing changes. It is the only concurrency control; no lock is held
    between calls.
    """

    @abstractmethod
    async def find_by_id(self, server_id: str) -> Optional[Server]:
        ...

    @abstractmethod
    async def find_many(
        self,
        filters: Optional[ServerFilters] = None,
        sort: Optional[ServerSort] = None,
        pagination: Optional[Pagination] = None,
    ) -> QueryResult:
        ...

    @abstractmethod
    async def find_all(self) -> List[Server]:
        ...

    @abstractmethod
    async def create(self, data: CreateServerInput) -> Server:
        ...

    @abstractmethod
    async def update(self, server_id: str, delta: DeltaLike, expected_version: int) -> Server:
        ...

    @abstractmethod
    async def delete(self, server_id: str) -> None:
        ...

    @abstractmethod
    async def exists(self, server_id: str) -> bool:
        ...

    @abstractmethod
    async def count(self, filters: Optional[ServerFilters] = None) -> int:
        ...

    @abstractmethod
    async def create_many(self, inputs: Sequence[CreateServerInput]) -> List[Server]:
        ...

    @abstractmethod
    async def update_many(self, updates: Sequence[Tuple[str, DeltaLike, int]]) -> List[Server]:
        ...

    @abstractmethod
    async def delete_many(self, server_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def search(
        self,
        text: str,
        fields: Sequence[str] = SEARCH_FIELDS,
        pagination: Optional[Pagination] = None,
    ) -> QueryResult:
        ...

    @abstractmethod
    async def get_events(self, server_id: str) -> List[ServerEvent]:
        ...

    @abstractmethod
    async def save_event(self, event: ServerEvent) -> None:
        ...

    @abstractmethod
    def watch_by_id(self, server_id: str) -> StreamSubscription[Optional[Server]]:
        ...

    @abstractmethod
    def watch_many(
        self, filters: Optional[ServerFilters] = None
    ) -> StreamSubscription[List[Server]]:
        ...

    @abstractmethod
    def watch_count(self, filters: Optional[ServerFilters] = None) -> StreamSubscription[int]:
        ...

    @property
    def supports_transactions(self) -> bool:
        return True

    @abstractmethod
    def transaction(self) -> AsyncContextManager["ServerRepository"]:
        """Scope whose writes through the yielded handle commit all-or-nothing."""

    @abstractmethod
    async def invalidate_cache(self, server_id: Optional[str] = None) -> None:
        ...

    @abstractmethod
    async def preload_cache(self, server_ids: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def export(self, filters: Optional[ServerFilters] = None, format: str = "json") -> str:
        ...

    @abstractmethod
    async def import_(
        self, data: str, format: str = "json", merge: bool = False, validate: bool = True
    ) -> List[Server]:
        ...

    @abstractmethod
    async def health_check(self) -> RepositoryHealth:
        ...

    @abstractmethod
    def statistics(self) -> RepositoryStatistics:
        ...
