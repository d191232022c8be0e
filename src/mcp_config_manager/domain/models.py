"""Server aggregate, its inputs, and the query value types."""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .exceptions import InvalidValueError
from .status import (
    IdleStatus,
    ServerStatus,
    StatusKind,
    ensure_transition,
    status_from_dict,
    status_to_dict,
)
from .values import (
    Command,
    EnvironmentKey,
    ServerId,
    ServerName,
    parse_timestamp,
    utc_now,
)


def normalize_tags(tags: Iterable[str]) -> Tuple[str, ...]:
    """Tags are a set; keep them sorted and de-duplicated for stable output."""
    return tuple(sorted({str(tag).strip() for tag in tags if str(tag).strip()}))


@dataclass(frozen=True)
class ServerConfiguration:
    """How the server process is launched."""

    command: Command
    args: Tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)
    working_directory: Optional[str] = None
    timeout_ms: Optional[int] = None
    retry_limit: Optional[int] = None
    auto_restart: bool = False

    def __post_init__(self):
        # Read-only view over a private copy; stored servers are shared
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "command": str(self.command),
            "args": list(self.args),
            "environment": dict(self.environment),
            "auto_restart": self.auto_restart,
        }
        if self.working_directory is not None:
            payload["working_directory"] = self.working_directory
        if self.timeout_ms is not None:
            payload["timeout_ms"] = self.timeout_ms
        if self.retry_limit is not None:
            payload["retry_limit"] = self.retry_limit
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfiguration":
        return cls(
            command=Command(data["command"]),
            args=tuple(str(arg) for arg in data.get("args") or ()),
            environment={
                EnvironmentKey(k): str(v) for k, v in (data.get("environment") or {}).items()
            },
            working_directory=data.get("working_directory"),
            timeout_ms=data.get("timeout_ms"),
            retry_limit=data.get("retry_limit"),
            auto_restart=bool(data.get("auto_restart", False)),
        )


@dataclass(frozen=True)
class HealthCheckSettings:
    enabled: bool = False
    interval_ms: int = 30_000
    timeout_ms: int = 5_000
    retries: int = 3
    endpoint: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "enabled": self.enabled,
            "interval_ms": self.interval_ms,
            "timeout_ms": self.timeout_ms,
            "retries": self.retries,
        }
        if self.endpoint:
            payload["endpoint"] = self.endpoint
        return payload

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "HealthCheckSettings":
        data = data or {}
        defaults = cls()
        return cls(
            enabled=bool(data.get("enabled", defaults.enabled)),
            interval_ms=int(data.get("interval_ms", defaults.interval_ms)),
            timeout_ms=int(data.get("timeout_ms", defaults.timeout_ms)),
            retries=int(data.get("retries", defaults.retries)),
            endpoint=data.get("endpoint"),
        )


@dataclass(frozen=True)
class ServerMetrics:
    uptime_ms: int = 0
    restart_count: int = 0
    last_restart: Optional[datetime] = None
    memory_usage_bytes: Optional[int] = None
    cpu_usage_percent: Optional[float] = None
    response_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "uptime_ms": self.uptime_ms,
            "restart_count": self.restart_count,
            "last_restart": self.last_restart.isoformat() if self.last_restart else None,
            "memory_usage_bytes": self.memory_usage_bytes,
            "cpu_usage_percent": self.cpu_usage_percent,
            "response_time_ms": self.response_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ServerMetrics":
        data = data or {}
        last_restart = data.get("last_restart")
        return cls(
            uptime_ms=int(data.get("uptime_ms", 0)),
            restart_count=int(data.get("restart_count", 0)),
            last_restart=parse_timestamp(last_restart) if last_restart else None,
            memory_usage_bytes=data.get("memory_usage_bytes"),
            cpu_usage_percent=data.get("cpu_usage_percent"),
            response_time_ms=data.get("response_time_ms"),
        )


@dataclass(frozen=True)
class CreateServerInput:
    """Unvalidated request to register a server."""

    name: str
    command: str
    args: Tuple[str, ...] = ()
    environment: Dict[str, str] = field(default_factory=dict)
    description: str = ""
    working_directory: Optional[str] = None
    timeout_ms: Optional[int] = None
    retry_limit: Optional[int] = None
    auto_restart: bool = False
    health_check: Optional[HealthCheckSettings] = None
    tags: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        payload = {f.name: getattr(self, f.name) for f in fields(self)}
        payload["args"] = list(self.args)
        payload["environment"] = dict(self.environment)
        payload["tags"] = list(self.tags)
        payload["health_check"] = self.health_check.to_dict() if self.health_check else None
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CreateServerInput":
        """Accept the flat form or an original-style nested ``configuration``."""
        config = data.get("configuration") or data
        health = data.get("health_check")
        return cls(
            name=data.get("name", ""),
            command=config.get("command", ""),
            args=tuple(config.get("args") or ()),
            environment=dict(config.get("environment") or config.get("env") or {}),
            description=data.get("description") or "",
            working_directory=config.get("working_directory"),
            timeout_ms=config.get("timeout_ms"),
            retry_limit=config.get("retry_limit"),
            auto_restart=bool(config.get("auto_restart", False)),
            health_check=HealthCheckSettings.from_dict(health) if health else None,
            tags=tuple(data.get("tags") or ()),
        )


@dataclass(frozen=True)
class UpdateServerInput:
    """Field-level update request; ``None`` leaves a field unchanged."""

    name: Optional[str] = None
    description: Optional[str] = None
    command: Optional[str] = None
    args: Optional[Tuple[str, ...]] = None
    environment: Optional[Dict[str, str]] = None
    working_directory: Optional[str] = None
    timeout_ms: Optional[int] = None
    retry_limit: Optional[int] = None
    auto_restart: Optional[bool] = None
    health_check: Optional[HealthCheckSettings] = None
    tags: Optional[Tuple[str, ...]] = None

    CONFIGURATION_FIELDS = (
        "command",
        "args",
        "environment",
        "working_directory",
        "timeout_ms",
        "retry_limit",
        "auto_restart",
    )

    def changes(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}

    def is_empty(self) -> bool:
        return not self.changes()

    def touches_configuration(self) -> bool:
        return any(key in self.CONFIGURATION_FIELDS for key in self.changes())

    def to_dict(self) -> Dict[str, Any]:
        payload = {}
        for key, value in self.changes().items():
            if isinstance(value, tuple):
                value = list(value)
            elif isinstance(value, HealthCheckSettings):
                value = value.to_dict()
            payload[key] = value
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UpdateServerInput":
        health = data.get("health_check")
        args = data.get("args")
        tags = data.get("tags")
        return cls(
            name=data.get("name"),
            description=data.get("description"),
            command=data.get("command"),
            args=tuple(args) if args is not None else None,
            environment=dict(data["environment"]) if data.get("environment") is not None else None,
            working_directory=data.get("working_directory"),
            timeout_ms=data.get("timeout_ms"),
            retry_limit=data.get("retry_limit"),
            auto_restart=data.get("auto_restart"),
            health_check=HealthCheckSettings.from_dict(health) if health else None,
            tags=tuple(tags) if tags is not None else None,
        )


@dataclass(frozen=True)
class ServerDelta:
    """Everything one version-checked write may change."""

    changes: UpdateServerInput = field(default_factory=UpdateServerInput)
    status: Optional[ServerStatus] = None
    metrics: Optional[ServerMetrics] = None

    @classmethod
    def of(cls, delta: Union["ServerDelta", UpdateServerInput]) -> "ServerDelta":
        if isinstance(delta, ServerDelta):
            return delta
        return cls(changes=delta)


@dataclass(frozen=True)
class Server:
    """MCP server aggregate root."""

    id: ServerId
    name: ServerName
    configuration: ServerConfiguration
    status: ServerStatus = field(default_factory=IdleStatus)
    description: str = ""
    health_check: HealthCheckSettings = field(default_factory=HealthCheckSettings)
    metrics: ServerMetrics = field(default_factory=ServerMetrics)
    tags: Tuple[str, ...] = ()
    version: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        data: CreateServerInput,
        server_id: Optional[ServerId] = None,
        status: Optional[ServerStatus] = None,
    ) -> "Server":
        """Build a version-1 server; value constructors raise on bad input."""
        now = utc_now()
        return cls(
            id=server_id or ServerId.generate(),
            name=ServerName(data.name),
            configuration=ServerConfiguration(
                command=Command(data.command),
                args=tuple(str(arg) for arg in data.args),
                environment={EnvironmentKey(k): str(v) for k, v in data.environment.items()},
                working_directory=data.working_directory,
                timeout_ms=data.timeout_ms,
                retry_limit=data.retry_limit,
                auto_restart=data.auto_restart,
            ),
            status=status or IdleStatus(since=now),
            description=data.description or "",
            health_check=data.health_check or HealthCheckSettings(),
            tags=normalize_tags(data.tags),
            version=1,
            created_at=now,
            updated_at=now,
        )

    def apply(self, delta: ServerDelta, now: Optional[datetime] = None) -> "Server":
        """Return the next version of this server with ``delta`` applied.

        Raises:
            InvalidTransitionError: if the delta's status is not reachable
            InvalidValueError: if a changed field fails its constructor
        """
        changes = delta.changes.changes()
        configuration = self.configuration
        config_changes = {}
        for key in UpdateServerInput.CONFIGURATION_FIELDS:
            if key not in changes:
                continue
            value = changes[key]
            if key == "command":
                value = Command(value)
            elif key == "args":
                value = tuple(str(arg) for arg in value)
            elif key == "environment":
                value = {EnvironmentKey(k): str(v) for k, v in value.items()}
            config_changes[key] = value
        if config_changes:
            configuration = replace(configuration, **config_changes)

        status = self.status
        if delta.status is not None:
            ensure_transition(self.status, delta.status)
            status = delta.status

        return replace(
            self,
            name=ServerName(changes["name"]) if "name" in changes else self.name,
            description=changes.get("description", self.description),
            configuration=configuration,
            health_check=changes.get("health_check", self.health_check),
            tags=normalize_tags(changes["tags"]) if "tags" in changes else self.tags,
            status=status,
            metrics=delta.metrics if delta.metrics is not None else self.metrics,
            version=self.version + 1,
            updated_at=now or utc_now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "name": str(self.name),
            "description": self.description,
            "configuration": self.configuration.to_dict(),
            "status": status_to_dict(self.status),
            "health_check": self.health_check.to_dict(),
            "metrics": self.metrics.to_dict(),
            "tags": list(self.tags),
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Server":
        try:
            return cls(
                id=ServerId(data["id"]),
                name=ServerName(data["name"]),
                description=data.get("description") or "",
                configuration=ServerConfiguration.from_dict(data["configuration"]),
                status=status_from_dict(data["status"]) if data.get("status") else IdleStatus(),
                health_check=HealthCheckSettings.from_dict(data.get("health_check")),
                metrics=ServerMetrics.from_dict(data.get("metrics")),
                tags=normalize_tags(data.get("tags") or ()),
                version=int(data.get("version", 1)),
                created_at=parse_timestamp(data["created_at"]) if data.get("created_at") else utc_now(),
                updated_at=parse_timestamp(data["updated_at"]) if data.get("updated_at") else utc_now(),
            )
        except KeyError as e:
            raise InvalidValueError(str(e.args[0]), "is required")


def is_server_healthy(server: Server) -> bool:
    """Coarse health verdict from status and last known metrics."""
    if server.status.kind not in (StatusKind.RUNNING, StatusKind.IDLE):
        return False
    metrics = server.metrics
    if metrics.restart_count > 5:
        return False
    if metrics.memory_usage_bytes and metrics.memory_usage_bytes > 1024 * 1024 * 1024:
        return False
    if metrics.cpu_usage_percent and metrics.cpu_usage_percent > 90:
        return False
    if server.health_check.enabled and metrics.response_time_ms is None:
        return False
    return True


class SortField(Enum):
    NAME = "name"
    CREATED_AT = "created_at"
    UPDATED_AT = "updated_at"
    STATUS = "status"


class SortOrder(Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class ServerSort:
    field: SortField = SortField.NAME
    order: SortOrder = SortOrder.ASC


@dataclass(frozen=True)
class ServerFilters:
    """Query filters; unset members do not constrain the result."""

    status: Optional[StatusKind] = None
    tags: Tuple[str, ...] = ()
    match_all: bool = False
    search: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    updated_after: Optional[datetime] = None
    updated_before: Optional[datetime] = None


@dataclass(frozen=True)
class Pagination:
    """1-indexed page window."""

    page: int = 1
    limit: int = 50

    def __post_init__(self):
        if self.page < 1:
            raise InvalidValueError("page", "must be at least 1", self.page)
        if self.limit < 1:
            raise InvalidValueError("limit", "must be at least 1", self.limit)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


@dataclass(frozen=True)
class QueryResult:
    servers: List[Server]
    total: int
    filters: ServerFilters
    sort: ServerSort
    pagination: Optional[Pagination] = None
