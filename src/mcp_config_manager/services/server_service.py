"""Server use cases: validation, lifecycle orchestration and event emission.

Every public coroutine returns a :class:`ServiceResult`. Lower layers raise
typed exceptions; they are translated here into the stable error taxonomy
with the operation name and server id attached.
"""

import asyncio
import json
from dataclasses import replace
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
    Union,
)

from ..config.logging import get_logger, sanitize_log_data
from ..config.settings import ServiceConfig
from ..domain.events import EventType, ServerEvent
from ..domain.exceptions import DomainError, NotRunningError, ValidationFailedError
from ..domain.models import (
    CreateServerInput,
    Pagination,
    QueryResult,
    Server,
    ServerDelta,
    ServerFilters,
    ServerMetrics,
    ServerSort,
    UpdateServerInput,
)
from ..domain.status import (
    ErrorInfo,
    ServerStatus,
    StatusKind,
    begin_update,
    calculate_uptime_ms,
    complete_update,
    ensure_can_start,
    process_exited,
    start_failed,
    start_succeeded,
    stop_succeeded,
)
from ..domain.validation import ServerValidator, ValidationReport
from ..domain.values import utc_now
from ..events.bus import EventBus, StreamSubscription
from ..management.health import HealthChecker, HealthReport
from ..management.process_manager import ProcessError, ProcessManager
from ..storage.base import NotFoundError, RepositoryError, ServerRepository
from ..storage.serialization import SerializationError, load_records
from .results import (
    BatchOutcome,
    ErrorCode,
    ServiceError,
    ServiceResult,
    error_from_exception,
)

logger = get_logger(__name__)

T = TypeVar("T")

# Failures the service translates into results; anything else is a bug
SERVICE_ERRORS = (DomainError, RepositoryError, ProcessError, SerializationError)

CreateLike = Union[CreateServerInput, Dict[str, Any]]
UpdateLike = Union[UpdateServerInput, Dict[str, Any]]
WriteAction = Callable[[ServerRepository], Awaitable[Tuple[T, List[ServerEvent]]]]


class ServerService:
    """Orchestrates repository, process manager, validator and event bus."""

    def __init__(
        self,
        repository: ServerRepository,
        process_manager: ProcessManager,
        event_bus: Optional[EventBus] = None,
        validator: Optional[ServerValidator] = None,
        health_checker: Optional[HealthChecker] = None,
        config: Optional[ServiceConfig] = None,
    ):
        self.repository = repository
        self.process_manager = process_manager
        self.event_bus = event_bus or EventBus()
        self.validator = validator or ServerValidator()
        self.health_checker = health_checker or HealthChecker()
        self.config = config or ServiceConfig()

        process_manager.on_exit(self.handle_process_exit)

    # Queries

    async def get_server(self, server_id: str) -> ServiceResult[Server]:
        try:
            return ServiceResult.success(await self._require(server_id))
        except SERVICE_ERRORS as e:
            return self._fail("get_server", e, server_id)

    async def get_servers(
        self,
        filters: Optional[ServerFilters] = None,
        sort: Optional[ServerSort] = None,
        pagination: Optional[Pagination] = None,
    ) -> ServiceResult[QueryResult]:
        try:
            return ServiceResult.success(
                await self.repository.find_many(filters, sort, pagination)
            )
        except SERVICE_ERRORS as e:
            return self._fail("get_servers", e)

    async def get_server_status(self, server_id: str) -> ServiceResult[ServerStatus]:
        try:
            server = await self._require(server_id)
            return ServiceResult.success(server.status)
        except SERVICE_ERRORS as e:
            return self._fail("get_server_status", e, server_id)

    async def search_servers(
        self, query: str, pagination: Optional[Pagination] = None
    ) -> ServiceResult[QueryResult]:
        try:
            return ServiceResult.success(
                await self.repository.search(query, pagination=pagination)
            )
        except SERVICE_ERRORS as e:
            return self._fail("search_servers", e)

    async def get_servers_by_tag(
        self, tags: Iterable[str], match_all: bool = False
    ) -> ServiceResult[List[Server]]:
        try:
            result = await self.repository.find_many(
                ServerFilters(tags=tuple(tags), match_all=match_all)
            )
            return ServiceResult.success(result.servers)
        except SERVICE_ERRORS as e:
            return self._fail("get_servers_by_tag", e)

    async def get_servers_by_status(
        self, status: Union[StatusKind, str]
    ) -> ServiceResult[List[Server]]:
        try:
            kind = status if isinstance(status, StatusKind) else StatusKind(status)
        except ValueError:
            return ServiceResult.failure(
                ServiceError(
                    ErrorCode.VALIDATION_ERROR,
                    f"Unknown status '{status}'",
                    {"operation": "get_servers_by_status", "errors": [f"Unknown status '{status}'"]},
                )
            )
        try:
            result = await self.repository.find_many(ServerFilters(status=kind))
            return ServiceResult.success(result.servers)
        except SERVICE_ERRORS as e:
            return self._fail("get_servers_by_status", e)

    async def validate_server(self, data: CreateLike) -> ServiceResult[ValidationReport]:
        """Report every violation in ``data`` without creating anything."""
        return ServiceResult.success(
            await self.validator.validate_create_input(_as_create_input(data))
        )

    # Create / update / delete

    async def create_server(self, data: CreateLike) -> ServiceResult[Server]:
        data = _as_create_input(data)
        logger.info("Creating server", input=sanitize_log_data(data.to_dict()))
        try:
            report = await self.validator.validate_create_input(data)
            if not report.is_valid:
                raise ValidationFailedError(report.errors)

            conflict = await self._find_name_conflict(data.name)
            if conflict is not None:
                return self._duplicate_name("create_server", data.name, conflict.id)

            async def write(repo: ServerRepository):
                server = await repo.create(data)
                return server, [ServerEvent.created(server.id, data.to_dict(), server.version)]

            server = await self._write(write)
        except SERVICE_ERRORS as e:
            return self._fail("create_server", e)

        logger.info("Server created", server_id=server.id, name=str(server.name))
        return ServiceResult.success(server)

    async def update_server(
        self,
        server_id: str,
        data: UpdateLike,
        expected_version: Optional[int] = None,
    ) -> ServiceResult[Server]:
        """Apply a field update as one version-checked write.

        Without ``expected_version`` the version read at the start of the
        call is used; a concurrent writer still causes a conflict.
        """
        data = _as_update_input(data)
        try:
            current = await self._require(server_id)
            report = await self.validator.validate_update_input(data)
            if not report.is_valid:
                raise ValidationFailedError(report.errors)

            if data.name is not None and data.name.strip() != current.name:
                conflict = await self._find_name_conflict(data.name, exclude_id=current.id)
                if conflict is not None:
                    return self._duplicate_name("update_server", data.name, conflict.id)

            version = current.version if expected_version is None else expected_version

            async def write(repo: ServerRepository):
                server = await repo.update(current.id, data, version)
                return server, [ServerEvent.updated(server.id, data.to_dict(), server.version)]

            server = await self._write(write)
        except SERVICE_ERRORS as e:
            return self._fail("update_server", e, server_id)

        logger.info("Server updated", server_id=server.id, version=server.version)
        return ServiceResult.success(server)

    async def reconfigure_server(
        self, server_id: str, data: UpdateLike
    ) -> ServiceResult[Server]:
        """Configuration update passing through ``updating``.

        The first write records ``updating``; the second applies the changes
        and returns to the prior status. If the second write fails the prior
        status is restored.
        """
        data = _as_update_input(data)
        try:
            current = await self._require(server_id)
            report = await self.validator.validate_update_input(data)
            if not report.is_valid:
                raise ValidationFailedError(report.errors)
            if data.name is not None and data.name.strip() != current.name:
                conflict = await self._find_name_conflict(data.name, exclude_id=current.id)
                if conflict is not None:
                    return self._duplicate_name("reconfigure_server", data.name, conflict.id)

            updating = await self.repository.update(
                current.id, ServerDelta(status=begin_update(current.status)), current.version
            )
        except SERVICE_ERRORS as e:
            return self._fail("reconfigure_server", e, server_id)

        try:

            async def write(repo: ServerRepository):
                server = await repo.update(
                    updating.id,
                    ServerDelta(changes=data, status=complete_update(updating.status)),
                    updating.version,
                )
                return server, [ServerEvent.updated(server.id, data.to_dict(), server.version)]

            server = await self._write(write)
        except SERVICE_ERRORS as e:
            await self._restore_after_failed_update(updating)
            return self._fail("reconfigure_server", e, server_id)

        logger.info("Server reconfigured", server_id=server.id, version=server.version)
        return ServiceResult.success(server)

    async def delete_server(self, server_id: str) -> ServiceResult[None]:
        """Delete a server, stopping it first if it is running.

        A failed stop is logged and recorded as an error event; the delete
        proceeds regardless.
        """
        try:
            current = await self._require(server_id)
            if current.status.kind is StatusKind.RUNNING:
                stop_result = await self.stop_server(current.id, reason="deleted")
                if not stop_result.ok:
                    logger.warning(
                        "Failed to stop server before delete, deleting anyway",
                        server_id=current.id,
                        error=stop_result.error.message,
                    )

            async def write(repo: ServerRepository):
                await repo.delete(current.id)
                return None, [ServerEvent.deleted(current.id)]

            await self._write(write)
        except SERVICE_ERRORS as e:
            return self._fail("delete_server", e, server_id)

        logger.info("Server deleted", server_id=current.id)
        return ServiceResult.success(None)

    # Lifecycle

    async def start_server(self, server_id: str) -> ServiceResult[Server]:
        return await self._start("start_server", server_id, restarted=False)

    async def stop_server(
        self, server_id: str, reason: Optional[str] = None
    ) -> ServiceResult[Server]:
        try:
            current = await self._require(server_id)
            if current.status.kind is not StatusKind.RUNNING:
                raise NotRunningError(current.status.kind.value)
        except SERVICE_ERRORS as e:
            return self._fail("stop_server", e, server_id)

        try:
            await self.process_manager.stop(current.id)
        except ProcessError as e:
            # Status stays running; the failure is recorded as an event only
            error = ErrorInfo(code=ErrorCode.STOP_ERROR.value, message=e.message)
            await self._record_quietly(ServerEvent.error_occurred(current.id, error, current.version))
            return self._fail("stop_server", e, server_id)

        metrics = replace(current.metrics, uptime_ms=calculate_uptime_ms(current.status))
        try:

            async def write(repo: ServerRepository):
                server = await repo.update(
                    current.id,
                    ServerDelta(status=stop_succeeded(current.status, reason), metrics=metrics),
                    current.version,
                )
                return server, [ServerEvent.stopped(server.id, reason, server.version)]

            server = await self._write(write)
        except SERVICE_ERRORS as e:
            return self._fail("stop_server", e, server_id)

        logger.info("Server stopped", server_id=server.id, reason=reason)
        return ServiceResult.success(server)

    async def restart_server(self, server_id: str) -> ServiceResult[Server]:
        """Stop (best effort), wait ``restart_settle_delay``, then start.

        The two steps are not atomic: a failed start after a successful stop
        leaves the server stopped. The start's result is returned.
        """
        try:
            current = await self._require(server_id)
        except SERVICE_ERRORS as e:
            return self._fail("restart_server", e, server_id)

        if current.status.kind is StatusKind.RUNNING:
            stop_result = await self.stop_server(current.id, reason="restart")
            if not stop_result.ok:
                logger.warning(
                    "Stop failed during restart, starting anyway",
                    server_id=current.id,
                    error=stop_result.error.message,
                )

        await asyncio.sleep(self.config.restart_settle_delay)
        return await self._start("restart_server", current.id, restarted=True)

    async def handle_process_exit(
        self, server_id: str, exit_code: Optional[int] = None
    ) -> ServiceResult[Server]:
        """Record an unexpected process exit and auto-restart when configured."""
        try:
            current = await self._require(server_id)
            if current.status.kind is not StatusKind.RUNNING:
                logger.debug(
                    "Ignoring exit of server that is not running",
                    server_id=current.id,
                    status=current.status.kind.value,
                )
                return ServiceResult.success(current)

            error = ErrorInfo(
                code="PROCESS_EXITED",
                message=f"Process exited unexpectedly with code {exit_code}",
            )
            metrics = replace(current.metrics, uptime_ms=calculate_uptime_ms(current.status))

            async def write(repo: ServerRepository):
                server = await repo.update(
                    current.id,
                    ServerDelta(status=process_exited(current.status, error), metrics=metrics),
                    current.version,
                )
                return server, [ServerEvent.error_occurred(server.id, error, server.version)]

            server = await self._write(write)
        except SERVICE_ERRORS as e:
            return self._fail("handle_process_exit", e, server_id)

        logger.warning("Server process exited", server_id=server.id, exit_code=exit_code)
        if server.configuration.auto_restart:
            logger.info("Auto-restarting server", server_id=server.id)
            return await self._start("handle_process_exit", server.id, restarted=True)
        return ServiceResult.success(server)

    async def _start(self, operation: str, server_id: str, restarted: bool) -> ServiceResult[Server]:
        try:
            current = await self._require(server_id)
            ensure_can_start(current.status, current.configuration.retry_limit)
        except SERVICE_ERRORS as e:
            return self._fail(operation, e, server_id)

        try:
            info = await self.process_manager.start(current)
        except ProcessError as e:
            await self._record_start_failure(current, e)
            return self._fail(operation, e, server_id)

        metrics = current.metrics
        if restarted:
            metrics = replace(
                metrics, restart_count=metrics.restart_count + 1, last_restart=utc_now()
            )
        try:

            async def write(repo: ServerRepository):
                server = await repo.update(
                    current.id,
                    ServerDelta(
                        status=start_succeeded(current.status, info.pid, info.port),
                        metrics=metrics,
                    ),
                    current.version,
                )
                return server, [
                    ServerEvent.started(server.id, info.pid, server.version, info.port)
                ]

            server = await self._write(write)
        except SERVICE_ERRORS as e:
            # The process runs but its status could not be recorded
            logger.error(
                "Failed to record server start, stopping process",
                server_id=current.id,
                error=str(e),
            )
            try:
                await self.process_manager.stop(current.id)
            except ProcessError as stop_error:
                logger.error(
                    "Failed to stop unrecorded process",
                    server_id=current.id,
                    error=stop_error.message,
                )
            return self._fail(operation, e, server_id)

        logger.info("Server started", server_id=server.id, pid=info.pid)
        return ServiceResult.success(server)

    async def _record_start_failure(self, current: Server, cause: ProcessError) -> None:
        error = ErrorInfo(code=ErrorCode.START_ERROR.value, message=cause.message)

        async def write(repo: ServerRepository):
            server = await repo.update(
                current.id, ServerDelta(status=start_failed(current.status, error)), current.version
            )
            return server, [ServerEvent.error_occurred(server.id, error, server.version)]

        try:
            await self._write(write)
        except SERVICE_ERRORS as e:
            logger.error("Failed to record start failure", server_id=current.id, error=str(e))

    async def _restore_after_failed_update(self, updating: Server) -> None:
        try:
            latest = await self.repository.find_by_id(updating.id)
            if latest is None or latest.status.kind is not StatusKind.UPDATING:
                return
            await self.repository.update(
                latest.id, ServerDelta(status=complete_update(latest.status)), latest.version
            )
            logger.warning("Restored status after failed update", server_id=latest.id)
        except SERVICE_ERRORS as e:
            logger.error(
                "Failed to restore status after failed update",
                server_id=updating.id,
                error=str(e),
            )

    # Batch operations

    async def create_servers(self, inputs: Sequence[CreateLike]) -> BatchOutcome[Server]:
        outcome: BatchOutcome[Server] = BatchOutcome()
        for index, data in enumerate(inputs):
            result = await self.create_server(data)
            if result.ok:
                outcome.succeeded.append(result.value)
            else:
                outcome.failed.append((index, result.error))
        return outcome

    async def update_servers(
        self, updates: Sequence[Tuple[str, UpdateLike]]
    ) -> BatchOutcome[Server]:
        outcome: BatchOutcome[Server] = BatchOutcome()
        for server_id, data in updates:
            result = await self.update_server(server_id, data)
            if result.ok:
                outcome.succeeded.append(result.value)
            else:
                outcome.failed.append((server_id, result.error))
        return outcome

    async def delete_servers(self, server_ids: Sequence[str]) -> BatchOutcome[str]:
        outcome: BatchOutcome[str] = BatchOutcome()
        for server_id in server_ids:
            result = await self.delete_server(server_id)
            if result.ok:
                outcome.succeeded.append(server_id)
            else:
                outcome.failed.append((server_id, result.error))
        return outcome

    # Events and watches

    async def get_server_events(self, server_id: str) -> ServiceResult[List[ServerEvent]]:
        """Event history; still readable after the server is deleted."""
        try:
            return ServiceResult.success(await self.repository.get_events(server_id))
        except SERVICE_ERRORS as e:
            return self._fail("get_server_events", e, server_id)

    def watch_server_events(
        self,
        server_id: Optional[str] = None,
        event_types: Optional[Set[EventType]] = None,
    ) -> ServiceResult[StreamSubscription[ServerEvent]]:
        return ServiceResult.success(self.event_bus.stream(server_id, event_types))

    def watch_server(self, server_id: str) -> ServiceResult[StreamSubscription]:
        try:
            return ServiceResult.success(self.repository.watch_by_id(server_id))
        except SERVICE_ERRORS as e:
            return self._fail("watch_server", e, server_id)

    def watch_servers(
        self, filters: Optional[ServerFilters] = None
    ) -> ServiceResult[StreamSubscription]:
        try:
            return ServiceResult.success(self.repository.watch_many(filters))
        except SERVICE_ERRORS as e:
            return self._fail("watch_servers", e)

    # Import / export / backup

    async def export_servers(
        self, filters: Optional[ServerFilters] = None, format: str = "json"
    ) -> ServiceResult[str]:
        try:
            return ServiceResult.success(await self.repository.export(filters, format))
        except SERVICE_ERRORS as e:
            return self._fail("export_servers", e)

    async def import_servers(
        self,
        data: str,
        format: str = "json",
        merge: bool = False,
        validate: bool = True,
    ) -> ServiceResult[List[Server]]:
        """Import an export payload, keeping server names unique."""
        try:
            records = load_records(data, format)
            existing = await self.repository.find_all()
            owners = {str(server.name): str(server.id) for server in existing}
            seen: Dict[str, Optional[str]] = {}
            for record in records:
                name = str(record.get("name") or "").strip()
                record_id = str(record.get("id") or "").lower() or None
                if name in seen:
                    return self._duplicate_name("import_servers", name, None)
                seen[name] = record_id
                owner = owners.get(name)
                if owner is not None and not (merge and owner == record_id):
                    return self._duplicate_name("import_servers", name, owner)

            known_ids = {str(server.id) for server in existing}
            servers = await self.repository.import_(data, format, merge=merge, validate=validate)
        except SERVICE_ERRORS as e:
            return self._fail("import_servers", e)

        for server in servers:
            if str(server.id) in known_ids:
                event = ServerEvent.updated(server.id, server.to_dict(), server.version)
            else:
                event = ServerEvent.created(server.id, server.to_dict(), server.version)
            await self._record_quietly(event)

        logger.info("Servers imported", count=len(servers), format=format)
        return ServiceResult.success(servers)

    async def backup_server(self, server_id: str) -> ServiceResult[str]:
        try:
            server = await self._require(server_id)
        except SERVICE_ERRORS as e:
            return self._fail("backup_server", e, server_id)
        payload = server.to_dict()
        payload["backup_at"] = utc_now().isoformat()
        return ServiceResult.success(json.dumps(payload, indent=2, sort_keys=True))

    async def restore_server(self, server_id: str, backup: str) -> ServiceResult[Server]:
        """Overwrite the mutable fields of ``server_id`` from a backup snapshot."""
        try:
            snapshot = json.loads(backup)
            configuration = snapshot["configuration"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            return ServiceResult.failure(
                ServiceError(
                    ErrorCode.VALIDATION_ERROR,
                    "Invalid backup payload",
                    {"operation": "restore_server", "server_id": str(server_id), "errors": [str(e)]},
                    e,
                )
            )

        changes = UpdateServerInput.from_dict(
            {
                "name": snapshot.get("name"),
                "description": snapshot.get("description", ""),
                "tags": snapshot.get("tags", []),
                "health_check": snapshot.get("health_check"),
                **configuration,
            }
        )
        return await self.update_server(server_id, changes)

    # Health and statistics

    async def check_server_health(self, server_id: str) -> ServiceResult[HealthReport]:
        try:
            server = await self._require(server_id)
        except SERVICE_ERRORS as e:
            return self._fail("check_server_health", e, server_id)
        return ServiceResult.success(await self.health_checker.check_server(server))

    async def get_server_metrics(self, server_id: str) -> ServiceResult[ServerMetrics]:
        try:
            server = await self._require(server_id)
        except SERVICE_ERRORS as e:
            return self._fail("get_server_metrics", e, server_id)
        return ServiceResult.success(await self.health_checker.collect_metrics(server))

    async def get_server_statistics(self) -> ServiceResult[Dict[str, Any]]:
        try:
            servers = await self.repository.find_all()
        except SERVICE_ERRORS as e:
            return self._fail("get_server_statistics", e)

        by_kind = {kind: 0 for kind in StatusKind}
        uptimes = []
        for server in servers:
            by_kind[server.status.kind] += 1
            if server.status.kind is StatusKind.RUNNING:
                uptimes.append(calculate_uptime_ms(server.status))

        return ServiceResult.success(
            {
                "total": len(servers),
                "idle": by_kind[StatusKind.IDLE],
                "running": by_kind[StatusKind.RUNNING],
                "stopped": by_kind[StatusKind.STOPPED],
                "errors": by_kind[StatusKind.ERROR],
                "updating": by_kind[StatusKind.UPDATING],
                "average_uptime_ms": sum(uptimes) / len(uptimes) if uptimes else 0,
                "total_restarts": sum(server.metrics.restart_count for server in servers),
            }
        )

    # Helpers

    async def _require(self, server_id: str) -> Server:
        server = await self.repository.find_by_id(server_id)
        if server is None:
            raise NotFoundError(server_id)
        return server

    async def _find_name_conflict(
        self, name: str, exclude_id: Optional[str] = None
    ) -> Optional[Server]:
        # Substring search over-matches, so filter on the exact name
        wanted = name.strip()
        result = await self.repository.find_many(ServerFilters(search=wanted))
        for server in result.servers:
            if str(server.name) == wanted and server.id != exclude_id:
                return server
        return None

    async def _write(self, action: WriteAction) -> T:
        """Run ``action`` and save its events atomically, then publish them.

        Uses a repository transaction when available so the state change and
        its events commit together.
        """
        if self.repository.supports_transactions:
            async with self.repository.transaction() as tx:
                result, events = await action(tx)
                for event in events:
                    await tx.save_event(event)
        else:
            result, events = await action(self.repository)
            for event in events:
                await self.repository.save_event(event)

        for event in events:
            await self.event_bus.publish(event)
        return result

    async def _record_quietly(self, event: ServerEvent) -> None:
        """Save and publish an event that has no state change attached."""
        try:
            await self.repository.save_event(event)
        except RepositoryError as e:
            logger.error(
                "Failed to save event",
                event_type=event.type.value,
                server_id=event.server_id,
                error=e.message,
            )
        await self.event_bus.publish(event)

    def _duplicate_name(
        self, operation: str, name: str, conflicting_id: Optional[str]
    ) -> ServiceResult:
        details: Dict[str, Any] = {"operation": operation, "name": name.strip()}
        if conflicting_id is not None:
            details["conflicting_id"] = str(conflicting_id)
        logger.error("Duplicate server name", **details)
        return ServiceResult.failure(
            ServiceError(
                ErrorCode.DUPLICATE_NAME,
                f"A server named '{name.strip()}' already exists",
                details,
            )
        )

    def _fail(
        self, operation: str, exc: BaseException, server_id: Optional[str] = None
    ) -> ServiceResult:
        error = error_from_exception(exc, operation, server_id)
        logger.error(
            "Server operation failed",
            operation=operation,
            server_id=str(server_id) if server_id is not None else None,
            code=error.code.value,
            error=error.message,
        )
        return ServiceResult.failure(error)


def _as_create_input(data: CreateLike) -> CreateServerInput:
    if isinstance(data, CreateServerInput):
        return data
    return CreateServerInput.from_dict(data)


def _as_update_input(data: UpdateLike) -> UpdateServerInput:
    if isinstance(data, UpdateServerInput):
        return data
    return UpdateServerInput.from_dict(data)
