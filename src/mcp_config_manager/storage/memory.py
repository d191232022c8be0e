"""In-memory server repository.

State is held in copy-on-write dictionaries: every commit builds new maps
and swaps them in only after ``_persist`` succeeds, so a failed or
rejected write never leaves a partial mutation behind. Subclasses override
``_load`` and ``_persist`` to add durable storage.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
    TypeVar,
)

from ..config.logging import get_logger
from ..domain.events import ServerEvent
from ..domain.exceptions import ValidationFailedError
from ..domain.models import (
    CreateServerInput,
    Pagination,
    QueryResult,
    Server,
    ServerDelta,
    ServerFilters,
    ServerSort,
)
from ..domain.status import StatusKind, StoppedStatus
from ..domain.values import ServerId, utc_now
from ..events.bus import StreamSubscription, Subscription
from .base import (
    SEARCH_FIELDS,
    ConflictError,
    DeltaLike,
    NotFoundError,
    RepositoryError,
    RepositoryHealth,
    RepositoryOptions,
    RepositoryStatistics,
    RepositoryTimeoutError,
    ServerRepository,
    VersionConflictError,
)
from .cache import TTLCache
from .query import matches_filters, matches_text, paginate, sort_servers
from .serialization import dump_servers, load_records

logger = get_logger(__name__)

T = TypeVar("T")

_WATCH_MANY = "many"
_WATCH_COUNT = "count"


def _key(server_id: str) -> str:
    return str(server_id).strip().lower()


class InMemoryServerRepository(ServerRepository):
    """Dict-backed repository with read-through cache, watches and event log."""

    backend_name = "memory"

    def __init__(self, options: Optional[RepositoryOptions] = None):
        self.options = options or RepositoryOptions()
        self._servers: Dict[str, Server] = {}
        self._events: Dict[str, List[ServerEvent]] = {}
        self._lock = asyncio.Lock()
        self._load_lock = asyncio.Lock()
        self._loaded = False
        self._cache: TTLCache[Server] = TTLCache(
            self.options.cache_size, self.options.cache_ttl_ms
        )
        self._id_watchers: Dict[str, Set[StreamSubscription]] = {}
        self._query_watchers: Dict[
            StreamSubscription, Tuple[str, Optional[ServerFilters]]
        ] = {}

        # Populated only for transaction handles
        self._track_changes = False
        self._touched: Set[str] = set()
        self._appended_events: List[ServerEvent] = []

        self._query_count = 0
        self._query_time_ms = 0.0

    # Storage hooks

    async def _load(self) -> None:
        """Populate ``_servers`` and ``_events`` from durable storage."""

    async def _persist(
        self, servers: Dict[str, Server], events: Dict[str, List[ServerEvent]]
    ) -> None:
        """Make the next state durable; raising aborts the commit."""

    async def _ready(self) -> None:
        if self._loaded:
            return
        async with self._load_lock:
            if not self._loaded:
                await self._load()
                self._loaded = True

    # Reads

    async def find_by_id(self, server_id: str) -> Optional[Server]:
        return await self._query("find_by_id", self._find_by_id(_key(server_id)))

    async def _find_by_id(self, key: str) -> Optional[Server]:
        await self._ready()
        cached = self._cache.get(key)
        if cached is not None:
            return cached
        server = self._servers.get(key)
        if server is not None:
            self._cache.set(key, server)
        return server

    async def find_many(
        self,
        filters: Optional[ServerFilters] = None,
        sort: Optional[ServerSort] = None,
        pagination: Optional[Pagination] = None,
    ) -> QueryResult:
        return await self._query("find_many", self._find_many(filters, sort, pagination))

    async def _find_many(
        self,
        filters: Optional[ServerFilters],
        sort: Optional[ServerSort],
        pagination: Optional[Pagination],
    ) -> QueryResult:
        await self._ready()
        matched = [s for s in self._servers.values() if matches_filters(s, filters)]
        ordered = sort_servers(matched, sort)
        return QueryResult(
            servers=paginate(ordered, pagination),
            total=len(ordered),
            filters=filters or ServerFilters(),
            sort=sort or ServerSort(),
            pagination=pagination,
        )

    async def find_all(self) -> List[Server]:
        result = await self.find_many()
        return result.servers

    async def exists(self, server_id: str) -> bool:
        return await self._query("exists", self._exists(_key(server_id)))

    async def _exists(self, key: str) -> bool:
        await self._ready()
        return key in self._servers

    async def count(self, filters: Optional[ServerFilters] = None) -> int:
        return await self._query("count", self._count(filters))

    async def _count(self, filters: Optional[ServerFilters]) -> int:
        await self._ready()
        return sum(1 for s in self._servers.values() if matches_filters(s, filters))

    async def search(
        self,
        text: str,
        fields: Sequence[str] = SEARCH_FIELDS,
        pagination: Optional[Pagination] = None,
    ) -> QueryResult:
        return await self._query("search", self._search(text, fields, pagination))

    async def _search(
        self, text: str, fields: Sequence[str], pagination: Optional[Pagination]
    ) -> QueryResult:
        await self._ready()
        matched = [s for s in self._servers.values() if matches_text(s, text, fields)]
        ordered = sort_servers(matched, ServerSort())
        return QueryResult(
            servers=paginate(ordered, pagination),
            total=len(ordered),
            filters=ServerFilters(search=text),
            sort=ServerSort(),
            pagination=pagination,
        )

    # Writes

    async def create(self, data: CreateServerInput) -> Server:
        server = Server.create(data)
        async with self._locked("create"):
            await self._ready()
            await self._commit({server.id: server})
        self._notify({server.id})
        logger.debug("Server created", server_id=server.id, backend=self.backend_name)
        return server

    async def create_many(self, inputs: Sequence[CreateServerInput]) -> List[Server]:
        servers = [Server.create(data) for data in inputs]
        async with self._locked("create_many"):
            await self._ready()
            await self._commit({server.id: server for server in servers})
        self._notify({server.id for server in servers})
        return servers

    async def update(self, server_id: str, delta: DeltaLike, expected_version: int) -> Server:
        key = _key(server_id)
        async with self._locked("update"):
            await self._ready()
            updated = self._apply(key, delta, expected_version)
            await self._commit({key: updated})
        self._notify({key})
        logger.debug(
            "Server updated", server_id=key, version=updated.version, backend=self.backend_name
        )
        return updated

    async def update_many(self, updates: Sequence[Tuple[str, DeltaLike, int]]) -> List[Server]:
        async with self._locked("update_many"):
            await self._ready()
            changes: Dict[str, Server] = {}
            for server_id, delta, expected_version in updates:
                key = _key(server_id)
                changes[key] = self._apply(key, delta, expected_version)
            await self._commit(dict(changes))
        self._notify(set(changes))
        return list(changes.values())

    def _apply(self, key: str, delta: DeltaLike, expected_version: int) -> Server:
        current = self._servers.get(key)
        if current is None:
            raise NotFoundError(key)
        if current.version != expected_version:
            raise VersionConflictError(key, expected_version, current.version)
        return current.apply(ServerDelta.of(delta))

    async def delete(self, server_id: str) -> None:
        await self.delete_many([server_id])

    async def delete_many(self, server_ids: Sequence[str]) -> None:
        keys = [_key(server_id) for server_id in server_ids]
        async with self._locked("delete"):
            await self._ready()
            for key in keys:
                if key not in self._servers:
                    raise NotFoundError(key)
            await self._commit({key: None for key in keys})
        self._notify(set(keys))
        logger.debug("Servers deleted", server_ids=keys, backend=self.backend_name)

    # Event log

    async def get_events(self, server_id: str) -> List[ServerEvent]:
        return await self._query("get_events", self._get_events(_key(server_id)))

    async def _get_events(self, key: str) -> List[ServerEvent]:
        await self._ready()
        return list(self._events.get(key, ()))

    async def save_event(self, event: ServerEvent) -> None:
        if not self.options.enable_events:
            return
        async with self._locked("save_event"):
            await self._ready()
            await self._commit({}, [event])

    # Watches

    def watch_by_id(self, server_id: str) -> StreamSubscription[Optional[Server]]:
        self._ensure_watchers_enabled()
        key = _key(server_id)

        def _close(subscription: Subscription) -> None:
            self._id_watchers.get(key, set()).discard(subscription)

        subscription: StreamSubscription[Optional[Server]] = StreamSubscription(_close)
        self._id_watchers.setdefault(key, set()).add(subscription)
        return subscription

    def watch_many(
        self, filters: Optional[ServerFilters] = None
    ) -> StreamSubscription[List[Server]]:
        return self._watch_query(_WATCH_MANY, filters)

    def watch_count(self, filters: Optional[ServerFilters] = None) -> StreamSubscription[int]:
        return self._watch_query(_WATCH_COUNT, filters)

    def _watch_query(self, kind: str, filters: Optional[ServerFilters]) -> StreamSubscription:
        self._ensure_watchers_enabled()
        subscription: StreamSubscription = StreamSubscription(
            lambda s: self._query_watchers.pop(s, None)
        )
        self._query_watchers[subscription] = (kind, filters)
        return subscription

    def _ensure_watchers_enabled(self) -> None:
        if not self.options.enable_watchers:
            raise RepositoryError("Watchers are disabled for this repository")

    def _notify(self, keys: Iterable[str]) -> None:
        """Push fresh snapshots to every watch the committed keys may affect."""
        if not self.options.enable_watchers:
            return
        for key in keys:
            for subscription in list(self._id_watchers.get(key, ())):
                subscription.push(self._servers.get(key))
        for subscription, (kind, filters) in list(self._query_watchers.items()):
            matched = [s for s in self._servers.values() if matches_filters(s, filters)]
            if kind == _WATCH_COUNT:
                subscription.push(len(matched))
            else:
                subscription.push(sort_servers(matched, None))

    # Transactions

    @property
    def supports_transactions(self) -> bool:
        return self.options.enable_transactions

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryServerRepository"]:
        """Yield a handle whose writes commit together when the block exits.

        Every server the handle touched must still carry the version it had
        when the scope opened, otherwise :class:`VersionConflictError` is
        raised and nothing is applied. An exception inside the block
        discards the handle's writes.
        """
        if not self.options.enable_transactions:
            raise RepositoryError("Transactions are disabled for this repository")

        await self._ready()
        snapshot = self._servers
        handle = InMemoryServerRepository(
            replace(self.options, cache_size=0, enable_watchers=False)
        )
        handle._servers = dict(snapshot)
        handle._events = {key: list(events) for key, events in self._events.items()}
        handle._loaded = True
        handle._track_changes = True

        yield handle

        async with self._locked("transaction"):
            for key in handle._touched:
                before = snapshot.get(key)
                current = self._servers.get(key)
                before_version = before.version if before else None
                current_version = current.version if current else None
                if before_version != current_version:
                    raise VersionConflictError(key, before_version, current_version)
            changes = {key: handle._servers.get(key) for key in handle._touched}
            await self._commit(changes, handle._appended_events)
        self._notify(set(changes))
        logger.debug(
            "Transaction committed",
            servers=len(changes),
            events=len(handle._appended_events),
        )

    async def _commit(
        self,
        changes: Dict[str, Optional[Server]],
        events: Sequence[ServerEvent] = (),
    ) -> None:
        """Swap in the next state; caller holds ``_lock``."""
        servers = dict(self._servers)
        for key, server in changes.items():
            if server is None:
                servers.pop(key, None)
            else:
                servers[key] = server

        event_log = self._events
        if events:
            event_log = {key: list(items) for key, items in self._events.items()}
            for event in events:
                event_log.setdefault(_key(event.server_id), []).append(event)

        await self._persist(servers, event_log)

        self._servers = servers
        self._events = event_log
        for key in changes:
            self._cache.invalidate(key)
        if self._track_changes:
            self._touched.update(changes)
            self._appended_events.extend(events)

    # Cache

    async def invalidate_cache(self, server_id: Optional[str] = None) -> None:
        self._cache.invalidate(_key(server_id) if server_id is not None else None)

    async def preload_cache(self, server_ids: Sequence[str]) -> None:
        await self._ready()
        for server_id in server_ids:
            key = _key(server_id)
            server = self._servers.get(key)
            if server is not None:
                self._cache.set(key, server)

    # Import / export

    async def export(self, filters: Optional[ServerFilters] = None, format: str = "json") -> str:
        result = await self.find_many(filters)
        return dump_servers(result.servers, format)

    async def import_(
        self, data: str, format: str = "json", merge: bool = False, validate: bool = True
    ) -> List[Server]:
        """Load servers from an export payload.

        With ``validate`` every record must be valid or nothing is imported;
        without it invalid records are skipped. Existing ids are replaced
        only when ``merge`` is set, otherwise they raise :class:`ConflictError`.
        """
        records = load_records(data, format)
        servers: List[Server] = []
        errors: List[str] = []
        for index, record in enumerate(records):
            try:
                servers.append(_record_to_server(record))
            except (ValueError, TypeError, AttributeError, KeyError) as e:
                errors.append(f"Record {index}: {str(e)}")

        if errors:
            if validate:
                raise ValidationFailedError(errors)
            logger.warning("Skipping invalid import records", errors=errors)

        async with self._locked("import"):
            await self._ready()
            changes: Dict[str, Server] = {}
            for server in servers:
                existing = self._servers.get(server.id)
                if existing is not None:
                    if not merge:
                        raise ConflictError(
                            f"Server {server.id} already exists",
                            {"server_id": str(server.id)},
                        )
                    server = replace(
                        server,
                        version=existing.version + 1,
                        created_at=existing.created_at,
                        updated_at=utc_now(),
                    )
                changes[server.id] = server
            await self._commit(dict(changes))
        self._notify(set(changes))
        logger.info("Servers imported", count=len(changes), format=format, merge=merge)
        return list(changes.values())

    # Diagnostics

    async def health_check(self) -> RepositoryHealth:
        started = time.perf_counter()
        try:
            total = await self.count()
        except RepositoryError as e:
            return RepositoryHealth(
                is_healthy=False,
                latency_ms=(time.perf_counter() - started) * 1000,
                details={"backend": self.backend_name, "error": e.message},
            )
        return RepositoryHealth(
            is_healthy=True,
            latency_ms=(time.perf_counter() - started) * 1000,
            details={
                "backend": self.backend_name,
                "servers": total,
                "events": sum(len(events) for events in self._events.values()),
                "cache": self._cache.stats(),
                "watchers": sum(len(s) for s in self._id_watchers.values())
                + len(self._query_watchers),
            },
        )

    def statistics(self) -> RepositoryStatistics:
        return RepositoryStatistics(
            total_servers=len(self._servers),
            cache_hit_rate=self._cache.hit_rate,
            query_count=self._query_count,
            average_query_time_ms=(
                self._query_time_ms / self._query_count if self._query_count else 0.0
            ),
        )

    # Timeouts

    async def _query(self, operation: str, coro: Awaitable[T]) -> T:
        started = time.perf_counter()
        try:
            return await asyncio.wait_for(coro, self.options.query_timeout_ms / 1000)
        except asyncio.TimeoutError:
            raise RepositoryTimeoutError(operation, self.options.query_timeout_ms)
        finally:
            self._query_count += 1
            self._query_time_ms += (time.perf_counter() - started) * 1000

    @asynccontextmanager
    async def _locked(self, operation: str) -> AsyncIterator[None]:
        try:
            await asyncio.wait_for(
                self._lock.acquire(), self.options.query_timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            raise RepositoryTimeoutError(operation, self.options.query_timeout_ms)
        try:
            yield
        finally:
            self._lock.release()


def _record_to_server(record: Dict[str, Any]) -> Server:
    """Turn an exported record (nested or flat) into a server."""
    if "configuration" not in record:
        server_id = ServerId(record["id"]) if record.get("id") else None
        return Server.create(CreateServerInput.from_dict(record), server_id=server_id)

    record = dict(record)
    if not record.get("id"):
        record["id"] = ServerId.generate()
    server = Server.from_dict(record)
    return detach_process(server, "imported")


def detach_process(server: Server, reason: str) -> Server:
    """Move a server whose status claims a live process to ``stopped``.

    Used for records loaded from outside the current session, where no
    process manager tracks the recorded pid.
    """
    if server.status.kind in (StatusKind.RUNNING, StatusKind.UPDATING):
        return replace(server, status=StoppedStatus(reason=reason))
    return server
