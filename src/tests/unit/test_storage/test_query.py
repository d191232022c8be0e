"""Tests for the cache and the query helpers."""

from dataclasses import replace
from datetime import timedelta

import pytest

from mcp_config_manager.domain.models import (
    Pagination,
    Server,
    ServerFilters,
    ServerSort,
    SortField,
    SortOrder,
)
from mcp_config_manager.domain.status import RunningStatus, StatusKind, StoppedStatus
from mcp_config_manager.storage.cache import TTLCache
from mcp_config_manager.storage.query import (
    matches_filters,
    matches_text,
    paginate,
    sort_servers,
)


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestTTLCache:
    """Test LRU eviction and expiry."""

    def test_hit_and_miss_counting(self):
        cache = TTLCache(max_size=2)
        assert cache.get("a") is None
        cache.set("a", 1)
        assert cache.get("a") == 1
        assert cache.hits == 1
        assert cache.misses == 1
        assert cache.hit_rate == 0.5

    def test_evicts_least_recently_used(self):
        cache = TTLCache(max_size=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert len(cache) == 2

    def test_entries_expire(self):
        clock = FakeClock()
        cache = TTLCache(max_size=10, ttl_ms=1000, clock=clock)
        cache.set("a", 1)
        clock.now = 0.999
        assert cache.get("a") == 1
        clock.now = 1.0
        assert cache.get("a") is None

    def test_zero_size_disables_cache(self):
        cache = TTLCache(max_size=0)
        cache.set("a", 1)
        assert cache.get("a") is None
        assert not cache.enabled

    def test_invalidate(self):
        cache = TTLCache()
        cache.set("a", 1)
        cache.set("b", 2)
        cache.invalidate("a")
        assert "a" not in cache
        cache.invalidate()
        assert len(cache) == 0


class TestQueryHelpers:
    """Test filtering, sorting and paging of server lists."""

    def _server(self, server_input, name, **overrides):
        return Server.create(server_input(name, **overrides))

    def test_tag_filter_any_and_all(self, server_input):
        server = self._server(server_input, "alpha", tags=("dev", "node"))

        assert matches_filters(server, ServerFilters(tags=("dev", "prod")))
        assert not matches_filters(server, ServerFilters(tags=("dev", "prod"), match_all=True))
        assert matches_filters(server, ServerFilters(tags=("dev", "node"), match_all=True))

    def test_search_is_case_insensitive_on_name_and_description(self, server_input):
        server = self._server(server_input, "Alpha Server", description="Files API")

        assert matches_filters(server, ServerFilters(search="alpha"))
        assert matches_filters(server, ServerFilters(search="files"))
        assert not matches_filters(server, ServerFilters(search="gamma"))

    def test_status_and_date_filters(self, server_input):
        server = Server.create(server_input("alpha"), status=StoppedStatus())

        assert matches_filters(server, ServerFilters(status=StatusKind.STOPPED))
        assert not matches_filters(server, ServerFilters(status=StatusKind.RUNNING))
        assert matches_filters(server, ServerFilters(created_after=server.created_at))
        assert not matches_filters(
            server, ServerFilters(created_after=server.created_at + timedelta(seconds=1))
        )
        assert matches_filters(server, ServerFilters(updated_before=server.updated_at))

    def test_matches_text_fields(self, server_input):
        server = self._server(server_input, "alpha", tags=("database",))
        assert matches_text(server, "DATA", ["tags"])
        assert not matches_text(server, "DATA", ["name", "description"])

    def test_sort_ties_broken_by_id(self, server_input):
        base = self._server(server_input, "same")
        servers = [replace(base, id=server_id) for server_id in _ids(3)]

        for order in (SortOrder.ASC, SortOrder.DESC):
            ordered = sort_servers(servers, ServerSort(SortField.NAME, order))
            assert [s.id for s in ordered] == sorted(s.id for s in servers)

    def test_sort_by_status_rank(self, server_input):
        idle = self._server(server_input, "one")
        running = Server.create(server_input("two"), status=RunningStatus(pid=1))
        stopped = Server.create(server_input("three"), status=StoppedStatus())

        ordered = sort_servers([stopped, running, idle], ServerSort(SortField.STATUS))
        assert [s.status.kind for s in ordered] == [
            StatusKind.IDLE,
            StatusKind.RUNNING,
            StatusKind.STOPPED,
        ]

    def test_sort_by_name_descending(self, server_input):
        servers = [self._server(server_input, name) for name in ("bbb", "aaa", "ccc")]
        ordered = sort_servers(servers, ServerSort(SortField.NAME, SortOrder.DESC))
        assert [str(s.name) for s in ordered] == ["ccc", "bbb", "aaa"]

    @pytest.mark.parametrize("page,expected", [(1, 10), (3, 5), (4, 0)])
    def test_paginate(self, server_input, page, expected):
        servers = [self._server(server_input, f"server-{i:02d}") for i in range(25)]
        assert len(paginate(servers, Pagination(page=page, limit=10))) == expected

    def test_no_pagination_returns_all(self, server_input):
        servers = [self._server(server_input, f"server-{i}") for i in range(3)]
        assert paginate(servers, None) == servers


def _ids(count):
    return [f"00000000-0000-4000-8000-00000000000{i}" for i in range(count)]
