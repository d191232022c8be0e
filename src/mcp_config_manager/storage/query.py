"""Filtering, sorting, pagination and text search over server collections."""

from typing import Iterable, List, Optional, Sequence

from ..domain.models import (
    Pagination,
    Server,
    ServerFilters,
    ServerSort,
    SortField,
    SortOrder,
)


def matches_filters(server: Server, filters: Optional[ServerFilters]) -> bool:
    if filters is None:
        return True

    if filters.status is not None and server.status.kind is not filters.status:
        return False

    if filters.tags:
        wanted = set(filters.tags)
        have = set(server.tags)
        if filters.match_all:
            if not wanted.issubset(have):
                return False
        elif not wanted & have:
            return False

    if filters.search:
        needle = filters.search.lower()
        if needle not in server.name.lower() and needle not in server.description.lower():
            return False

    # Date bounds are inclusive
    if filters.created_after is not None and server.created_at < filters.created_after:
        return False
    if filters.created_before is not None and server.created_at > filters.created_before:
        return False
    if filters.updated_after is not None and server.updated_at < filters.updated_after:
        return False
    if filters.updated_before is not None and server.updated_at > filters.updated_before:
        return False

    return True


def matches_text(server: Server, text: str, fields: Sequence[str]) -> bool:
    needle = text.lower()
    for name in fields:
        if name == "name" and needle in server.name.lower():
            return True
        if name == "description" and needle in server.description.lower():
            return True
        if name == "tags" and any(needle in tag.lower() for tag in server.tags):
            return True
    return False


def sort_servers(servers: Iterable[Server], sort: Optional[ServerSort]) -> List[Server]:
    """Sort by the requested field; ties fall back to id ascending.

    Two stable passes keep the id tie-break ascending in both sort orders.
    """
    sort = sort or ServerSort()
    ordered = sorted(servers, key=lambda server: server.id)

    if sort.field is SortField.NAME:
        key = lambda server: str(server.name)  # noqa: E731
    elif sort.field is SortField.CREATED_AT:
        key = lambda server: server.created_at  # noqa: E731
    elif sort.field is SortField.UPDATED_AT:
        key = lambda server: server.updated_at  # noqa: E731
    else:
        key = lambda server: server.status.kind.rank  # noqa: E731

    return sorted(ordered, key=key, reverse=sort.order is SortOrder.DESC)


def paginate(servers: List[Server], pagination: Optional[Pagination]) -> List[Server]:
    """Slice one 1-indexed page; a page past the end is empty."""
    if pagination is None:
        return servers
    return servers[pagination.offset : pagination.offset + pagination.limit]
