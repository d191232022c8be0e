"""Server persistence: repository contract, backends and codecs."""

from .base import (
    ConflictError,
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
from .factory import create_in_memory, create_persistent, create_repository
from .file_repository import FileServerRepository, PayloadCipher
from .memory import InMemoryServerRepository
from .serialization import SerializationError, dump_servers, load_records

__all__ = [
    "ConflictError",
    "FileServerRepository",
    "InMemoryServerRepository",
    "NotFoundError",
    "PayloadCipher",
    "RepositoryError",
    "RepositoryHealth",
    "RepositoryOptions",
    "RepositoryStatistics",
    "RepositoryTimeoutError",
    "SerializationError",
    "ServerRepository",
    "TTLCache",
    "VersionConflictError",
    "create_in_memory",
    "create_persistent",
    "create_repository",
    "dump_servers",
    "load_records",
]
