"""Repository construction from options or application settings."""

from pathlib import Path
from typing import Optional, Union

from ..config.logging import get_logger
from ..config.settings import Settings
from .base import RepositoryOptions, ServerRepository
from .file_repository import FileServerRepository
from .memory import InMemoryServerRepository

logger = get_logger(__name__)

BACKENDS = ("memory", "file")


def create_in_memory(options: Optional[RepositoryOptions] = None) -> InMemoryServerRepository:
    return InMemoryServerRepository(options)


def create_persistent(
    path: Union[str, Path], options: Optional[RepositoryOptions] = None
) -> FileServerRepository:
    return FileServerRepository(path, options)


def create_repository(app_settings: Settings) -> ServerRepository:
    """Build the backend selected by ``repository.backend``."""
    backend = app_settings.repository.backend.lower()
    options = RepositoryOptions.from_config(app_settings.repository)

    if backend == "memory":
        repository: ServerRepository = create_in_memory(options)
    elif backend == "file":
        repository = create_persistent(app_settings.get_repository_path(), options)
    else:
        raise ValueError(
            f"Unknown repository backend '{backend}', expected one of {', '.join(BACKENDS)}"
        )

    logger.debug(
        "Repository created",
        backend=backend,
        cache_size=options.cache_size,
        encrypted=bool(options.encryption_key),
    )
    return repository
