"""Input validation that reports every violation rather than the first."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import urlparse

from .exceptions import InvalidValueError
from .models import CreateServerInput, HealthCheckSettings, UpdateServerInput
from .values import Command, EnvironmentKey, ServerName

MAX_DESCRIPTION_LENGTH = 500
MAX_TAG_LENGTH = 50


@dataclass
class ValidationReport:
    errors: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


class ServerValidator:
    """Validates create and update inputs against the server rules."""

    async def validate_create_input(self, data: CreateServerInput) -> ValidationReport:
        errors: List[str] = []
        _check(errors, ServerName, data.name)
        _check(errors, Command, data.command)
        self._validate_common(
            errors,
            args=data.args,
            environment=data.environment,
            description=data.description,
            working_directory=data.working_directory,
            timeout_ms=data.timeout_ms,
            retry_limit=data.retry_limit,
            health_check=data.health_check,
            tags=data.tags,
        )
        return ValidationReport(errors)

    async def validate_update_input(self, data: UpdateServerInput) -> ValidationReport:
        errors: List[str] = []
        if data.name is not None:
            _check(errors, ServerName, data.name)
        if data.command is not None:
            _check(errors, Command, data.command)
        self._validate_common(
            errors,
            args=data.args,
            environment=data.environment,
            description=data.description,
            working_directory=data.working_directory,
            timeout_ms=data.timeout_ms,
            retry_limit=data.retry_limit,
            health_check=data.health_check,
            tags=data.tags,
        )
        return ValidationReport(errors)

    def _validate_common(
        self,
        errors: List[str],
        args: Optional[Iterable[Any]],
        environment: Optional[Dict[Any, Any]],
        description: Optional[str],
        working_directory: Optional[str],
        timeout_ms: Optional[int],
        retry_limit: Optional[int],
        health_check: Optional[HealthCheckSettings],
        tags: Optional[Iterable[Any]],
    ) -> None:
        for index, arg in enumerate(args or ()):
            if not isinstance(arg, str):
                errors.append(f"Invalid args[{index}]: must be a string")
            elif "\0" in arg:
                errors.append(f"Invalid args[{index}]: must not contain NUL bytes")

        for key, value in (environment or {}).items():
            _check(errors, EnvironmentKey, key)
            if not isinstance(value, str):
                errors.append(f"Invalid environment value for '{key}': must be a string")

        if description is not None and len(description) > MAX_DESCRIPTION_LENGTH:
            errors.append(
                f"Invalid description: must be at most {MAX_DESCRIPTION_LENGTH} characters"
            )

        if working_directory is not None and not str(working_directory).strip():
            errors.append("Invalid working_directory: must not be empty")

        if timeout_ms is not None and (not _is_int(timeout_ms) or timeout_ms <= 0):
            errors.append("Invalid timeout_ms: must be a positive integer")

        if retry_limit is not None and (not _is_int(retry_limit) or retry_limit < 0):
            errors.append("Invalid retry_limit: must be a non-negative integer")

        if health_check is not None:
            if health_check.interval_ms <= 0:
                errors.append("Invalid health_check.interval_ms: must be positive")
            if health_check.timeout_ms <= 0:
                errors.append("Invalid health_check.timeout_ms: must be positive")
            if health_check.retries < 0:
                errors.append("Invalid health_check.retries: must not be negative")
            if health_check.endpoint:
                parsed = urlparse(health_check.endpoint)
                if parsed.scheme not in ("http", "https") or not parsed.netloc:
                    errors.append("Invalid health_check.endpoint: must be an http(s) URL")

        for tag in tags or ():
            if not isinstance(tag, str) or not tag.strip():
                errors.append("Invalid tag: must be a non-empty string")
            elif len(tag) > MAX_TAG_LENGTH:
                errors.append(f"Invalid tag '{tag[:20]}...': must be at most {MAX_TAG_LENGTH} characters")


def _check(errors: List[str], constructor: Callable[[Any], Any], value: Any) -> None:
    try:
        constructor(value)
    except InvalidValueError as e:
        errors.append(e.message)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
