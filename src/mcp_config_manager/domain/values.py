"""Constructor-validated value types for the server domain.

Each type is a thin ``str``/``int`` subclass whose constructor rejects invalid
input with :class:`InvalidValueError`, so a value that exists has already
passed its checks.
"""

import re
import uuid
from datetime import datetime, timezone

from .exceptions import InvalidValueError

NAME_PATTERN = re.compile(r"^[A-Za-z0-9\s\-_]+$")
NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 100

# Shell metacharacters that would let a command string chain or redirect
DANGEROUS_COMMAND_PATTERNS = (";", "&&", "||", "|", ">", "<", "`", "$(")

_UUID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE
)


class ServerId(str):
    """Opaque server identifier (UUID text form)."""

    def __new__(cls, value: str) -> "ServerId":
        if not isinstance(value, str) or not _UUID_PATTERN.match(value):
            raise InvalidValueError("id", "must be a UUID", value)
        return super().__new__(cls, value.lower())

    @classmethod
    def generate(cls) -> "ServerId":
        return cls(str(uuid.uuid4()))


class ServerName(str):
    """Registry-unique server name: 3-100 chars of letters, digits, spaces, - and _."""

    def __new__(cls, value: str) -> "ServerName":
        if not isinstance(value, str):
            raise InvalidValueError("name", "must be a string", value)
        trimmed = value.strip()
        if not NAME_MIN_LENGTH <= len(trimmed) <= NAME_MAX_LENGTH:
            raise InvalidValueError(
                "name",
                f"must be between {NAME_MIN_LENGTH} and {NAME_MAX_LENGTH} characters",
                value,
            )
        if not NAME_PATTERN.match(trimmed):
            raise InvalidValueError(
                "name",
                "may only contain letters, digits, spaces, hyphens and underscores",
                value,
            )
        return super().__new__(cls, trimmed)


class Command(str):
    """Executable command that passed the shell-injection denylist."""

    def __new__(cls, value: str) -> "Command":
        if not isinstance(value, str) or not value.strip():
            raise InvalidValueError("command", "must be a non-empty string", value)
        trimmed = value.strip()
        if "\0" in trimmed:
            raise InvalidValueError("command", "must not contain NUL bytes", value)
        for pattern in DANGEROUS_COMMAND_PATTERNS:
            if pattern in trimmed:
                raise InvalidValueError(
                    "command", f"contains forbidden shell sequence '{pattern}'", value
                )
        return super().__new__(cls, trimmed)


class EnvironmentKey(str):
    """Environment variable name."""

    def __new__(cls, value: str) -> "EnvironmentKey":
        if not isinstance(value, str) or not value.strip():
            raise InvalidValueError("environment key", "must be a non-empty string", value)
        if "=" in value or "\0" in value:
            raise InvalidValueError(
                "environment key", "must not contain '=' or NUL bytes", value
            )
        return super().__new__(cls, value)


class Port(int):
    """TCP port number."""

    def __new__(cls, value: int) -> "Port":
        if isinstance(value, bool) or not isinstance(value, int):
            raise InvalidValueError("port", "must be an integer", value)
        if not 0 <= value <= 65535:
            raise InvalidValueError("port", "must be between 0 and 65535", value)
        return super().__new__(cls, value)


def utc_now() -> datetime:
    """Timezone-aware current time; every domain timestamp goes through here."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, assuming UTC when no offset is given."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
