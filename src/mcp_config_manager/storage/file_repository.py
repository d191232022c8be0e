"""JSON file backed server repository with optional AES-GCM encryption."""

import asyncio
import base64
import binascii
import hashlib
import json
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import aiofiles
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config.logging import get_logger
from ..domain.events import ServerEvent
from ..domain.exceptions import DomainError
from ..domain.models import Server
from .base import RepositoryError, RepositoryOptions, RepositoryTimeoutError
from .memory import InMemoryServerRepository, detach_process

logger = get_logger(__name__)

T = TypeVar("T")

FILE_FORMAT_VERSION = 1


class PayloadCipher:
    """AES-GCM envelope: base64(nonce[12] + ciphertext + tag)."""

    NONCE_SIZE = 12

    def __init__(self, secret: str):
        if not secret:
            raise RepositoryError("Encryption key must not be empty")
        self._aesgcm = AESGCM(derive_key(secret))

    def encrypt(self, text: str) -> str:
        nonce = os.urandom(self.NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, text.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, payload: str) -> str:
        try:
            blob = base64.b64decode(payload.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise RepositoryError("Encrypted repository file is not valid base64", cause=e)
        if len(blob) <= self.NONCE_SIZE + 16:
            raise RepositoryError("Encrypted repository payload too short")
        try:
            plain = self._aesgcm.decrypt(blob[: self.NONCE_SIZE], blob[self.NONCE_SIZE :], None)
        except InvalidTag as e:
            raise RepositoryError(
                "Failed to decrypt repository file (wrong key or corrupted data)", cause=e
            )
        return plain.decode("utf-8")


def derive_key(secret: str) -> bytes:
    """Use a base64 or hex encoded AES key as-is, otherwise hash the passphrase."""
    for decode in (_try_base64, _try_hex):
        decoded = decode(secret)
        if decoded is not None and len(decoded) in (16, 24, 32):
            return decoded
    return hashlib.sha256(secret.encode("utf-8")).digest()


def _try_base64(value: str) -> Optional[bytes]:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return None


def _try_hex(value: str) -> Optional[bytes]:
    try:
        return bytes.fromhex(value)
    except ValueError:
        return None


class FileServerRepository(InMemoryServerRepository):
    """Repository persisted as a single JSON document.

    The file is loaded lazily on first use and rewritten atomically (temp
    file + rename) on every commit. Transient ``OSError`` failures are
    retried ``retry_count`` times before surfacing as :class:`RepositoryError`.
    """

    backend_name = "file"

    def __init__(
        self, path: Union[str, Path], options: Optional[RepositoryOptions] = None
    ):
        super().__init__(options)
        self.path = Path(path).expanduser()
        self._cipher = (
            PayloadCipher(self.options.encryption_key)
            if self.options.encryption_key
            else None
        )

    async def _load(self) -> None:
        timeout_ms = self.options.connection_timeout_ms
        try:
            text = await asyncio.wait_for(
                self._with_retry("load", self._read_file), timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            raise RepositoryTimeoutError("load", timeout_ms)

        if text is None or not text.strip():
            logger.info("Repository file not found, starting empty", path=str(self.path))
            return

        if self._cipher is not None:
            text = self._cipher.decrypt(text)

        try:
            payload = json.loads(text)
            servers = {}
            for record in payload.get("servers", []):
                # Processes from an earlier session are not tracked here
                server = detach_process(Server.from_dict(record), "reloaded")
                servers[server.id] = server
            events: Dict[str, List[ServerEvent]] = {
                key: [ServerEvent.from_dict(item) for item in items]
                for key, items in payload.get("events", {}).items()
            }
        except (json.JSONDecodeError, DomainError, KeyError, TypeError, ValueError) as e:
            raise RepositoryError(
                f"Failed to parse repository file {self.path}: {str(e)}",
                {"path": str(self.path)},
                cause=e,
            )

        self._servers = servers
        self._events = events
        logger.info(
            "Repository loaded",
            path=str(self.path),
            servers=len(servers),
            encrypted=self._cipher is not None,
        )

    async def _persist(
        self, servers: Dict[str, Server], events: Dict[str, List[ServerEvent]]
    ) -> None:
        payload: Dict[str, Any] = {
            "format_version": FILE_FORMAT_VERSION,
            "servers": [servers[key].to_dict() for key in sorted(servers)],
            "events": {
                key: [event.to_dict() for event in items]
                for key, items in sorted(events.items())
            },
        }
        text = json.dumps(payload, indent=2, sort_keys=True)
        if self._cipher is not None:
            text = self._cipher.encrypt(text)
        await self._with_retry("save", lambda: self._write_file(text))

    async def _read_file(self) -> Optional[str]:
        if not self.path.exists():
            return None
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            return await f.read()

    async def _write_file(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
            await f.write(text)
        os.replace(temp_path, self.path)

    async def _with_retry(
        self, operation: str, func: Callable[[], Awaitable[T]]
    ) -> T:
        attempts = self.options.retry_count + 1
        last_error: Optional[OSError] = None
        for attempt in range(1, attempts + 1):
            try:
                return await func()
            except OSError as e:
                last_error = e
                logger.warning(
                    "Repository file operation failed",
                    operation=operation,
                    path=str(self.path),
                    attempt=attempt,
                    error=str(e),
                )
                if attempt < attempts:
                    await asyncio.sleep(0.05 * attempt)
        raise RepositoryError(
            f"Failed to {operation} repository file {self.path}: {str(last_error)}",
            {"path": str(self.path), "operation": operation},
            cause=last_error,
        )
