"""Host application (Claude Desktop) config file adapter and registry sync.

The host file looks like::

    {
      "globalShortcut": "...",
      "mcpServers": {
        "<name>": {"command": "...", "args": [...], "env": {...}}
      }
    }

It carries no runtime status. ``env`` is omitted when empty and the file is
written with sorted keys and 2-space indentation.
"""

import json
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import aiofiles

from ..config.logging import get_logger
from ..domain.exceptions import InvalidValueError
from ..domain.models import CreateServerInput, Server
from ..domain.values import ServerName
from ..services.results import ErrorCode, ServiceResult, error_from_exception
from ..services.server_service import ServerService

logger = get_logger(__name__)

CONFIG_FILENAME = "claude_desktop_config.json"
SERVERS_KEY = "mcpServers"


class ConfigIOError(Exception):
    """Host config file could not be read, parsed or written."""

    code = ErrorCode.CONFIG_IO_ERROR.value

    def __init__(
        self,
        message: str,
        path: Optional[Path] = None,
        cause: Optional[BaseException] = None,
    ):
        self.message = message
        self.path = path
        self.cause = cause
        super().__init__(message)


class UnsupportedPlatformError(ConfigIOError):
    """No known host config location for this operating system."""


def resolve_config_path(
    platform: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return the host config location for ``platform`` (default: current)."""
    platform = platform or sys.platform
    environ = os.environ if environ is None else environ
    home = home or Path.home()

    if platform == "darwin":
        return home / "Library" / "Application Support" / "Claude" / CONFIG_FILENAME
    if platform == "win32":
        appdata = environ.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / "Claude" / CONFIG_FILENAME
    if platform.startswith("linux"):
        return home / ".config" / "Claude" / CONFIG_FILENAME
    raise UnsupportedPlatformError(f"Unsupported platform: {platform}")


@dataclass
class HostServerEntry:
    """One ``mcpServers`` entry."""

    name: str
    command: str
    args: List[str] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"command": self.command, "args": list(self.args)}
        if self.env:
            payload["env"] = dict(self.env)
        return payload

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> "HostServerEntry":
        if not isinstance(data, dict) or "command" not in data:
            raise ValueError(f"Entry '{name}' has no command")
        return cls(
            name=name,
            command=str(data["command"]),
            args=[str(arg) for arg in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
        )

    @classmethod
    def from_server(cls, server: Server) -> "HostServerEntry":
        config = server.configuration
        return cls(
            name=str(server.name),
            command=str(config.command),
            args=list(config.args),
            env=dict(config.environment),
        )

    def to_create_input(self) -> CreateServerInput:
        return CreateServerInput(
            name=self.name,
            command=self.command,
            args=tuple(self.args),
            environment=dict(self.env),
        )


class HostConfigAdapter:
    """Reads and writes the host application's JSON config file."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self._path = Path(path).expanduser() if path else None

    @property
    def config_path(self) -> Path:
        if self._path is None:
            self._path = resolve_config_path()
        return self._path

    async def read_config(self) -> Dict[str, Any]:
        """Load the whole file; a missing file reads as an empty server map."""
        path = self.config_path
        if not path.exists():
            logger.debug("Host config not found, treating as empty", path=str(path))
            return {SERVERS_KEY: {}}

        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as f:
                text = await f.read()
        except OSError as e:
            raise ConfigIOError(f"Failed to read host config {path}: {str(e)}", path, e)

        if not text.strip():
            return {SERVERS_KEY: {}}
        try:
            config = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigIOError(f"Host config {path} is not valid JSON: {str(e)}", path, e)
        if not isinstance(config, dict):
            raise ConfigIOError(f"Host config {path} must be a JSON object", path)

        config.setdefault(SERVERS_KEY, {})
        if not isinstance(config[SERVERS_KEY], dict):
            raise ConfigIOError(f"'{SERVERS_KEY}' in {path} must be an object", path)
        return config

    async def write_config(self, config: Dict[str, Any]) -> None:
        path = self.config_path
        text = json.dumps(config, indent=2, sort_keys=True) + "\n"
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "w", encoding="utf-8") as f:
                await f.write(text)
        except OSError as e:
            raise ConfigIOError(f"Failed to write host config {path}: {str(e)}", path, e)
        logger.info(
            "Host config written",
            path=str(path),
            servers=len(config.get(SERVERS_KEY, {})),
        )

    async def load_servers(self) -> List[HostServerEntry]:
        config = await self.read_config()
        entries = []
        for name, data in config[SERVERS_KEY].items():
            try:
                entries.append(HostServerEntry.from_dict(name, data))
            except ValueError as e:
                raise ConfigIOError(str(e), self.config_path, e)
        return entries

    async def save_servers(self, entries: List[HostServerEntry]) -> None:
        """Replace the whole server map; other top-level keys are kept."""
        config = await self.read_config()
        config[SERVERS_KEY] = {entry.name: entry.to_dict() for entry in entries}
        await self.write_config(config)

    async def add_server(self, entry: HostServerEntry) -> None:
        config = await self.read_config()
        if entry.name in config[SERVERS_KEY]:
            raise ValueError(f"Host config already has a server named '{entry.name}'")
        config[SERVERS_KEY][entry.name] = entry.to_dict()
        await self.write_config(config)

    async def update_server(self, name: str, entry: HostServerEntry) -> None:
        config = await self.read_config()
        servers = config[SERVERS_KEY]
        if name not in servers:
            raise KeyError(name)
        del servers[name]
        servers[entry.name] = entry.to_dict()
        await self.write_config(config)

    async def remove_server(self, name: str) -> None:
        config = await self.read_config()
        if name not in config[SERVERS_KEY]:
            raise KeyError(name)
        del config[SERVERS_KEY][name]
        await self.write_config(config)


@dataclass
class SyncReport:
    imported: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[Tuple[str, str]] = field(default_factory=list)
    written: int = 0


class ConfigSync:
    """Moves server definitions between the registry and the host file."""

    def __init__(self, service: ServerService, adapter: HostConfigAdapter):
        self.service = service
        self.adapter = adapter

    async def pull(self) -> ServiceResult[SyncReport]:
        """Register host file entries whose names are not taken yet."""
        try:
            entries = await self.adapter.load_servers()
        except ConfigIOError as e:
            return ServiceResult.failure(error_from_exception(e, "sync_pull"))

        existing = await self.service.get_servers()
        if not existing.ok:
            return ServiceResult.failure(existing.error)
        names = {str(server.name) for server in existing.value.servers}

        report = SyncReport()
        for entry in entries:
            try:
                ServerName(entry.name)
            except InvalidValueError as e:
                report.failed.append((entry.name, e.message))
                continue
            if entry.name.strip() in names:
                report.skipped.append(entry.name)
                continue

            result = await self.service.create_server(entry.to_create_input())
            if result.ok:
                report.imported.append(entry.name)
                names.add(entry.name.strip())
            else:
                report.failed.append((entry.name, result.error.message))

        logger.info(
            "Pulled host config",
            imported=len(report.imported),
            skipped=len(report.skipped),
            failed=len(report.failed),
        )
        return ServiceResult.success(report)

    async def push(self) -> ServiceResult[SyncReport]:
        """Overwrite the host file's server map with the registry."""
        result = await self.service.get_servers()
        if not result.ok:
            return ServiceResult.failure(result.error)

        entries = [HostServerEntry.from_server(server) for server in result.value.servers]
        try:
            await self.adapter.save_servers(entries)
        except ConfigIOError as e:
            return ServiceResult.failure(error_from_exception(e, "sync_push"))
        return ServiceResult.success(SyncReport(written=len(entries)))
