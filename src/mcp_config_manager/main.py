"""Main CLI entry point for the MCP server configuration manager.

Manages the registry of MCP servers and keeps it in sync with the host
application's (Claude Desktop) config file.
"""

import asyncio
import json
import sys
import traceback
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

import click
import yaml

from . import __version__
from .config.logging import configure_logging, get_logger
from .config.settings import Settings
from .domain.models import (
    Pagination,
    Server,
    ServerFilters,
    ServerSort,
    SortField,
    SortOrder,
)
from .domain.status import StatusKind, status_text
from .management.process_manager import SubprocessProcessManager
from .services.results import ServiceError, ServiceResult
from .services.server_service import ServerService
from .storage.factory import create_repository
from .sync.host_config import ConfigIOError, ConfigSync, HostConfigAdapter

logger = get_logger(__name__)

T = TypeVar("T")


class CLIError(Exception):
    """Base CLI error with user-friendly messages."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class CLIContext:
    """Global CLI context: settings plus lazily built service objects."""

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        config_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ):
        self.verbose = verbose
        self.quiet = quiet
        self.config_file = config_file
        self.settings = self.load_settings(overrides or {})
        self._service: Optional[ServerService] = None

    def load_settings(self, overrides: Dict[str, Any]) -> Settings:
        """Environment settings, then the YAML config file, then CLI flags."""
        data: Dict[str, Any] = {}
        if self.config_file:
            data = self._load_config_file(self.config_file)
        for key_path, value in overrides.items():
            if value is not None:
                self._set_nested_config(data, key_path, value)
        return Settings(**data)

    def _load_config_file(self, config_path: str) -> Dict[str, Any]:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise CLIError(
                f"Failed to load config file {config_path}: {str(e)}",
                "Check that the file exists and is valid YAML",
            )
        if not isinstance(loaded, dict):
            raise CLIError(f"Config file {config_path} must contain a mapping")
        return loaded

    def _set_nested_config(self, config: Dict, key_path: str, value: Any):
        keys = key_path.split(".")
        current = config
        for key in keys[:-1]:
            current = current.setdefault(key, {})
        current[keys[-1]] = value

    @property
    def service(self) -> ServerService:
        if self._service is None:
            settings = self.settings
            self._service = ServerService(
                create_repository(settings),
                SubprocessProcessManager(
                    start_timeout=settings.service.start_timeout,
                    stop_timeout=settings.service.stop_timeout,
                    log_dir=settings.get_data_dir() / "logs",
                ),
                config=settings.service,
            )
        return self._service

    def host_adapter(self, path: Optional[str] = None) -> HostConfigAdapter:
        return HostConfigAdapter(path or self.settings.host_config.path)


def handle_cli_error(error: Exception, ctx: Optional[click.Context] = None):
    """Global CLI error handler."""
    if isinstance(error, CLIError):
        click.echo(f"Error: {error.message}", err=True)
        if error.suggestion:
            click.echo(f"Suggestion: {error.suggestion}", err=True)
    elif isinstance(error, click.ClickException):
        error.show()
    elif isinstance(error, ConfigIOError):
        click.echo(f"Error: {error.message}", err=True)
    else:
        verbose = bool(ctx and ctx.obj and ctx.obj.get("verbose"))
        click.echo(f"Unexpected error: {str(error)}", err=True)
        if verbose:
            click.echo(traceback.format_exc(), err=True)
        else:
            click.echo("Run with --verbose for detailed error information", err=True)
    sys.exit(1)


def _unwrap(result: ServiceResult) -> Any:
    if result.ok:
        return result.value
    raise CLIError(_describe_error(result.error))


def _describe_error(error: ServiceError) -> str:
    lines = [f"{error.message} [{error.code.value}]"]
    for message in error.details.get("errors", []):
        lines.append(f"  - {message}")
    if "conflicting_id" in error.details:
        lines.append(f"  conflicting server: {error.details['conflicting_id']}")
    return "\n".join(lines)


def _run(ctx: click.Context, coro) -> Any:
    try:
        return asyncio.run(coro)
    except Exception as error:
        handle_cli_error(error, ctx)


def _parse_env(pairs: Tuple[str, ...]) -> Dict[str, str]:
    env = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"'{pair}' is not KEY=VALUE", param_hint="--env")
        key, value = pair.split("=", 1)
        env[key] = value
    return env


def _emit(data: Any, format: str) -> None:
    if format == "yaml":
        click.echo(yaml.safe_dump(data, sort_keys=True, default_flow_style=False).rstrip())
    else:
        click.echo(json.dumps(data, indent=2, sort_keys=True))


def _server_row(server: Server) -> str:
    tags = ",".join(server.tags) or "-"
    return f"{server.id}  {str(server.name):<24}  {status_text(server.status):<24}  v{server.version:<4}  {tags}"


@click.group()
@click.version_option(version=__version__, prog_name="mcp-config-manager")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging")
@click.option("--quiet", "-q", is_flag=True, help="Enable quiet mode with minimal output")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    help="Configuration file path (YAML format)",
)
@click.option("--data-dir", type=click.Path(), help="Directory holding the server registry")
@click.option(
    "--backend",
    type=click.Choice(["file", "memory"]),
    help="Repository backend (default: file)",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    config: Optional[str],
    data_dir: Optional[str],
    backend: Optional[str],
):
    """MCP server configuration manager.

    Keeps a registry of MCP servers (command, arguments, environment, tags)
    and synchronizes it with the Claude Desktop config file.

    \b
    Examples:
      mcp-config-manager add filesystem npx -a -y -a @modelcontextprotocol/server-filesystem
      mcp-config-manager list --tag dev
      mcp-config-manager sync push
    """
    if verbose and quiet:
        raise click.BadParameter("Cannot use both --verbose and --quiet options")

    ctx.ensure_object(dict)
    try:
        cli_context = CLIContext(
            verbose=verbose,
            quiet=quiet,
            config_file=config,
            overrides={"data_dir": data_dir, "repository.backend": backend},
        )
    except CLIError as error:
        handle_cli_error(error, ctx)

    ctx.obj["cli_context"] = cli_context
    ctx.obj["verbose"] = verbose
    ctx.obj["quiet"] = quiet

    level = "DEBUG" if verbose else "ERROR" if quiet else cli_context.settings.logging.level
    log_file = cli_context.settings.get_log_file_path()
    configure_logging(
        level=level,
        log_file=str(log_file) if log_file else None,
        json_logs=cli_context.settings.logging.json_format,
    )


@cli.command("list")
@click.option(
    "--status",
    type=click.Choice([kind.value for kind in StatusKind]),
    help="Only servers in this status",
)
@click.option("--tag", "tags", multiple=True, help="Filter by tag (repeatable)")
@click.option("--match-all", is_flag=True, help="Require every --tag instead of any")
@click.option("--search", help="Case-insensitive match on name and description")
@click.option(
    "--sort",
    type=click.Choice([field.value for field in SortField]),
    default="name",
    help="Sort field",
)
@click.option("--desc", is_flag=True, help="Sort descending")
@click.option("--page", type=click.IntRange(min=1), default=1, help="Page number (1-indexed)")
@click.option("--limit", type=click.IntRange(min=1), default=50, help="Servers per page")
@click.option(
    "--format",
    type=click.Choice(["table", "json", "yaml"]),
    default="table",
    help="Output format",
)
@click.pass_context
def list_servers(
    ctx: click.Context,
    status: Optional[str],
    tags: Tuple[str, ...],
    match_all: bool,
    search: Optional[str],
    sort: str,
    desc: bool,
    page: int,
    limit: int,
    format: str,
):
    """List registered servers."""
    cli_context: CLIContext = ctx.obj["cli_context"]

    async def _list():
        result = await cli_context.service.get_servers(
            ServerFilters(
                status=StatusKind(status) if status else None,
                tags=tags,
                match_all=match_all,
                search=search,
            ),
            ServerSort(SortField(sort), SortOrder.DESC if desc else SortOrder.ASC),
            Pagination(page=page, limit=limit),
        )
        return _unwrap(result)

    query = _run(ctx, _list())
    if format != "table":
        _emit([server.to_dict() for server in query.servers], format)
        return

    if not query.servers:
        click.echo("No servers found")
        return
    for server in query.servers:
        click.echo(_server_row(server))
    if not cli_context.quiet:
        click.echo(f"\n{len(query.servers)} of {query.total} server(s), page {page}")


@cli.command()
@click.argument("server_id")
@click.option("--format", type=click.Choice(["json", "yaml"]), default="yaml", help="Output format")
@click.pass_context
def show(ctx: click.Context, server_id: str, format: str):
    """Show one server in full."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    server = _run(ctx, _call(cli_context, lambda service: service.get_server(server_id)))
    _emit(server.to_dict(), format)


@cli.command()
@click.argument("name")
@click.argument("command")
@click.option("--arg", "-a", "args", multiple=True, help="Command argument (repeatable)")
@click.option("--env", "-e", "env", multiple=True, help="Environment variable KEY=VALUE (repeatable)")
@click.option("--description", "-d", default="", help="Free-text description")
@click.option("--tag", "-t", "tags", multiple=True, help="Tag (repeatable)")
@click.option("--working-directory", help="Working directory for the process")
@click.option("--auto-restart", is_flag=True, help="Restart automatically after unexpected exits")
@click.pass_context
def add(
    ctx: click.Context,
    name: str,
    command: str,
    args: Tuple[str, ...],
    env: Tuple[str, ...],
    description: str,
    tags: Tuple[str, ...],
    working_directory: Optional[str],
    auto_restart: bool,
):
    """Register a new server."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    data = {
        "name": name,
        "command": command,
        "args": list(args),
        "environment": _parse_env(env),
        "description": description,
        "tags": list(tags),
        "working_directory": working_directory,
        "auto_restart": auto_restart,
    }
    server = _run(ctx, _call(cli_context, lambda service: service.create_server(data)))
    click.echo(f"Created {server.name} ({server.id})")


@cli.command()
@click.argument("server_id")
@click.option("--name", help="New name")
@click.option("--command", help="New command")
@click.option("--arg", "-a", "args", multiple=True, help="Replace arguments (repeatable)")
@click.option("--env", "-e", "env", multiple=True, help="Replace environment KEY=VALUE (repeatable)")
@click.option("--description", "-d", help="New description")
@click.option("--tag", "-t", "tags", multiple=True, help="Replace tags (repeatable)")
@click.option("--expected-version", type=int, help="Fail unless the server is at this version")
@click.pass_context
def update(
    ctx: click.Context,
    server_id: str,
    name: Optional[str],
    command: Optional[str],
    args: Tuple[str, ...],
    env: Tuple[str, ...],
    description: Optional[str],
    tags: Tuple[str, ...],
    expected_version: Optional[int],
):
    """Update fields of a server."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    data: Dict[str, Any] = {"name": name, "command": command, "description": description}
    if args:
        data["args"] = list(args)
    if env:
        data["environment"] = _parse_env(env)
    if tags:
        data["tags"] = list(tags)
    server = _run(
        ctx,
        _call(
            cli_context,
            lambda service: service.update_server(server_id, data, expected_version),
        ),
    )
    click.echo(f"Updated {server.name} to version {server.version}")


@cli.command()
@click.argument("server_ids", nargs=-1, required=True)
@click.pass_context
def remove(ctx: click.Context, server_ids: Tuple[str, ...]):
    """Remove one or more servers."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    outcome = _run(
        ctx, _in_loop(cli_context, lambda service: service.delete_servers(list(server_ids)))
    )
    for server_id in outcome.succeeded:
        click.echo(f"Removed {server_id}")
    for server_id, error in outcome.failed:
        click.echo(f"Error: {server_id}: {_describe_error(error)}", err=True)
    if outcome.failed:
        sys.exit(1)


@cli.command()
@click.argument("server_id")
@click.option("--format", type=click.Choice(["table", "json"]), default="table", help="Output format")
@click.pass_context
def events(ctx: click.Context, server_id: str, format: str):
    """Show the event history of a server."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    history = _run(
        ctx, _call(cli_context, lambda service: service.get_server_events(server_id))
    )
    if format == "json":
        _emit([event.to_dict() for event in history], "json")
        return
    if not history:
        click.echo("No events recorded")
    for event in history:
        version = f"v{event.version}" if event.version is not None else "-"
        click.echo(f"{event.timestamp.isoformat()}  {event.type.value:<20}  {version}")


@cli.command("export")
@click.option(
    "--format",
    type=click.Choice(["json", "yaml", "csv"]),
    default="json",
    help="Export format",
)
@click.option("--output", "-o", type=click.Path(dir_okay=False), help="Write to file instead of stdout")
@click.option("--tag", "tags", multiple=True, help="Only servers with this tag")
@click.pass_context
def export_servers(ctx: click.Context, format: str, output: Optional[str], tags: Tuple[str, ...]):
    """Export the registry."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    filters = ServerFilters(tags=tags) if tags else None
    payload = _run(
        ctx, _call(cli_context, lambda service: service.export_servers(filters, format))
    )
    if output:
        Path(output).write_text(payload, encoding="utf-8")
        click.echo(f"Exported to {output}")
    else:
        click.echo(payload)


@cli.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--format",
    type=click.Choice(["json", "yaml", "csv"]),
    help="Payload format (default: from file extension)",
)
@click.option("--merge", is_flag=True, help="Replace servers whose ids already exist")
@click.option("--skip-invalid", is_flag=True, help="Skip invalid records instead of aborting")
@click.pass_context
def import_servers(
    ctx: click.Context,
    source: str,
    format: Optional[str],
    merge: bool,
    skip_invalid: bool,
):
    """Import servers from an export file."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    path = Path(source)
    if format is None:
        suffix = path.suffix.lower().lstrip(".")
        format = "yaml" if suffix in ("yaml", "yml") else suffix if suffix in ("json", "csv") else "json"
    data = path.read_text(encoding="utf-8")
    servers = _run(
        ctx,
        _call(
            cli_context,
            lambda service: service.import_servers(
                data, format, merge=merge, validate=not skip_invalid
            ),
        ),
    )
    click.echo(f"Imported {len(servers)} server(s)")


@cli.group()
def sync():
    """Synchronize with the Claude Desktop config file."""


@sync.command("pull")
@click.option("--host-config", type=click.Path(dir_okay=False), help="Host config file path")
@click.pass_context
def sync_pull(ctx: click.Context, host_config: Optional[str]):
    """Register servers found in the host config file."""
    cli_context: CLIContext = ctx.obj["cli_context"]

    async def _pull():
        result = await ConfigSync(
            cli_context.service, cli_context.host_adapter(host_config)
        ).pull()
        return _unwrap(result)

    report = _run(ctx, _pull())
    for name in report.imported:
        click.echo(f"Imported {name}")
    for name in report.skipped:
        click.echo(f"Skipped {name} (already registered)")
    for name, message in report.failed:
        click.echo(f"Failed {name}: {message}", err=True)


@sync.command("push")
@click.option("--host-config", type=click.Path(dir_okay=False), help="Host config file path")
@click.pass_context
def sync_push(ctx: click.Context, host_config: Optional[str]):
    """Overwrite the host config server list with the registry."""
    cli_context: CLIContext = ctx.obj["cli_context"]

    async def _push():
        adapter = cli_context.host_adapter(host_config)
        result = await ConfigSync(cli_context.service, adapter).push()
        return result, adapter.config_path

    result, path = _run(ctx, _push())
    report = _unwrap_or_exit(ctx, result)
    click.echo(f"Wrote {report.written} server(s) to {path}")


@cli.command("host-path")
@click.pass_context
def host_path(ctx: click.Context):
    """Print the host config file location for this platform."""
    cli_context: CLIContext = ctx.obj["cli_context"]
    try:
        click.echo(str(cli_context.host_adapter().config_path))
    except ConfigIOError as error:
        handle_cli_error(error, ctx)


async def _in_loop(cli_context: CLIContext, call: Callable[[ServerService], Awaitable[T]]) -> T:
    # The repository creates its asyncio primitives on first use, inside the loop
    return await call(cli_context.service)


async def _call(
    cli_context: CLIContext, call: Callable[[ServerService], Awaitable[ServiceResult]]
) -> Any:
    return _unwrap(await _in_loop(cli_context, call))


def _unwrap_or_exit(ctx: click.Context, result: ServiceResult) -> Any:
    try:
        return _unwrap(result)
    except CLIError as error:
        handle_cli_error(error, ctx)


def main():
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
