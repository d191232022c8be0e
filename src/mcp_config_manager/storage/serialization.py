"""Export and import codecs for server collections (JSON, YAML, CSV)."""

import csv
import io
import json
from typing import Any, Dict, List, Sequence

import yaml

from ..domain.models import Server

CSV_COLUMNS = [
    "id",
    "name",
    "description",
    "command",
    "args",
    "environment",
    "working_directory",
    "auto_restart",
    "tags",
    "status",
    "version",
    "created_at",
    "updated_at",
]


class SerializationError(ValueError):
    """Raised when a payload cannot be encoded or decoded."""


def dump_servers(servers: Sequence[Server], format: str = "json") -> str:
    """Encode servers in the requested format."""
    records = [server.to_dict() for server in servers]
    if format == "json":
        return json.dumps(records, indent=2, sort_keys=True)
    if format == "yaml":
        return yaml.safe_dump(records, sort_keys=True, default_flow_style=False)
    if format == "csv":
        return _dump_csv(servers)
    raise SerializationError(f"Unsupported export format: {format}")


def load_records(data: str, format: str = "json") -> List[Dict[str, Any]]:
    """Decode a payload into raw server records.

    CSV rows are expanded back into the nested ``configuration`` shape so
    every format yields the same record layout.
    """
    try:
        if format == "json":
            records = json.loads(data)
        elif format == "yaml":
            records = yaml.safe_load(data)
        elif format == "csv":
            records = _load_csv(data)
        else:
            raise SerializationError(f"Unsupported import format: {format}")
    except (json.JSONDecodeError, yaml.YAMLError, csv.Error) as e:
        raise SerializationError(f"Malformed {format} payload: {str(e)}")

    if records is None:
        return []
    if isinstance(records, dict):
        records = records.get("servers", [records])
    if not isinstance(records, list) or not all(isinstance(r, dict) for r in records):
        raise SerializationError("Payload must be a list of server records")
    return records


def _dump_csv(servers: Sequence[Server]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS, lineterminator="\n")
    writer.writeheader()
    for server in servers:
        config = server.configuration
        writer.writerow(
            {
                "id": server.id,
                "name": server.name,
                "description": server.description,
                "command": config.command,
                "args": json.dumps(list(config.args)),
                "environment": json.dumps(dict(config.environment), sort_keys=True),
                "working_directory": config.working_directory or "",
                "auto_restart": "true" if config.auto_restart else "false",
                "tags": ";".join(server.tags),
                "status": server.status.kind.value,
                "version": server.version,
                "created_at": server.created_at.isoformat(),
                "updated_at": server.updated_at.isoformat(),
            }
        )
    return buffer.getvalue()


def _load_csv(data: str) -> List[Dict[str, Any]]:
    records = []
    for row in csv.DictReader(io.StringIO(data)):
        try:
            args = json.loads(row.get("args") or "[]")
            environment = json.loads(row.get("environment") or "{}")
        except json.JSONDecodeError as e:
            raise SerializationError(f"Malformed CSV row for '{row.get('name')}': {str(e)}")

        record: Dict[str, Any] = {
            "name": row.get("name", ""),
            "description": row.get("description") or "",
            "configuration": {
                "command": row.get("command", ""),
                "args": args,
                "environment": environment,
                "working_directory": row.get("working_directory") or None,
                "auto_restart": (row.get("auto_restart") or "").lower() == "true",
            },
            "tags": [tag for tag in (row.get("tags") or "").split(";") if tag],
        }
        # Status is runtime state and is not restored from CSV
        for key in ("id", "created_at", "updated_at"):
            if row.get(key):
                record[key] = row[key]
        if row.get("version"):
            record["version"] = int(row["version"])
        records.append(record)
    return records
