"""Append-only server events used for audit history and watch notifications."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from .status import ErrorInfo
from .values import ServerId, parse_timestamp, utc_now


class EventType(Enum):
    CREATED = "ServerCreated"
    UPDATED = "ServerUpdated"
    DELETED = "ServerDeleted"
    STARTED = "ServerStarted"
    STOPPED = "ServerStopped"
    ERROR_OCCURRED = "ServerErrorOccurred"


@dataclass(frozen=True)
class ServerEvent:
    """Immutable fact about one server.

    ``payload`` carries the variant-specific data: the creation input for
    ``ServerCreated``, the update delta for ``ServerUpdated``, the pid for
    ``ServerStarted``, the reason for ``ServerStopped`` and the error detail
    for ``ServerErrorOccurred``. ``version`` is the entity version the event
    produced, when the event corresponds to a committed write.
    """

    type: EventType
    server_id: ServerId
    payload: Dict[str, Any] = field(default_factory=dict)
    version: Optional[int] = None
    timestamp: datetime = field(default_factory=utc_now)
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @classmethod
    def created(cls, server_id: ServerId, data: Dict[str, Any], version: int = 1) -> "ServerEvent":
        return cls(EventType.CREATED, server_id, {"data": data}, version)

    @classmethod
    def updated(cls, server_id: ServerId, data: Dict[str, Any], version: int) -> "ServerEvent":
        return cls(EventType.UPDATED, server_id, {"data": data}, version)

    @classmethod
    def deleted(cls, server_id: ServerId) -> "ServerEvent":
        return cls(EventType.DELETED, server_id)

    @classmethod
    def started(
        cls, server_id: ServerId, pid: Optional[int], version: int, port: Optional[int] = None
    ) -> "ServerEvent":
        payload: Dict[str, Any] = {"pid": pid}
        if port is not None:
            payload["port"] = port
        return cls(EventType.STARTED, server_id, payload, version)

    @classmethod
    def stopped(cls, server_id: ServerId, reason: Optional[str], version: int) -> "ServerEvent":
        return cls(EventType.STOPPED, server_id, {"reason": reason}, version)

    @classmethod
    def error_occurred(
        cls, server_id: ServerId, error: ErrorInfo, version: Optional[int] = None
    ) -> "ServerEvent":
        return cls(EventType.ERROR_OCCURRED, server_id, {"error": error.to_dict()}, version)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "type": self.type.value,
            "server_id": str(self.server_id),
            "payload": self.payload,
            "version": self.version,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerEvent":
        return cls(
            type=EventType(data["type"]),
            server_id=ServerId(data["server_id"]),
            payload=dict(data.get("payload") or {}),
            version=data.get("version"),
            timestamp=parse_timestamp(data["timestamp"]),
            event_id=data.get("event_id") or str(uuid.uuid4()),
        )
