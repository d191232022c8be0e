"""Server runtime status variants and the lifecycle state machine.

A status is one of five closed variants. Every transition the system can make
goes through one of the functions in this module, and
:func:`ensure_transition` is the single gate the repository applies to any
persisted status change:

    idle / stopped / error --start ok-------> running
    idle / stopped / error --start failed---> error (retry_count + 1)
    running ----------------stop ok---------> stopped(reason)
    running ----------------process exited--> error
    any --------------------config update---> updating --> prior (or idle)
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from .exceptions import (
    AlreadyRunningError,
    InvalidTransitionError,
    InvalidValueError,
    NotRunningError,
    RetryExhaustedError,
)
from .values import Port, parse_timestamp, utc_now


class StatusKind(Enum):
    """Discriminator of the status variants, declared in sort order."""

    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    UPDATING = "updating"

    @property
    def rank(self) -> int:
        return list(StatusKind).index(self)


@dataclass(frozen=True)
class ErrorInfo:
    """Failure detail recorded in an error status or event."""

    code: str
    message: str
    timestamp: datetime = field(default_factory=utc_now)
    stack: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.stack:
            payload["stack"] = self.stack
        return payload

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ErrorInfo":
        return cls(
            code=str(data["code"]),
            message=str(data["message"]),
            timestamp=parse_timestamp(data["timestamp"]),
            stack=data.get("stack"),
        )


@dataclass(frozen=True)
class IdleStatus:
    since: datetime = field(default_factory=utc_now)
    kind = StatusKind.IDLE


@dataclass(frozen=True)
class RunningStatus:
    since: datetime = field(default_factory=utc_now)
    pid: Optional[int] = None
    port: Optional[Port] = None
    kind = StatusKind.RUNNING


@dataclass(frozen=True)
class StoppedStatus:
    since: datetime = field(default_factory=utc_now)
    reason: Optional[str] = None
    kind = StatusKind.STOPPED


@dataclass(frozen=True)
class ErrorStatus:
    error: ErrorInfo
    retry_count: int = 0
    since: datetime = field(default_factory=utc_now)
    kind = StatusKind.ERROR


@dataclass(frozen=True)
class UpdatingStatus:
    progress: int = 0
    resume: Optional["ServerStatus"] = None
    since: datetime = field(default_factory=utc_now)
    kind = StatusKind.UPDATING

    def __post_init__(self):
        if not 0 <= self.progress <= 100:
            raise InvalidValueError("progress", "must be between 0 and 100", self.progress)


ServerStatus = Union[IdleStatus, RunningStatus, StoppedStatus, ErrorStatus, UpdatingStatus]

STARTABLE_KINDS = frozenset({StatusKind.IDLE, StatusKind.STOPPED, StatusKind.ERROR})


def ensure_can_start(current: ServerStatus, retry_limit: Optional[int] = None) -> None:
    """Raise unless a start may be attempted from ``current``."""
    if current.kind is StatusKind.RUNNING:
        raise AlreadyRunningError()
    if current.kind not in STARTABLE_KINDS:
        raise InvalidTransitionError(current.kind.value, StatusKind.RUNNING.value)
    if (
        isinstance(current, ErrorStatus)
        and retry_limit is not None
        and current.retry_count > retry_limit
    ):
        raise RetryExhaustedError(current.retry_count, retry_limit)


def start_succeeded(
    current: ServerStatus, pid: Optional[int] = None, port: Optional[int] = None
) -> RunningStatus:
    ensure_can_start(current)
    return RunningStatus(pid=pid, port=Port(port) if port is not None else None)


def start_failed(current: ServerStatus, error: ErrorInfo) -> ErrorStatus:
    ensure_can_start(current)
    retry_count = current.retry_count + 1 if isinstance(current, ErrorStatus) else 1
    return ErrorStatus(error=error, retry_count=retry_count)


def stop_succeeded(current: ServerStatus, reason: Optional[str] = None) -> StoppedStatus:
    if current.kind is not StatusKind.RUNNING:
        raise NotRunningError(current.kind.value)
    return StoppedStatus(reason=reason)


def process_exited(current: ServerStatus, error: ErrorInfo) -> ErrorStatus:
    if current.kind is not StatusKind.RUNNING:
        raise NotRunningError(current.kind.value)
    return ErrorStatus(error=error, retry_count=0)


def begin_update(current: ServerStatus, progress: int = 0) -> UpdatingStatus:
    if isinstance(current, UpdatingStatus):
        return UpdatingStatus(progress=progress, resume=current.resume, since=current.since)
    return UpdatingStatus(progress=progress, resume=current)


def complete_update(current: ServerStatus) -> ServerStatus:
    """Leave ``updating`` for the status held before it, or idle."""
    if not isinstance(current, UpdatingStatus):
        raise InvalidTransitionError(current.kind.value, "completed update")
    prior = current.resume
    if prior is None or isinstance(prior, UpdatingStatus):
        return IdleStatus()
    # Re-entering the prior state keeps its payload but restarts the clock
    return _with_since(prior, utc_now())


def is_legal_transition(old: ServerStatus, new: ServerStatus) -> bool:
    """Check a persisted status change against the transition table."""
    if new.kind is StatusKind.UPDATING:
        return True
    if old.kind is StatusKind.UPDATING:
        resume = old.resume
        allowed = StatusKind.IDLE if resume is None else resume.kind
        return new.kind in (allowed, StatusKind.IDLE)
    if old.kind in STARTABLE_KINDS:
        return new.kind in (StatusKind.RUNNING, StatusKind.ERROR)
    if old.kind is StatusKind.RUNNING:
        return new.kind in (StatusKind.STOPPED, StatusKind.ERROR)
    return False


def ensure_transition(old: ServerStatus, new: ServerStatus) -> None:
    if old.kind is StatusKind.RUNNING and new.kind is StatusKind.RUNNING:
        raise AlreadyRunningError()
    if not is_legal_transition(old, new):
        raise InvalidTransitionError(old.kind.value, new.kind.value)


def status_text(status: ServerStatus) -> str:
    """Human readable one-line status."""
    if isinstance(status, IdleStatus):
        return "Idle"
    if isinstance(status, RunningStatus):
        return f"Running (PID: {status.pid})" if status.pid else "Running"
    if isinstance(status, StoppedStatus):
        return f"Stopped ({status.reason})" if status.reason else "Stopped"
    if isinstance(status, ErrorStatus):
        return f"Error: {status.error.message}"
    return f"Updating ({status.progress}%)"


def calculate_uptime_ms(status: ServerStatus, now: Optional[datetime] = None) -> int:
    if not isinstance(status, RunningStatus):
        return 0
    elapsed = (now or utc_now()) - status.since
    return max(0, int(elapsed.total_seconds() * 1000))


def status_to_dict(status: ServerStatus) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"kind": status.kind.value, "since": status.since.isoformat()}
    if isinstance(status, RunningStatus):
        if status.pid is not None:
            payload["pid"] = status.pid
        if status.port is not None:
            payload["port"] = int(status.port)
    elif isinstance(status, StoppedStatus):
        if status.reason:
            payload["reason"] = status.reason
    elif isinstance(status, ErrorStatus):
        payload["error"] = status.error.to_dict()
        payload["retry_count"] = status.retry_count
    elif isinstance(status, UpdatingStatus):
        payload["progress"] = status.progress
        if status.resume is not None:
            payload["resume"] = status_to_dict(status.resume)
    return payload


def status_from_dict(data: Dict[str, Any]) -> ServerStatus:
    try:
        kind = StatusKind(data["kind"])
    except (KeyError, ValueError):
        raise InvalidValueError("status", "unknown status kind", data.get("kind"))
    since = parse_timestamp(data["since"]) if data.get("since") else utc_now()

    if kind is StatusKind.IDLE:
        return IdleStatus(since=since)
    if kind is StatusKind.RUNNING:
        port = data.get("port")
        return RunningStatus(
            since=since,
            pid=data.get("pid"),
            port=Port(port) if port is not None else None,
        )
    if kind is StatusKind.STOPPED:
        return StoppedStatus(since=since, reason=data.get("reason"))
    if kind is StatusKind.ERROR:
        return ErrorStatus(
            since=since,
            error=ErrorInfo.from_dict(data["error"]),
            retry_count=int(data.get("retry_count", 0)),
        )
    resume = data.get("resume")
    return UpdatingStatus(
        since=since,
        progress=int(data.get("progress", 0)),
        resume=status_from_dict(resume) if resume else None,
    )


def _with_since(status: ServerStatus, since: datetime) -> ServerStatus:
    return replace(status, since=since)
