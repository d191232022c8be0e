"""Pytest configuration and shared fixtures."""

from typing import Dict, List, Optional

import pytest

from mcp_config_manager.config.settings import ServiceConfig
from mcp_config_manager.domain.models import CreateServerInput, Server
from mcp_config_manager.events.bus import EventBus
from mcp_config_manager.management.process_manager import (
    ProcessInfo,
    ProcessManager,
    ProcessStartError,
    ProcessStopError,
)
from mcp_config_manager.services.server_service import ServerService
from mcp_config_manager.storage.base import RepositoryOptions
from mcp_config_manager.storage.memory import InMemoryServerRepository

FAKE_PID = 4242


class FakeProcessManager(ProcessManager):
    """Process manager double that records calls instead of spawning."""

    def __init__(self):
        super().__init__()
        self.started: List[str] = []
        self.stopped: List[str] = []
        self.running: Dict[str, ProcessInfo] = {}
        self.fail_start = False
        self.fail_stop = False

    async def start(self, server: Server) -> ProcessInfo:
        server_id = str(server.id)
        self.started.append(server_id)
        if self.fail_start:
            raise ProcessStartError("spawn failed: command not found", server_id)
        info = ProcessInfo(server_id=server_id, pid=FAKE_PID)
        self.running[server_id] = info
        return info

    async def stop(self, server_id: str) -> None:
        self.stopped.append(str(server_id))
        if self.fail_stop:
            raise ProcessStopError("process refused to exit", str(server_id))
        self.running.pop(str(server_id), None)

    def is_running(self, server_id: str) -> bool:
        return str(server_id) in self.running

    def get_process(self, server_id: str) -> Optional[ProcessInfo]:
        return self.running.get(str(server_id))

    async def simulate_exit(self, server_id: str, exit_code: int = 1) -> None:
        self.running.pop(str(server_id), None)
        await self._report_exit(str(server_id), exit_code)


def make_input(name: str = "alpha", **overrides) -> CreateServerInput:
    values = {"name": name, "command": "node", "args": ("server.js",)}
    values.update(overrides)
    return CreateServerInput(**values)


@pytest.fixture
def repository() -> InMemoryServerRepository:
    """In-memory repository with default options."""
    return InMemoryServerRepository(RepositoryOptions())


@pytest.fixture
def process_manager() -> FakeProcessManager:
    return FakeProcessManager()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def service(repository, process_manager, event_bus) -> ServerService:
    """Service wired to the in-memory repository and fake process manager."""
    return ServerService(
        repository,
        process_manager,
        event_bus=event_bus,
        config=ServiceConfig(restart_settle_delay=0),
    )


@pytest.fixture
def server_input():
    """Factory for valid create inputs."""
    return make_input
