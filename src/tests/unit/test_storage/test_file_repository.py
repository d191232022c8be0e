"""Tests for the JSON file repository and its encryption."""

import json
import os
from unittest.mock import patch

import pytest

from mcp_config_manager.config.settings import ServiceConfig, Settings
from mcp_config_manager.domain.events import ServerEvent
from mcp_config_manager.domain.models import ServerDelta, UpdateServerInput
from mcp_config_manager.domain.status import ErrorInfo, ErrorStatus, StatusKind
from mcp_config_manager.services.server_service import ServerService
from mcp_config_manager.storage.base import RepositoryError, RepositoryOptions
from mcp_config_manager.storage.factory import (
    create_in_memory,
    create_persistent,
    create_repository,
)
from mcp_config_manager.storage.file_repository import (
    FileServerRepository,
    PayloadCipher,
    derive_key,
)
from mcp_config_manager.storage.memory import InMemoryServerRepository


class TestFileServerRepository:
    """Test persistence across repository instances."""

    @pytest.mark.asyncio
    async def test_state_survives_reopen(self, tmp_path, server_input):
        path = tmp_path / "servers.json"
        repository = FileServerRepository(path)
        server = await repository.create(server_input())
        await repository.update(server.id, UpdateServerInput(description="saved"), 1)
        await repository.save_event(ServerEvent.deleted(server.id))

        reopened = FileServerRepository(path)
        found = await reopened.find_by_id(server.id)
        assert found.description == "saved"
        assert found.version == 2
        assert len(await reopened.get_events(server.id)) == 1

    @pytest.mark.asyncio
    async def test_file_layout(self, tmp_path, server_input):
        path = tmp_path / "nested" / "servers.json"
        repository = FileServerRepository(path)
        await repository.create(server_input())

        payload = json.loads(path.read_text())
        assert payload["format_version"] == 1
        assert payload["servers"][0]["name"] == "alpha"
        assert not path.with_name("servers.json.tmp").exists()

    @pytest.mark.asyncio
    async def test_missing_file_starts_empty(self, tmp_path):
        repository = FileServerRepository(tmp_path / "absent.json")
        assert await repository.count() == 0

    @pytest.mark.asyncio
    async def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "servers.json"
        path.write_text("{broken")
        with pytest.raises(RepositoryError) as exc_info:
            await FileServerRepository(path).find_all()
        assert "Failed to parse" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_state(self, tmp_path, server_input):
        repository = FileServerRepository(
            tmp_path / "servers.json", RepositoryOptions(retry_count=1)
        )
        server = await repository.create(server_input())

        with patch.object(
            FileServerRepository, "_write_file", side_effect=OSError("disk full")
        ):
            with pytest.raises(RepositoryError):
                await repository.update(server.id, UpdateServerInput(description="lost"), 1)

        current = await repository.find_by_id(server.id)
        assert current.version == 1
        assert current.description == ""

    @pytest.mark.asyncio
    async def test_reload_drops_stale_running_status(self, tmp_path, server_input, process_manager):
        path = tmp_path / "servers.json"
        first = ServerService(
            FileServerRepository(path),
            process_manager,
            config=ServiceConfig(restart_settle_delay=0),
        )
        created = (await first.create_server(server_input())).value
        assert (await first.start_server(created.id)).value.status.kind is StatusKind.RUNNING

        # New session: nothing tracks the process started above
        fresh_manager = type(process_manager)()
        second = ServerService(
            FileServerRepository(path),
            fresh_manager,
            config=ServiceConfig(restart_settle_delay=0),
        )

        reloaded = (await second.get_server(created.id)).value
        assert reloaded.status.kind is StatusKind.STOPPED
        assert reloaded.status.reason == "reloaded"
        assert reloaded.version == 2

        started = await second.start_server(created.id)
        assert started.ok
        assert started.value.status.kind is StatusKind.RUNNING
        assert fresh_manager.started == [created.id]

    @pytest.mark.asyncio
    async def test_reload_keeps_settled_statuses(self, tmp_path, server_input):
        path = tmp_path / "servers.json"
        repository = FileServerRepository(path)
        server = await repository.create(server_input())
        await repository.update(
            server.id, ServerDelta(status=ErrorStatus(ErrorInfo("START_ERROR", "boom"))), 1
        )

        reloaded = await FileServerRepository(path).find_by_id(server.id)
        assert reloaded.status.kind is StatusKind.ERROR


class TestEncryption:
    """Test AES-GCM at-rest encryption."""

    @pytest.mark.asyncio
    async def test_encrypted_file_is_opaque_and_readable(self, tmp_path, server_input):
        path = tmp_path / "servers.json"
        options = RepositoryOptions(encryption_key="correct horse battery staple")
        server = await FileServerRepository(path, options).create(
            server_input(environment={"API_TOKEN": "s3cret"})
        )

        raw = path.read_text()
        assert "s3cret" not in raw
        assert "alpha" not in raw

        found = await FileServerRepository(path, options).find_by_id(server.id)
        assert found.configuration.environment == {"API_TOKEN": "s3cret"}

    @pytest.mark.asyncio
    async def test_wrong_key_fails(self, tmp_path, server_input):
        path = tmp_path / "servers.json"
        await FileServerRepository(path, RepositoryOptions(encryption_key="key-one")).create(
            server_input()
        )

        with pytest.raises(RepositoryError) as exc_info:
            await FileServerRepository(
                path, RepositoryOptions(encryption_key="key-two")
            ).find_all()
        assert "decrypt" in exc_info.value.message

    def test_cipher_uses_fresh_nonce(self):
        cipher = PayloadCipher("passphrase")
        first = cipher.encrypt("hello")
        second = cipher.encrypt("hello")
        assert first != second
        assert cipher.decrypt(first) == "hello"

    def test_derive_key(self):
        raw = os.urandom(32)
        assert derive_key(raw.hex()) == raw
        assert len(derive_key("short passphrase")) == 32

    def test_empty_key_rejected(self):
        with pytest.raises(RepositoryError):
            PayloadCipher("")


class TestFactory:
    def test_create_helpers(self, tmp_path):
        assert isinstance(create_in_memory(), InMemoryServerRepository)
        repository = create_persistent(tmp_path / "s.json")
        assert isinstance(repository, FileServerRepository)

    def test_create_repository_from_settings(self, tmp_path):
        settings = Settings(data_dir=str(tmp_path))
        repository = create_repository(settings)
        assert isinstance(repository, FileServerRepository)
        assert repository.path == tmp_path / "servers.json"

        settings.repository.backend = "memory"
        assert type(create_repository(settings)) is InMemoryServerRepository

    def test_unknown_backend(self, tmp_path):
        settings = Settings(data_dir=str(tmp_path))
        settings.repository.backend = "sqlite"
        with pytest.raises(ValueError):
            create_repository(settings)
