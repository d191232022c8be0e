"""Tests for the host config adapter and registry sync."""

import json
from pathlib import Path

import pytest

from mcp_config_manager.services.results import ErrorCode
from mcp_config_manager.sync.host_config import (
    ConfigIOError,
    ConfigSync,
    HostConfigAdapter,
    HostServerEntry,
    UnsupportedPlatformError,
    resolve_config_path,
)


class TestResolveConfigPath:
    """Test per-platform host config locations."""

    def test_macos(self):
        path = resolve_config_path("darwin", {}, Path("/Users/me"))
        assert path == Path(
            "/Users/me/Library/Application Support/Claude/claude_desktop_config.json"
        )

    def test_windows_uses_appdata(self):
        path = resolve_config_path("win32", {"APPDATA": "/appdata"}, Path("/home/me"))
        assert path == Path("/appdata/Claude/claude_desktop_config.json")

    def test_windows_without_appdata(self):
        path = resolve_config_path("win32", {}, Path("/home/me"))
        assert path == Path("/home/me/AppData/Roaming/Claude/claude_desktop_config.json")

    def test_linux(self):
        path = resolve_config_path("linux", {}, Path("/home/me"))
        assert path == Path("/home/me/.config/Claude/claude_desktop_config.json")

    def test_unsupported(self):
        with pytest.raises(UnsupportedPlatformError):
            resolve_config_path("sunos5", {}, Path("/home/me"))


class TestHostConfigAdapter:
    """Test reading and writing the host config file."""

    def setup_method(self):
        self.entry = HostServerEntry("files", "npx", ["-y", "server-files"], {})

    @pytest.mark.asyncio
    async def test_missing_file_reads_empty(self, tmp_path):
        adapter = HostConfigAdapter(tmp_path / "missing.json")
        assert await adapter.read_config() == {"mcpServers": {}}
        assert await adapter.load_servers() == []

    @pytest.mark.asyncio
    async def test_write_format(self, tmp_path):
        path = tmp_path / "claude" / "config.json"
        adapter = HostConfigAdapter(path)
        await adapter.save_servers([self.entry])

        text = path.read_text()
        assert text.endswith("\n")
        assert text == json.dumps(json.loads(text), indent=2, sort_keys=True) + "\n"
        # Empty env is omitted
        assert json.loads(text)["mcpServers"]["files"] == {
            "command": "npx",
            "args": ["-y", "server-files"],
        }

    @pytest.mark.asyncio
    async def test_round_trip_keeps_other_keys(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"globalShortcut": "Ctrl+Space", "mcpServers": {}}))
        adapter = HostConfigAdapter(path)

        entry = HostServerEntry("db", "python", ["-m", "db"], {"DB_URL": "sqlite://"})
        await adapter.save_servers([entry])

        assert json.loads(path.read_text())["globalShortcut"] == "Ctrl+Space"
        assert await adapter.load_servers() == [entry]

    @pytest.mark.asyncio
    async def test_add_update_remove(self, tmp_path):
        adapter = HostConfigAdapter(tmp_path / "config.json")
        await adapter.add_server(self.entry)
        with pytest.raises(ValueError):
            await adapter.add_server(self.entry)

        renamed = HostServerEntry("files2", "npx", [], {"ROOT": "/"})
        await adapter.update_server("files", renamed)
        assert [e.name for e in await adapter.load_servers()] == ["files2"]

        await adapter.remove_server("files2")
        with pytest.raises(KeyError):
            await adapter.remove_server("files2")
        with pytest.raises(KeyError):
            await adapter.update_server("ghost", renamed)

    @pytest.mark.asyncio
    async def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigIOError):
            await HostConfigAdapter(path).read_config()

    @pytest.mark.asyncio
    async def test_entry_without_command(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mcpServers": {"bad": {"args": []}}}))
        with pytest.raises(ConfigIOError):
            await HostConfigAdapter(path).load_servers()


class TestConfigSync:
    """Test pulling from and pushing to the host file."""

    @pytest.mark.asyncio
    async def test_pull_registers_new_entries(self, tmp_path, service, server_input):
        await service.create_server(server_input("existing"))
        path = tmp_path / "config.json"
        path.write_text(
            json.dumps(
                {
                    "mcpServers": {
                        "existing": {"command": "node"},
                        "files": {"command": "npx", "args": ["-y"], "env": {"ROOT": "/"}},
                        "x": {"command": "node"},
                    }
                }
            )
        )

        report = (await ConfigSync(service, HostConfigAdapter(path)).pull()).value

        assert report.imported == ["files"]
        assert report.skipped == ["existing"]
        assert [name for name, _ in report.failed] == ["x"]
        files = (await service.search_servers("files")).value.servers[0]
        assert files.configuration.environment == {"ROOT": "/"}

    @pytest.mark.asyncio
    async def test_push_overwrites_server_map(self, tmp_path, service, server_input):
        await service.create_server(server_input("alpha", environment={"TOKEN": "t"}))
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"mcpServers": {"stale": {"command": "old"}}, "theme": "dark"}))

        report = (await ConfigSync(service, HostConfigAdapter(path)).push()).value

        config = json.loads(path.read_text())
        assert report.written == 1
        assert config["theme"] == "dark"
        assert config["mcpServers"] == {
            "alpha": {"command": "node", "args": ["server.js"], "env": {"TOKEN": "t"}}
        }

    @pytest.mark.asyncio
    async def test_pull_reports_unreadable_file(self, tmp_path, service):
        path = tmp_path / "config.json"
        path.write_text("[1, 2")
        result = await ConfigSync(service, HostConfigAdapter(path)).pull()
        assert result.error.code is ErrorCode.CONFIG_IO_ERROR
