"""Tests for the main CLI module."""

import asyncio
import json

import pytest
import yaml
from click.testing import CliRunner

from mcp_config_manager import __version__
from mcp_config_manager.main import CLIContext, CLIError, cli


class TestCLI:
    """Test the main CLI functionality."""

    @pytest.fixture(autouse=True)
    def setup_runner(self, tmp_path):
        self.runner = CliRunner()
        self.data_dir = tmp_path / "data"
        self.tmp_path = tmp_path

    def invoke(self, *args):
        return self.runner.invoke(cli, ["--data-dir", str(self.data_dir), *args])

    def add(self, name, *extra):
        result = self.invoke("add", name, "node", "-a", "server.js", *extra)
        assert result.exit_code == 0, result.output
        return result

    def server_id(self, name):
        result = self.invoke("list", "--format", "json", "--search", name)
        records = [r for r in json.loads(result.output) if r["name"] == name]
        return records[0]["id"]

    def test_cli_help(self):
        result = self.runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "MCP server configuration manager" in result.output
        for command in ("add", "list", "remove", "sync", "export", "import"):
            assert command in result.output

    def test_cli_version(self):
        result = self.runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "mcp-config-manager" in result.output
        assert __version__ in result.output

    def test_cli_verbose_quiet_conflict(self):
        result = self.runner.invoke(cli, ["--verbose", "--quiet", "list"])
        assert result.exit_code != 0
        assert "Cannot use both --verbose and --quiet" in result.output

    def test_add_and_list(self):
        result = self.add("alpha", "-t", "dev", "-e", "API_TOKEN=x", "-d", "Alpha server")
        assert "Created alpha" in result.output

        listed = self.invoke("list")
        assert listed.exit_code == 0
        assert "alpha" in listed.output
        assert "Idle" in listed.output
        assert "1 of 1 server(s)" in listed.output

        records = json.loads(self.invoke("list", "--format", "json").output)
        assert records[0]["configuration"]["environment"] == {"API_TOKEN": "x"}
        assert records[0]["tags"] == ["dev"]

    def test_registry_persists_in_data_dir(self):
        self.add("alpha")
        assert (self.data_dir / "servers.json").exists()

    def test_add_duplicate_name_fails(self):
        self.add("alpha")
        result = self.invoke("add", "alpha", "python")
        assert result.exit_code == 1
        assert "DUPLICATE_NAME" in result.output

    def test_add_invalid_reports_all_errors(self):
        result = self.invoke("add", "x", "node; rm")
        assert result.exit_code == 1
        assert "VALIDATION_ERROR" in result.output
        assert "Invalid name" in result.output
        assert "Invalid command" in result.output

    def test_add_bad_env_pair(self):
        result = self.invoke("add", "alpha", "node", "-e", "NOEQUALS")
        assert result.exit_code != 0
        assert "KEY=VALUE" in result.output

    def test_list_filters_and_paging(self):
        self.add("alpha", "-t", "dev")
        self.add("beta", "-t", "prod")
        self.add("gamma", "-t", "dev")

        dev = json.loads(self.invoke("list", "--tag", "dev", "--format", "json").output)
        assert [r["name"] for r in dev] == ["alpha", "gamma"]

        desc = json.loads(self.invoke("list", "--desc", "--format", "json").output)
        assert [r["name"] for r in desc] == ["gamma", "beta", "alpha"]

        page = json.loads(
            self.invoke("list", "--page", "2", "--limit", "2", "--format", "json").output
        )
        assert [r["name"] for r in page] == ["gamma"]

        empty = self.invoke("list", "--status", "running")
        assert "No servers found" in empty.output

    def test_list_rejects_page_zero(self):
        result = self.invoke("list", "--page", "0")
        assert result.exit_code != 0

    def test_show(self):
        self.add("alpha")
        result = self.invoke("show", self.server_id("alpha"))
        assert result.exit_code == 0
        assert yaml.safe_load(result.output)["name"] == "alpha"

    def test_show_missing(self):
        result = self.invoke("show", "00000000-0000-4000-8000-000000000000")
        assert result.exit_code == 1
        assert "NOT_FOUND" in result.output

    def test_update_with_expected_version(self):
        self.add("alpha")
        server_id = self.server_id("alpha")

        result = self.invoke("update", server_id, "-d", "changed", "--expected-version", "1")
        assert result.exit_code == 0
        assert "version 2" in result.output

        stale = self.invoke("update", server_id, "-d", "again", "--expected-version", "1")
        assert stale.exit_code == 1
        assert "CONCURRENT_MODIFICATION" in stale.output

    def test_remove_and_events(self):
        self.add("alpha")
        server_id = self.server_id("alpha")

        removed = self.invoke("remove", server_id)
        assert removed.exit_code == 0
        assert f"Removed {server_id}" in removed.output

        events = self.invoke("events", server_id)
        assert "ServerCreated" in events.output
        assert "ServerDeleted" in events.output

    def test_remove_missing_fails(self):
        result = self.invoke("remove", "00000000-0000-4000-8000-000000000000")
        assert result.exit_code == 1

    def test_export_and_import(self):
        self.add("alpha")
        export_file = self.tmp_path / "servers.yaml"
        result = self.invoke("export", "--format", "yaml", "-o", str(export_file))
        assert result.exit_code == 0

        other = self.runner.invoke(
            cli, ["--data-dir", str(self.tmp_path / "other"), "import", str(export_file)]
        )
        assert other.exit_code == 0, other.output
        assert "Imported 1 server(s)" in other.output

    def test_export_csv_to_stdout(self):
        self.add("alpha")
        result = self.invoke("export", "--format", "csv")
        assert result.output.splitlines()[0].startswith("id,name,description,command")

    def test_sync_push_and_pull(self):
        self.add("alpha", "-e", "TOKEN=t")
        host_file = self.tmp_path / "claude_desktop_config.json"

        pushed = self.invoke("sync", "push", "--host-config", str(host_file))
        assert pushed.exit_code == 0, pushed.output
        assert "Wrote 1 server(s)" in pushed.output
        config = json.loads(host_file.read_text())
        assert config["mcpServers"]["alpha"]["env"] == {"TOKEN": "t"}

        pulled = self.runner.invoke(
            cli,
            [
                "--data-dir",
                str(self.tmp_path / "fresh"),
                "sync",
                "pull",
                "--host-config",
                str(host_file),
            ],
        )
        assert pulled.exit_code == 0
        assert "Imported alpha" in pulled.output

    def test_sync_pull_bad_file(self):
        host_file = self.tmp_path / "claude_desktop_config.json"
        host_file.write_text("{nope")
        result = self.invoke("sync", "pull", "--host-config", str(host_file))
        assert result.exit_code == 1
        assert "CONFIG_IO_ERROR" in result.output

    def test_host_path(self):
        result = self.invoke("host-path")
        assert result.exit_code == 0
        assert result.output.strip().endswith("claude_desktop_config.json")

    def test_service_built_inside_event_loop(self, monkeypatch):
        self.add("alpha")
        server_id = self.server_id("alpha")
        build_service = CLIContext.service.fget
        in_loop = []

        def tracking(context):
            try:
                asyncio.get_running_loop()
                in_loop.append(True)
            except RuntimeError:
                in_loop.append(False)
            return build_service(context)

        monkeypatch.setattr(CLIContext, "service", property(tracking))
        for args in (
            ("show", server_id),
            ("update", server_id, "-d", "changed"),
            ("events", server_id),
            ("export",),
            ("remove", server_id),
        ):
            result = self.invoke(*args)
            assert result.exit_code == 0, result.output

        assert len(in_loop) == 5
        assert all(in_loop)

    def test_memory_backend(self):
        result = self.invoke("--backend", "memory", "list")
        assert result.exit_code == 0
        assert "No servers found" in result.output


class TestCLIContext:
    """Test the CLI context and config file loading."""

    def test_config_file_and_overrides(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            yaml.safe_dump({"repository": {"backend": "memory", "cache_size": 8}})
        )

        context = CLIContext(
            config_file=str(config_file), overrides={"data_dir": str(tmp_path)}
        )

        assert context.settings.repository.backend == "memory"
        assert context.settings.repository.cache_size == 8
        assert context.settings.data_dir == str(tmp_path)

    def test_invalid_config_file(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- just\n- a list\n")
        with pytest.raises(CLIError):
            CLIContext(config_file=str(config_file))
