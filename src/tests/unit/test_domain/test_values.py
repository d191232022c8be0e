"""Tests for constructor-validated domain values."""

import pytest

from mcp_config_manager.domain.exceptions import InvalidValueError
from mcp_config_manager.domain.values import (
    Command,
    EnvironmentKey,
    Port,
    ServerId,
    ServerName,
    parse_timestamp,
)


class TestServerName:
    """Test ServerName construction rules."""

    def test_trims_whitespace(self):
        assert ServerName("  my server  ") == "my server"

    @pytest.mark.parametrize("value", ["ab", "x" * 101, "   ab   "])
    def test_rejects_bad_length(self, value):
        with pytest.raises(InvalidValueError) as exc_info:
            ServerName(value)
        assert exc_info.value.field == "name"

    def test_accepts_boundary_lengths(self):
        assert ServerName("abc") == "abc"
        assert len(ServerName("x" * 100)) == 100

    @pytest.mark.parametrize("value", ["bad/name", "name!", "dot.name", "émoji"])
    def test_rejects_disallowed_characters(self, value):
        with pytest.raises(InvalidValueError):
            ServerName(value)

    def test_accepts_hyphen_underscore_and_space(self):
        assert ServerName("my-server_01 prod") == "my-server_01 prod"


class TestCommand:
    """Test the command injection denylist."""

    @pytest.mark.parametrize(
        "value",
        ["node; rm -rf /", "a && b", "a || b", "cat x | sh", "echo > f", "sh < f", "`id`", "$(id)"],
    )
    def test_rejects_shell_sequences(self, value):
        with pytest.raises(InvalidValueError) as exc_info:
            Command(value)
        assert "forbidden shell sequence" in exc_info.value.message

    def test_rejects_empty(self):
        with pytest.raises(InvalidValueError):
            Command("   ")

    def test_accepts_plain_command(self):
        assert Command(" /usr/local/bin/node ") == "/usr/local/bin/node"


class TestServerId:
    def test_generate_is_valid_uuid(self):
        server_id = ServerId.generate()
        assert ServerId(str(server_id)) == server_id

    def test_normalizes_case(self):
        upper = "6F9619FF-8B86-D011-B42D-00C04FC964FF"
        assert ServerId(upper) == upper.lower()

    def test_rejects_non_uuid(self):
        with pytest.raises(InvalidValueError):
            ServerId("not-a-uuid")


class TestOtherValues:
    def test_environment_key_rejects_equals(self):
        with pytest.raises(InvalidValueError):
            EnvironmentKey("A=B")

    def test_port_bounds(self):
        assert Port(0) == 0
        assert Port(65535) == 65535
        with pytest.raises(InvalidValueError):
            Port(65536)
        with pytest.raises(InvalidValueError):
            Port(True)

    def test_parse_timestamp_assumes_utc(self):
        parsed = parse_timestamp("2024-01-02T03:04:05")
        assert parsed.tzinfo is not None
        assert parse_timestamp("2024-01-02T03:04:05Z") == parsed
