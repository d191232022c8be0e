"""Version information for mcp-config-manager."""

__version__ = "2.0.0"
