"""MCP Config Manager - registry, lifecycle and host-config sync for MCP servers."""

from .__version__ import __version__

__all__ = ["__version__"]
