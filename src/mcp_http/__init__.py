"""Expose a stdio MCP server process over a single HTTP endpoint."""

__version__ = "0.1.0"
