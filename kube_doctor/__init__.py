"""Kubernetes request-path and topology diagnostics exposed as MCP tools."""

__version__ = "0.1.0"
