"""Command-line interface for MCP Codebase Index."""
