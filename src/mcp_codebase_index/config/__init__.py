"""Configuration models and defaults for MCP Codebase Index."""
