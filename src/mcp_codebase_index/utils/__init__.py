"""Utility helpers for MCP Codebase Index."""
