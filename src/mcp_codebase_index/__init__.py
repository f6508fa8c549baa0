"""MCP Codebase Index - incremental semantic indexing for source-code trees."""

__version__ = "0.3.0"
__author__ = "MCP Codebase Index maintainers"

from .core.exceptions import MCPCodebaseIndexError, MCIError

__all__ = ["MCPCodebaseIndexError", "MCIError", "__version__"]
