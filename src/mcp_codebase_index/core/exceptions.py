"""Typed exception hierarchy for mcp-codebase-index.

Hierarchy
---------
MCPCodebaseIndexError (base)
├── ConfigError             – configuration / validation errors (never retried)
│   ├── ConfigurationError  – (legacy alias)
│   ├── InvalidPathError
│   └── DimensionMismatchError
├── LibraryError            – library registry errors
│   ├── LibraryNotFoundError
│   ├── LibraryBusyError
│   └── DuplicateLibraryError
├── TaskNotFoundError
├── PersistenceError        – durable state (SQLite) errors
│   └── QueueError          – durable change queue errors
├── EmbeddingError          – embedding provider failures
│   └── EmbeddingTimeoutError
├── VectorStoreError        – vector database failures
│   ├── VectorStoreInitializationError
│   └── CollectionNotFoundError
├── SearchError             – query-time failures
├── IndexingError           – indexing-run failures
│   └── ParsingError
└── WatcherError            – filesystem watch failures
"""

from typing import Any


class MCPCodebaseIndexError(Exception):
    """Base exception for MCP Codebase Index."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# Convenience alias
MCIError = MCPCodebaseIndexError


# ── Configuration layer ─────────────────────────────────────────────────


class ConfigError(MCPCodebaseIndexError):
    """Configuration / validation errors.

    Fatal for the triggering operation and never retried automatically.
    """

    pass


# Legacy alias for backward compatibility
ConfigurationError = ConfigError


class InvalidPathError(ConfigError):
    """Library root path does not exist or is not a directory."""

    pass


class DimensionMismatchError(ConfigError):
    """Embedding dimensionality does not match the target collection."""

    pass


# ── Library / task registry ─────────────────────────────────────────────


class LibraryError(MCPCodebaseIndexError):
    """Library registry errors."""

    pass


class LibraryNotFoundError(LibraryError):
    """No library with the requested identity."""

    pass


class LibraryBusyError(LibraryError):
    """Library already has an active indexing run."""

    pass


class DuplicateLibraryError(LibraryError):
    """An active library already owns the root path."""

    pass


class TaskNotFoundError(MCPCodebaseIndexError):
    """No indexing task with the requested identity."""

    pass


# ── Durable state ───────────────────────────────────────────────────────


class PersistenceError(MCPCodebaseIndexError):
    """Durable state (SQLite) read/write failed."""

    pass


class QueueError(PersistenceError):
    """Durable change queue read/write failed."""

    pass


# ── Embedding layer ─────────────────────────────────────────────────────


class EmbeddingError(MCPCodebaseIndexError):
    """Embedding generation errors."""

    pass


class EmbeddingTimeoutError(EmbeddingError):
    """Embedding call exceeded its timeout."""

    pass


# ── Vector store layer ──────────────────────────────────────────────────


class VectorStoreError(MCPCodebaseIndexError):
    """Vector store errors (LanceDB / storage layer)."""

    pass


class VectorStoreInitializationError(VectorStoreError):
    """Vector store connection or initialization failed."""

    pass


class CollectionNotFoundError(VectorStoreError):
    """Operation referenced a collection that does not exist."""

    pass


# ── Search / indexing / watching ────────────────────────────────────────


class SearchError(MCPCodebaseIndexError):
    """Search operation failed."""

    pass


class IndexingError(MCPCodebaseIndexError):
    """Indexing operation failed.

    Named ``IndexingError`` (not ``IndexError``) to avoid shadowing
    the Python built-in ``IndexError``.
    """

    pass


class ParsingError(IndexingError):
    """Content unit extraction errors (subset of indexing errors)."""

    pass


class WatcherError(MCPCodebaseIndexError):
    """Filesystem watcher errors."""

    pass
