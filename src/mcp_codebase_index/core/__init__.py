"""Core functionality for MCP Codebase Index."""

from .exceptions import (
    CollectionNotFoundError,
    ConfigError,
    ConfigurationError,
    DimensionMismatchError,
    DuplicateLibraryError,
    EmbeddingError,
    EmbeddingTimeoutError,
    IndexingError,
    InvalidPathError,
    LibraryBusyError,
    LibraryError,
    LibraryNotFoundError,
    MCIError,
    MCPCodebaseIndexError,
    ParsingError,
    PersistenceError,
    QueueError,
    SearchError,
    TaskNotFoundError,
    VectorStoreError,
    VectorStoreInitializationError,
    WatcherError,
)

__all__ = [
    # Exceptions
    "CollectionNotFoundError",
    "ConfigError",
    "ConfigurationError",
    "DimensionMismatchError",
    "DuplicateLibraryError",
    "EmbeddingError",
    "EmbeddingTimeoutError",
    "IndexingError",
    "InvalidPathError",
    "LibraryBusyError",
    "LibraryError",
    "LibraryNotFoundError",
    "MCIError",
    "MCPCodebaseIndexError",
    "ParsingError",
    "PersistenceError",
    "QueueError",
    "SearchError",
    "TaskNotFoundError",
    "VectorStoreError",
    "VectorStoreInitializationError",
    "WatcherError",
]
