"""Default configurations for MCP Codebase Index."""

import os
from pathlib import Path

# Name of the per-user data directory (SQLite state + LanceDB vectors)
DATA_DIR_NAME = ".mcp-codebase-index"

# Watch configuration defaults
DEFAULT_DEBOUNCE_MS = 500
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10 MB

# Change-event housekeeping
DEFAULT_MAX_EVENT_RETRIES = 3
DEFAULT_EVENT_MAX_AGE_HOURS = 168  # one week
DEFAULT_CLEANUP_INTERVAL_HOURS = 24
DEFAULT_QUEUE_POLL_INTERVAL_MS = 5000

# Watcher supervision
DEFAULT_WATCH_HEALTH_CHECK_SECONDS = 5.0
DEFAULT_WATCH_RESTART_DELAY_SECONDS = 5.0
DEFAULT_WATCH_RESTART_ATTEMPTS = 3

# Provider selector (consecutive-failure breaker)
DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_FAILOVER_COOLDOWN_SECONDS = 60.0

# Statistics history kept per library
MAX_HISTORY_ENTRIES = 20

# Default include patterns (glob, matched against the file name)
DEFAULT_INCLUDE_PATTERNS = [
    "*.cs",
    "*.cshtml",
    "*.py",
    "*.js",
    "*.jsx",
    "*.ts",
    "*.tsx",
    "*.java",
    "*.go",
    "*.rs",
    "*.cpp",
    "*.c",
    "*.h",
    "*.hpp",
    "*.md",
]

# Directories that are never descended into
DEFAULT_IGNORE_DIRS = [
    # Version control
    ".git",
    ".hg",
    ".svn",
    # Python caches and environments
    "__pycache__",
    ".mypy_cache",
    ".pytest_cache",
    ".ruff_cache",
    ".tox",
    ".venv",
    "venv",
    # JavaScript/Node.js
    "bower_components",
    "coverage",
    "node_modules",
    # .NET build outputs
    "bin",
    "obj",
    ".vs",
    # Build outputs
    "build",
    "dist",
    "target",
    # IDEs and editors
    ".idea",
    ".vscode",
    # Our own data directory
    DATA_DIR_NAME,
]

# File patterns that are never indexed
DEFAULT_IGNORE_FILES = [
    "*.pyc",
    "*.dll",
    "*.exe",
    "*.so",
    "*.o",
    "*.obj",
    "*.min.js",
    "*.lock",
    "*.log",
    "*.tmp",
    "*.swp",
]

# Language mappings for extractors and statistics
LANGUAGE_MAPPINGS: dict[str, str] = {
    ".cs": "c_sharp",
    ".csx": "c_sharp",
    ".cshtml": "cshtml",
    ".razor": "cshtml",
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".mts": "typescript",
    ".cts": "typescript",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".cpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".hpp": "cpp",
    ".md": "markdown",
    ".txt": "text",
}

DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"

# Watch presets per detected project type.
# typical_files are matched against entries in the library root.
PROJECT_TYPE_PRESETS: dict[str, dict[str, list[str]]] = {
    "csharp": {
        "include": ["*.cs", "*.csx", "*.cshtml", "*.razor"],
        "exclude": ["bin", "obj", ".vs", "packages", "*.user"],
        "typical_files": ["*.csproj", "*.sln", "Program.cs", "Startup.cs"],
    },
    "typescript": {
        "include": ["*.ts", "*.tsx", "*.js", "*.jsx"],
        "exclude": ["node_modules", "dist", "build", "coverage", "*.d.ts"],
        "typical_files": ["tsconfig.json", "angular.json"],
    },
    "javascript": {
        "include": ["*.js", "*.jsx", "*.mjs", "*.vue"],
        "exclude": ["node_modules", "dist", "build", "coverage"],
        "typical_files": ["package.json", "webpack.config.js", "gulpfile.js"],
    },
    "python": {
        "include": ["*.py", "*.pyi"],
        "exclude": ["__pycache__", ".venv", "venv", "dist", "build", "*.pyc"],
        "typical_files": ["pyproject.toml", "setup.py", "requirements.txt", "Pipfile"],
    },
    "java": {
        "include": ["*.java", "*.kt", "*.scala"],
        "exclude": ["target", "build", ".gradle", "*.class"],
        "typical_files": ["pom.xml", "build.gradle", "build.xml"],
    },
    "go": {
        "include": ["*.go"],
        "exclude": ["vendor", "bin"],
        "typical_files": ["go.mod", "go.sum"],
    },
    "rust": {
        "include": ["*.rs"],
        "exclude": ["target", "Cargo.lock"],
        "typical_files": ["Cargo.toml"],
    },
}


def get_default_data_dir() -> Path:
    """Get the default data directory (``MCP_CODEBASE_INDEX_DATA_DIR`` wins)."""
    override = os.environ.get("MCP_CODEBASE_INDEX_DATA_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / DATA_DIR_NAME


def get_default_config_path() -> Path:
    """Get the default configuration file path."""
    return get_default_data_dir() / "config.json"


def get_language_from_extension(extension: str) -> str:
    """Get the language name from file extension."""
    return LANGUAGE_MAPPINGS.get(extension.lower(), "text")
