"""File discovery and filtering for library indexing."""

import fnmatch
import os
import re
from pathlib import Path, PurePosixPath

from loguru import logger

from ..config.defaults import (
    DEFAULT_IGNORE_DIRS,
    DEFAULT_IGNORE_FILES,
    PROJECT_TYPE_PRESETS,
)
from ..config.settings import WatchConfig
from .exceptions import InvalidPathError


def _compile(patterns: list[str]) -> list[re.Pattern[str]]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(fnmatch.translate(pattern)))
        except re.error as e:
            logger.warning(f"Failed to compile pattern '{pattern}': {e}")
    return compiled


class FileFilter:
    """Decides whether a library-relative path is eligible for indexing.

    Include patterns match the file name or the whole relative path.
    Exclude patterns additionally match any single directory component, so
    ``bin`` excludes every ``bin/`` directory in the tree.
    """

    def __init__(self, config: WatchConfig) -> None:
        self.config = config
        self._include = _compile(config.include_patterns)
        self._exclude = _compile(config.exclude_patterns)
        self._ignored_files = _compile(DEFAULT_IGNORE_FILES)
        self._ignored_dirs = set(DEFAULT_IGNORE_DIRS)

    def is_ignored_dir(self, name: str) -> bool:
        if name in self._ignored_dirs:
            return True
        return any(p.match(name) for p in self._exclude)

    def matches(self, relative_path: str) -> bool:
        """Pattern eligibility for a POSIX relative path (no size check)."""
        path = PurePosixPath(relative_path)
        parts = path.parts
        if not parts:
            return False
        if not self.config.include_subdirectories and len(parts) > 1:
            return False
        if any(self.is_ignored_dir(part) for part in parts[:-1]):
            return False

        name = parts[-1]
        if any(p.match(name) for p in self._ignored_files):
            return False
        if any(p.match(name) or p.match(relative_path) for p in self._exclude):
            return False
        return any(p.match(name) or p.match(relative_path) for p in self._include)


def to_relative_posix(root: Path, path: Path | str) -> str | None:
    """Path relative to ``root`` in POSIX form, or None if outside it."""
    path = Path(path)
    for candidate in (path, path.resolve()):
        try:
            return candidate.relative_to(root).as_posix()
        except ValueError:
            continue
    return None


def canonicalize_root(path: str | Path) -> Path:
    """Absolute, resolved library root.

    Raises:
        InvalidPathError: If the path does not exist or is not a directory
    """
    root = Path(path).expanduser().resolve()
    if not root.exists():
        raise InvalidPathError(f"Path does not exist: {root}", context={"path": str(root)})
    if not root.is_dir():
        raise InvalidPathError(f"Path is not a directory: {root}", context={"path": str(root)})
    return root


def scan_files(root: Path, config: WatchConfig) -> tuple[list[str], list[str]]:
    """Enumerate eligible files under ``root``.

    Uses os.walk with in-place directory pruning so ignored trees are never
    traversed. Blocking; callers run it in a worker thread.

    Returns:
        (eligible relative paths sorted, relative paths skipped for size)
    """
    file_filter = FileFilter(config)
    eligible: list[str] = []
    oversized: list[str] = []

    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        if not config.include_subdirectories:
            dirnames[:] = []
        else:
            dirnames[:] = [d for d in dirnames if not file_filter.is_ignored_dir(d)]

        for filename in filenames:
            full_path = current / filename
            relative = full_path.relative_to(root).as_posix()
            if not file_filter.matches(relative):
                continue
            try:
                size = full_path.stat().st_size
            except OSError as e:
                logger.debug(f"Skipping unreadable file {relative}: {e}")
                continue
            if size > config.max_file_size:
                logger.warning(
                    f"Skipping {relative}: {size} bytes exceeds max_file_size "
                    f"{config.max_file_size}"
                )
                oversized.append(relative)
                continue
            eligible.append(relative)

    eligible.sort()
    logger.debug(f"Discovered {len(eligible)} eligible files under {root}")
    return eligible, oversized


def detect_project_type(root: Path) -> str | None:
    """Guess the project type from well-known files in the root directory."""
    try:
        entries = [entry.name for entry in root.iterdir()]
    except OSError as e:
        logger.debug(f"Cannot list {root} for project detection: {e}")
        return None

    for project_type, preset in PROJECT_TYPE_PRESETS.items():
        for pattern in preset["typical_files"]:
            if fnmatch.filter(entries, pattern):
                logger.debug(f"Detected {project_type} project at {root} ({pattern})")
                return project_type
    return None


def apply_project_preset(config: WatchConfig, project_type: str | None) -> WatchConfig:
    """Watch config with the project type's include/exclude patterns."""
    preset = PROJECT_TYPE_PRESETS.get(project_type or "")
    if preset is None:
        return config
    exclude = list(dict.fromkeys([*config.exclude_patterns, *preset["exclude"]]))
    return config.model_copy(
        update={"include_patterns": list(preset["include"]), "exclude_patterns": exclude}
    )
