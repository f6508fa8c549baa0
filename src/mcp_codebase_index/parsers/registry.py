"""Extractor registry: maps file extensions to content unit extractors."""

from pathlib import PurePath

from loguru import logger

from ..config.defaults import get_language_from_extension
from .base import BaseExtractor
from .csharp import CSharpExtractor
from .cshtml import CshtmlExtractor
from .javascript import JavaScriptExtractor, TypeScriptExtractor
from .python import PythonExtractor
from .text import TextExtractor


class ExtractorRegistry:
    """Registry for managing language extractors."""

    def __init__(self) -> None:
        """Initialize registry with lazy instantiation."""
        self._extractors: dict[str, BaseExtractor] = {}
        self._extractor_classes: dict[str, type[BaseExtractor]] = {}
        self._extension_map: dict[str, str] = {}
        self._fallbacks: dict[str, TextExtractor] = {}
        self._register_default_extractors()

    def _register_default_extractors(self) -> None:
        extractor_map = {
            ".cs": ("c_sharp", CSharpExtractor),
            ".csx": ("c_sharp", CSharpExtractor),
            ".cshtml": ("cshtml", CshtmlExtractor),
            ".razor": ("cshtml", CshtmlExtractor),
            ".js": ("javascript", JavaScriptExtractor),
            ".jsx": ("javascript", JavaScriptExtractor),
            ".mjs": ("javascript", JavaScriptExtractor),
            ".cjs": ("javascript", JavaScriptExtractor),
            ".py": ("python", PythonExtractor),
            ".pyi": ("python", PythonExtractor),
            ".ts": ("typescript", TypeScriptExtractor),
            ".tsx": ("typescript", TypeScriptExtractor),
            ".mts": ("typescript", TypeScriptExtractor),
            ".cts": ("typescript", TypeScriptExtractor),
        }
        for ext, (lang, extractor_class) in extractor_map.items():
            self._extension_map[ext] = lang
            self._extractor_classes.setdefault(lang, extractor_class)

        logger.debug(
            f"Registered {len(self._extractor_classes)} extractor classes (lazy loading enabled)"
        )

    def register_extractor(self, language: str, extractor: BaseExtractor) -> None:
        """Register an extractor instance for a language."""
        self._extractors[language] = extractor
        for ext in extractor.get_supported_extensions():
            if ext != "*":
                self._extension_map[ext.lower()] = language
        logger.debug(
            f"Registered extractor for {language}: {extractor.__class__.__name__}"
        )

    def get_extractor(self, file_extension: str) -> BaseExtractor:
        """Get extractor for an extension, falling back to line windows."""
        language = self._extension_map.get(file_extension.lower())
        if language:
            if language not in self._extractors:
                self._extractors[language] = self._extractor_classes[language]()
                logger.debug(f"Lazily instantiated extractor for {language}")
            return self._extractors[language]

        # Line windows, labelled with the language the extension maps to
        fallback_language = get_language_from_extension(file_extension)
        if fallback_language not in self._fallbacks:
            self._fallbacks[fallback_language] = TextExtractor(language=fallback_language)
        return self._fallbacks[fallback_language]

    def get_extractor_for_file(self, file_path: str | PurePath) -> BaseExtractor:
        return self.get_extractor(PurePath(file_path).suffix)

    def get_supported_languages(self) -> list[str]:
        return sorted(set(self._extension_map.values()))


_registry: ExtractorRegistry | None = None


def get_extractor_registry() -> ExtractorRegistry:
    """Process-wide default registry."""
    global _registry
    if _registry is None:
        _registry = ExtractorRegistry()
    return _registry
