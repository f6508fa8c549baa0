"""Content unit extractors for supported languages."""

from .base import BaseExtractor
from .registry import ExtractorRegistry, get_extractor_registry

__all__ = ["BaseExtractor", "ExtractorRegistry", "get_extractor_registry"]
