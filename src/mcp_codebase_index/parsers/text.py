"""Line-window extractor for plain text and unsupported languages."""

from ..core.models import ContentUnit
from .base import BaseExtractor

DEFAULT_WINDOW_LINES = 60


class TextExtractor(BaseExtractor):
    """Splits a file into fixed windows of lines, skipping blank windows."""

    def __init__(self, language: str = "text", window_lines: int = DEFAULT_WINDOW_LINES):
        super().__init__(language)
        self.window_lines = window_lines

    def extract(self, text: str, file_path: str) -> list[ContentUnit]:
        lines = self._split_into_lines(text)
        units = []
        for start in range(0, len(lines), self.window_lines):
            window = lines[start : start + self.window_lines]
            chunk = "".join(window)
            if not chunk.strip():
                continue
            units.append(
                self._create_unit(
                    chunk, file_path, start_line=start + 1, end_line=start + len(window)
                )
            )
        return self._finalize(units)

    def get_supported_extensions(self) -> list[str]:
        return [".txt", ".md", ".markdown", "*"]
