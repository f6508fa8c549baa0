"""Razor (.cshtml) extractor: C# code blocks plus the page markup."""

import re
from pathlib import PurePath

from ..core.models import ContentUnit
from .base import BaseExtractor, find_block_end

# @code { ... }, @functions { ... } and plain @{ ... }
_BLOCK_START = re.compile(r"@(code|functions)?\s*\{")

_BLOCK_KINDS = {"code": "Code Block", "functions": "Functions Block", None: "Razor Block"}


class CshtmlExtractor(BaseExtractor):
    """One unit per non-empty Razor code block, labelled with the page name.

    Markup outside the blocks becomes a single ``Markup`` unit; a page
    without code blocks is one whole-file unit.
    """

    def __init__(self) -> None:
        super().__init__("cshtml")

    def get_supported_extensions(self) -> list[str]:
        return [".cshtml", ".razor"]

    def extract(self, text: str, file_path: str) -> list[ContentUnit]:
        if not text.strip():
            return []

        page = PurePath(file_path).stem
        lines = self._split_into_lines(text)
        units: list[ContentUnit] = []
        pos = 0
        while (match := _BLOCK_START.search(text, pos)) is not None:
            end = find_block_end(text, match.end() - 1, verbatim_strings=True)
            if end is None:
                break
            pos = end
            if not text[match.end() : end - 1].strip():
                continue
            units.append(
                self._lines_unit(
                    lines,
                    file_path,
                    text.count("\n", 0, match.start()) + 1,
                    text.count("\n", 0, end - 1) + 1,
                    container=page,
                    member=f"Block {len(units) + 1} ({_BLOCK_KINDS[match.group(1)]})",
                )
            )

        if not units:
            whole = self._lines_unit(lines, file_path, 1, max(1, len(lines)), container=page)
            return self._finalize([whole])

        markup = self._leftover_unit(
            lines, units, file_path, container=page, member="Markup"
        )
        if markup is not None:
            units.append(markup)
        return self._finalize(units)
