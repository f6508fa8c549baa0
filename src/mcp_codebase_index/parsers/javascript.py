"""JavaScript/TypeScript extractor: functions, classes and their methods."""

import re
from pathlib import PurePath

from loguru import logger

from ..core.models import ContentUnit
from .base import Fold, TreeSitterExtractor, find_block_end

_FUNCTION_NODES = {"function_declaration", "generator_function_declaration"}

_CLASS_NODES = {"class_declaration", "abstract_class_declaration"}

# TypeScript declarations kept whole
_TYPE_NODES = {"interface_declaration", "type_alias_declaration", "enum_declaration"}

_VARIABLE_NODES = {"lexical_declaration", "variable_declaration"}

_FUNCTION_VALUES = {"arrow_function", "function_expression", "function", "generator_function"}

_FALLBACK_PATTERNS = [
    re.compile(
        r"^(?:export\s+(?:default\s+)?)?(?:async\s+)?function\*?\s+(\w+)\s*(?:<[^>]*>)?\s*\(",
        re.MULTILINE,
    ),
    re.compile(
        r"^(?:export\s+(?:default\s+)?)?(?:abstract\s+)?class\s+(\w+)",
        re.MULTILINE,
    ),
    re.compile(
        r"^(?:export\s+)?(?:declare\s+)?(?:const\s+)?(?:interface|enum)\s+(\w+)",
        re.MULTILINE,
    ),
    re.compile(
        r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*(?::[^=]+)?=\s*(?:async\s+)?"
        r"(?:function\b|\([^)]*\)\s*(?::[^=]+)?=>|\w+\s*=>)",
        re.MULTILINE,
    ),
]

# Start of the next top-level statement; lines opening with brackets continue one
_TOP_LEVEL_LINE = re.compile(r"\n(?=[^\s{}()\[\]])")


class JavaScriptExtractor(TreeSitterExtractor):
    """JavaScript extractor with tree-sitter AST support and fallback regex parsing.

    Top-level functions, function-valued ``const``/``let`` bindings and
    classes become units; ``export`` wrappers and leading JSDoc stay with
    their declaration. Classes with methods get a skeleton unit plus one
    unit per method. Imports and other top-level statements form a header
    unit.
    """

    def __init__(self, language: str = "javascript", use_tree_sitter: bool = True) -> None:
        super().__init__(language, use_tree_sitter=use_tree_sitter)

    def get_supported_extensions(self) -> list[str]:
        return [".js", ".jsx", ".mjs", ".cjs"]

    def _grammar_for(self, file_path: str) -> str:
        return "javascript"

    def _complete(
        self, lines: list[str], units: list[ContentUnit], file_path: str
    ) -> list[ContentUnit]:
        header = self._leftover_unit(lines, units, file_path)
        if header is not None:
            units.append(header)
        return self._finalize(units)

    # ------------------------------------------------------------------
    # Tree-sitter
    # ------------------------------------------------------------------

    def _extract_from_tree(self, tree, text: str, file_path: str) -> list[ContentUnit]:
        lines = self._split_into_lines(text)
        source = text.encode("utf-8")
        offsets = self._row_offsets(source)
        units: list[ContentUnit] = []

        for node in tree.root_node.named_children:
            declaration = node
            if node.type == "export_statement":
                declaration = node.child_by_field_name(
                    "declaration"
                ) or node.child_by_field_name("value")
                if declaration is None:
                    continue

            if declaration.type in _CLASS_NODES or declaration.type == "class":
                units.extend(
                    self._class_units(node, declaration, lines, source, offsets, file_path)
                )
                continue

            name = self._declaration_name(declaration)
            if name is None:
                continue
            units.append(
                self._lines_unit(
                    lines,
                    file_path,
                    self._first_row(node) + 1,
                    node.end_point[0] + 1,
                    member=name,
                )
            )

        return self._complete(lines, units, file_path)

    def _declaration_name(self, node) -> str | None:
        """Name of a top-level declaration worth its own unit, else None."""
        if node.type in _FUNCTION_NODES or node.type in _TYPE_NODES:
            return self._node_name(node)
        if node.type in _FUNCTION_VALUES:
            # export default function () {}
            return self._node_name(node) or "default"
        if node.type in _VARIABLE_NODES:
            for declarator in node.named_children:
                if declarator.type != "variable_declarator":
                    continue
                value = declarator.child_by_field_name("value")
                if value is not None and value.type in _FUNCTION_VALUES:
                    return self._node_name(declarator)
        return None

    def _class_units(
        self, outer, node, lines: list[str], source: bytes, offsets: list[int], file_path: str
    ) -> list[ContentUnit]:
        name = self._node_name(node) or "default"
        first_row = self._first_row(outer)
        last_row = outer.end_point[0]
        body = node.child_by_field_name("body")

        units: list[ContentUnit] = []
        folds: list[Fold | None] = []
        if body is not None:
            for child in body.named_children:
                if child.type != "method_definition":
                    continue
                units.append(
                    self._lines_unit(
                        lines,
                        file_path,
                        self._first_row(child) + 1,
                        child.end_point[0] + 1,
                        container=name,
                        member=self._node_name(child) or "anonymous",
                    )
                )
                folds.append(
                    self._fold_node(child, child.child_by_field_name("body"), source, offsets)
                )

        units.append(
            self._create_unit(
                self._fold(lines, first_row + 1, last_row + 1, folds),
                file_path,
                first_row + 1,
                last_row + 1,
                member=name,
            )
        )
        return units

    # ------------------------------------------------------------------
    # Regex fallback
    # ------------------------------------------------------------------

    def _regex_extract(self, text: str, file_path: str) -> list[ContentUnit]:
        lines = self._split_into_lines(text)
        matches = sorted(
            (match for pattern in _FALLBACK_PATTERNS for match in pattern.finditer(text)),
            key=lambda match: match.start(),
        )

        units: list[ContentUnit] = []
        covered_until = 0
        for match in matches:
            if match.start() < covered_until:
                continue
            end = self._declaration_end(text, match.end())
            covered_until = end
            start_line = self._comment_start(
                lines, text.count("\n", 0, match.start()) + 1, ("//", "/*", "*")
            )
            units.append(
                self._lines_unit(
                    lines,
                    file_path,
                    start_line,
                    text.count("\n", 0, end - 1) + 1,
                    member=match.group(1),
                )
            )

        logger.debug(f"Regex fallback found {len(units)} declarations in {file_path}")
        return self._complete(lines, units, file_path)

    @staticmethod
    def _declaration_end(text: str, pos: int) -> int:
        """Offset just past a declaration starting before ``pos``."""
        next_statement = _TOP_LEVEL_LINE.search(text, pos)
        limit = next_statement.start() if next_statement else len(text)
        brace = text.find("{", pos, limit)
        if brace != -1:
            end = find_block_end(text, brace, template_strings=True)
            if end is not None:
                return end
        # Expression-bodied arrows and unterminated blocks end at the next statement
        return len(text[:limit].rstrip()) or limit


class TypeScriptExtractor(JavaScriptExtractor):
    """TypeScript extractor; ``.tsx`` files use the TSX grammar."""

    def __init__(self, use_tree_sitter: bool = True) -> None:
        super().__init__("typescript", use_tree_sitter=use_tree_sitter)

    def get_supported_extensions(self) -> list[str]:
        return [".ts", ".tsx", ".mts", ".cts"]

    def _grammar_for(self, file_path: str) -> str:
        return "tsx" if PurePath(file_path).suffix.lower() == ".tsx" else "typescript"
