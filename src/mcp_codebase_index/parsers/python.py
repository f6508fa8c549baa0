"""Python extractor built on the standard library ``ast`` module."""

import ast

from loguru import logger

from ..core.models import ContentUnit
from .base import BaseExtractor, Fold
from .text import TextExtractor

_DEFINITIONS = (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)


class PythonExtractor(BaseExtractor):
    """One unit per function and method, plus class skeletons.

    A class containing definitions yields a skeleton unit: the class text
    with each nested body folded to ``...`` after its docstring, keeping the
    class docstring, attributes and signatures. Classes without nested
    definitions stay whole. Imports, constants and other module-level code
    form a header unit. Files that do not parse fall back to line windows.
    """

    def __init__(self) -> None:
        super().__init__("python")

    def extract(self, text: str, file_path: str) -> list[ContentUnit]:
        try:
            tree = ast.parse(text)
        except (SyntaxError, ValueError) as e:
            logger.debug(f"Falling back to line windows for {file_path}: {e}")
            return TextExtractor(language=self.language).extract(text, file_path)

        lines = self._split_into_lines(text)
        units: list[ContentUnit] = []
        for node in tree.body:
            if isinstance(node, _DEFINITIONS):
                self._visit(node, lines, file_path, container=None, units=units)

        header = self._leftover_unit(lines, units, file_path)
        if header is not None:
            units.append(header)
        return self._finalize(units)

    def _visit(
        self,
        node: ast.AST,
        lines: list[str],
        file_path: str,
        container: str | None,
        units: list[ContentUnit],
    ) -> None:
        if not isinstance(node, ast.ClassDef):
            # Nested functions stay inside their parent unit
            units.append(self._unit_for_node(node, lines, file_path, container, node.name))
            return

        children = [child for child in node.body if isinstance(child, _DEFINITIONS)]
        if not children:
            units.append(self._unit_for_node(node, lines, file_path, container, node.name))
            return

        start_line, end_line = self._node_lines(node)
        skeleton = self._fold(
            lines, start_line, end_line, [self._fold_body(child, lines) for child in children]
        )
        units.append(
            self._create_unit(
                skeleton,
                file_path,
                start_line,
                end_line,
                container=container,
                member=node.name,
            )
        )

        qualified = f"{container}.{node.name}" if container else node.name
        for child in children:
            self._visit(child, lines, file_path, qualified, units)

    @staticmethod
    def _node_lines(node: ast.AST) -> tuple[int, int]:
        decorators = getattr(node, "decorator_list", [])
        start_line = min([node.lineno, *(d.lineno for d in decorators)])
        return start_line, node.end_lineno or node.lineno

    def _fold_body(self, node: ast.AST, lines: list[str]) -> Fold | None:
        """Keep signature and docstring; the rest of the body becomes ``...``."""
        body = node.body
        first = body[0]
        if _is_docstring(first):
            if len(body) == 1:
                return None
            first = body[1]
        # Bodies sharing the signature line cannot be folded
        if first.lineno <= node.lineno:
            return None

        start_line, end_line = self._node_lines(node)
        first_line = lines[first.lineno - 1]
        indent = first_line[: len(first_line) - len(first_line.lstrip())]
        kept = "".join(lines[start_line - 1 : first.lineno - 1])
        return start_line, end_line, f"{kept}{indent}...\n"

    def _unit_for_node(
        self,
        node: ast.AST,
        lines: list[str],
        file_path: str,
        container: str | None,
        member: str,
    ) -> ContentUnit:
        start_line, end_line = self._node_lines(node)
        return self._lines_unit(
            lines, file_path, start_line, end_line, container=container, member=member
        )

    def get_supported_extensions(self) -> list[str]:
        return [".py", ".pyi"]


def _is_docstring(node: ast.stmt) -> bool:
    return (
        isinstance(node, ast.Expr)
        and isinstance(node.value, ast.Constant)
        and isinstance(node.value.value, str)
    )
