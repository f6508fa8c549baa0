"""C# extractor: type skeletons plus one unit per member."""

import re
from typing import NamedTuple

from loguru import logger

from ..core.models import ContentUnit
from .base import Fold, TreeSitterExtractor, find_block_end

_TYPE_NODES = {
    "class_declaration",
    "struct_declaration",
    "record_declaration",
    "record_struct_declaration",
    "interface_declaration",
    "enum_declaration",
}

# Small enough to embed as-is
_WHOLE_TYPE_NODES = {"interface_declaration", "enum_declaration"}

_MEMBER_NODES = {
    "method_declaration",
    "constructor_declaration",
    "destructor_declaration",
    "operator_declaration",
    "conversion_operator_declaration",
    "property_declaration",
    "indexer_declaration",
}

_BODY_NODES = {"block", "arrow_expression_clause", "accessor_list"}

_TYPE_BODY_NODES = {"declaration_list", "enum_member_declaration_list"}

_NAMESPACE_PATTERN = re.compile(r"^\s*namespace\s+([\w\.]+)\s*(;|\{)?", re.MULTILINE)

_TYPE_PATTERN = re.compile(
    r"^[ \t]*(?:\[[^\]]*\]\s*)*"
    r"(?:(?:public|private|protected|internal|static|sealed|abstract|partial|readonly|ref|unsafe|new)\s+)*"
    r"(class|interface|struct|enum|record)\s+(\w+)",
    re.MULTILINE,
)

_MEMBER_PATTERN = re.compile(
    r"^[ \t]*(?:\[[^\]]*\]\s*)*"
    r"(?:(?:public|private|protected|internal|static|virtual|override|abstract|sealed"
    r"|async|extern|unsafe|new|partial|readonly)\s+)*"
    r"(?:[\w\.\?\[\],<> ]+?\s+)?"
    r"(\w+)\s*(?:<[^>()]*>)?\s*\([^)]*\)\s*"
    r"(?::\s*(?:base|this)\s*\([^)]*\)\s*)?"
    r"(?:where\s[^{;]*)?\{",
    re.MULTILINE,
)

_CONTROL_KEYWORDS = {
    "if",
    "for",
    "foreach",
    "while",
    "switch",
    "catch",
    "using",
    "lock",
    "fixed",
    "return",
    "else",
    "do",
    "try",
    "new",
    "nameof",
    "typeof",
    "sizeof",
}


def _is_scaffolding(line: str) -> bool:
    """Lines that carry no meaning outside a type: usings, namespaces, braces."""
    return (
        line in ("{", "}", "};")
        or line.startswith(("using ", "global using ", "namespace "))
        or line.startswith(("#region", "#endregion"))
    )


def _qualify(outer: str | None, name: str) -> str:
    return f"{outer}.{name}" if outer else name


class _Block(NamedTuple):
    kind: str
    name: str
    start: int
    brace: int
    end: int


class CSharpExtractor(TreeSitterExtractor):
    """C# extractor with tree-sitter AST support and fallback regex parsing.

    Every class, struct or record becomes a skeleton unit: its full text with
    member bodies folded to ``{ ... }``, so fields, properties and attributes
    stay searchable. Methods, constructors, properties, indexers and
    operators also get their own unit labelled with namespace and containing
    type. Interfaces, enums and types without members stay whole. Lines
    outside every type (global statements, delegates) form a header unit.
    """

    def __init__(self, use_tree_sitter: bool = True) -> None:
        super().__init__("c_sharp", use_tree_sitter=use_tree_sitter)

    def get_supported_extensions(self) -> list[str]:
        return [".cs", ".csx"]

    def _grammar_for(self, file_path: str) -> str:
        return "csharp"

    def _complete(
        self, text: str, lines: list[str], units: list[ContentUnit], file_path: str
    ) -> list[ContentUnit]:
        if not units:
            logger.debug(f"No C# types found in {file_path}, using whole file")
            return [self._whole_file_unit(text, file_path)]
        header = self._leftover_unit(lines, units, file_path, ignore=_is_scaffolding)
        if header is not None:
            units.append(header)
        return self._finalize(units)

    # ------------------------------------------------------------------
    # Tree-sitter
    # ------------------------------------------------------------------

    def _extract_from_tree(self, tree, text: str, file_path: str) -> list[ContentUnit]:
        context = _TreeContext(
            lines=self._split_into_lines(text),
            source=text.encode("utf-8"),
            file_path=file_path,
        )
        context.offsets = self._row_offsets(context.source)
        self._visit_scope(tree.root_node, None, context)
        return self._complete(text, context.lines, context.units, file_path)

    def _visit_scope(self, node, namespace: str | None, context: "_TreeContext") -> None:
        current = namespace
        for child in node.named_children:
            if child.type == "namespace_declaration":
                inner = _qualify(current, self._node_name(child) or "")
                body = child.child_by_field_name("body")
                if body is not None:
                    self._visit_scope(body, inner, context)
            elif child.type == "file_scoped_namespace_declaration":
                # Applies to every later declaration in the file
                current = _qualify(current, self._node_name(child) or "")
                self._visit_scope(child, current, context)
            elif child.type in _TYPE_NODES:
                self._visit_type(child, current, None, context)
            elif child.type == "declaration_list":
                self._visit_scope(child, current, context)

    def _visit_type(
        self, node, namespace: str | None, container: str | None, context: "_TreeContext"
    ) -> None:
        name = self._node_name(node) or "unknown"
        first_row = self._first_row(node)
        last_row = node.end_point[0]
        body = next((c for c in node.named_children if c.type in _TYPE_BODY_NODES), None)

        if node.type in _WHOLE_TYPE_NODES or body is None:
            context.units.append(
                self._lines_unit(
                    context.lines,
                    context.file_path,
                    first_row + 1,
                    last_row + 1,
                    namespace=namespace,
                    container=container,
                    member=name,
                )
            )
            return

        qualified = _qualify(container, name)
        folds: list[Fold | None] = []
        for child in body.named_children:
            if child.type in _MEMBER_NODES:
                context.units.append(
                    self._lines_unit(
                        context.lines,
                        context.file_path,
                        self._first_row(child) + 1,
                        child.end_point[0] + 1,
                        namespace=namespace,
                        container=qualified,
                        member=self._member_name(child),
                    )
                )
                folds.append(self._fold_member(child, context))
            elif child.type in _TYPE_NODES:
                self._visit_type(child, namespace, qualified, context)
                nested_body = next(
                    (c for c in child.named_children if c.type in _TYPE_BODY_NODES), None
                )
                folds.append(
                    self._fold_node(child, nested_body, context.source, context.offsets)
                )

        text = self._fold(context.lines, first_row + 1, last_row + 1, folds)
        context.units.append(
            self._create_unit(
                text,
                context.file_path,
                first_row + 1,
                last_row + 1,
                namespace=namespace,
                container=container,
                member=name,
            )
        )

    def _fold_member(self, node, context: "_TreeContext") -> Fold | None:
        body = next((c for c in node.named_children if c.type in _BODY_NODES), None)
        if body is None:
            return None
        suffix = " => ...;" if body.type == "arrow_expression_clause" else " { ... }"
        return self._fold_node(node, body, context.source, context.offsets, suffix)

    def _member_name(self, node) -> str:
        if node.type == "indexer_declaration":
            return "this[]"
        if node.type in ("operator_declaration", "conversion_operator_declaration"):
            target = node.child_by_field_name("operator") or node.child_by_field_name("type")
            if target is None:
                return "operator"
            return f"operator {target.text.decode('utf-8', errors='replace')}"
        name = self._node_name(node) or "unknown"
        if node.type == "destructor_declaration":
            return f"~{name}"
        return name

    # ------------------------------------------------------------------
    # Regex fallback
    # ------------------------------------------------------------------

    def _regex_extract(self, text: str, file_path: str) -> list[ContentUnit]:
        lines = self._split_into_lines(text)
        namespaces = self._find_namespaces(text)
        types = self._find_blocks(text, _TYPE_PATTERN, kind_group=1, name_group=2)
        type_spans = {(block.start, block.end) for block in types}
        members = [
            block
            for block in self._find_blocks(text, _MEMBER_PATTERN, kind_group=None, name_group=1)
            if block.name not in _CONTROL_KEYWORDS
            and (block.start, block.end) not in type_spans
        ]
        # Local functions stay part of their enclosing member
        members = [m for m in members if self._innermost(members, m) is None]

        member_owner = {m: self._innermost(types, m) for m in members}
        units: list[ContentUnit] = []

        for block in types:
            outer = self._type_chain(types, block)
            namespace = self._namespace_at(namespaces, block.start)
            qualified = _qualify(outer, block.name)
            start_line = self._line_of(text, block.start, lines)
            end_line = text.count("\n", 0, block.end) + 1

            folds: list[Fold | None] = []
            if block.kind not in ("interface", "enum"):
                for member in members:
                    if member_owner[member] != block:
                        continue
                    units.append(
                        self._lines_unit(
                            lines,
                            file_path,
                            self._line_of(text, member.start, lines),
                            text.count("\n", 0, member.end) + 1,
                            namespace=namespace,
                            container=qualified,
                            member=member.name,
                        )
                    )
                    folds.append(self._fold_block(text, lines, member))
                for nested in types:
                    if nested != block and self._innermost(types, nested) == block:
                        folds.append(self._fold_block(text, lines, nested))

            units.append(
                self._create_unit(
                    self._fold(lines, start_line, end_line, folds),
                    file_path,
                    start_line,
                    end_line,
                    namespace=namespace,
                    container=outer,
                    member=block.name,
                )
            )

        return self._complete(text, lines, units, file_path)

    def _line_of(self, text: str, offset: int, lines: list[str]) -> int:
        """1-based line of ``offset``, extended over ``///`` doc comments."""
        line = text.count("\n", 0, offset) + 1
        return self._comment_start(lines, line, ("//", "*", "/*"))

    def _fold_block(self, text: str, lines: list[str], block: _Block) -> Fold | None:
        start_line = self._line_of(text, block.start, lines)
        end_line = text.count("\n", 0, block.end) + 1
        if start_line == end_line:
            return None
        line_start = text.rfind("\n", 0, block.start) + 1
        head = "".join(lines[start_line - 1 : text.count("\n", 0, line_start)])
        head += text[line_start : block.brace]
        return start_line, end_line, head.rstrip() + " { ... }\n"

    def _find_blocks(
        self,
        text: str,
        pattern: re.Pattern[str],
        kind_group: int | None,
        name_group: int,
    ) -> list[_Block]:
        blocks = []
        for match in pattern.finditer(text):
            start = match.start()
            while start < len(text) and text[start] in " \t\n\r":
                start += 1
            brace = text.find("{", match.end() - 1)
            # Positional records end in ";" and have no body
            if brace == -1 or ";" in text[match.end() : brace]:
                continue
            end = find_block_end(text, brace, verbatim_strings=True)
            if end is None:
                continue
            kind = match.group(kind_group) if kind_group else "member"
            blocks.append(_Block(kind, match.group(name_group), start, brace, end))
        return blocks

    @staticmethod
    def _innermost(blocks: list[_Block], inner: _Block) -> _Block | None:
        best = None
        for block in blocks:
            if block == inner:
                continue
            if block.start <= inner.start and inner.end <= block.end:
                if best is None or block.start >= best.start:
                    best = block
        return best

    def _type_chain(self, types: list[_Block], block: _Block) -> str | None:
        names = []
        outer = self._innermost(types, block)
        while outer is not None:
            names.append(outer.name)
            outer = self._innermost(types, outer)
        return ".".join(reversed(names)) or None

    def _find_namespaces(self, text: str) -> list[tuple[str, int, int]]:
        namespaces = []
        for match in _NAMESPACE_PATTERN.finditer(text):
            name, terminator = match.group(1), match.group(2)
            if terminator == ";":
                # File-scoped namespace covers the rest of the file
                namespaces.append((name, match.start(), len(text)))
                continue
            end = find_block_end(text, match.start(), verbatim_strings=True)
            namespaces.append((name, match.start(), end if end is not None else len(text)))
        return namespaces

    def _namespace_at(
        self, namespaces: list[tuple[str, int, int]], position: int
    ) -> str | None:
        enclosing = [ns for ns in namespaces if ns[1] <= position < ns[2]]
        if not enclosing:
            return None
        return ".".join(ns[0] for ns in sorted(enclosing, key=lambda ns: ns[1]))


class _TreeContext:
    """Per-file state shared while walking one syntax tree."""

    def __init__(self, lines: list[str], source: bytes, file_path: str) -> None:
        self.lines = lines
        self.source = source
        self.file_path = file_path
        self.offsets: list[int] = []
        self.units: list[ContentUnit] = []
