"""Base classes for content unit extractors."""

import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import replace

from loguru import logger
from tree_sitter_language_pack import get_parser

from ..core.models import ContentUnit

# (first line, last line, replacement text) with 1-based inclusive lines
Fold = tuple[int, int, str]


class BaseExtractor(ABC):
    """Turns a file's text into content units.

    Implementations must be deterministic: identical text yields an
    identical unit list (same order, positions and hashes).
    """

    def __init__(self, language: str) -> None:
        self.language = language

    @abstractmethod
    def extract(self, text: str, file_path: str) -> list[ContentUnit]:
        """Extract content units from file text.

        Args:
            text: Full file contents
            file_path: Library-relative POSIX path recorded on each unit

        Returns:
            Units ordered by position
        """
        ...

    @abstractmethod
    def get_supported_extensions(self) -> list[str]:
        ...

    def _split_into_lines(self, text: str) -> list[str]:
        # Only "\n" ends a line, matching tree-sitter rows and ast line numbers
        lines = text.split("\n")
        result = [line + "\n" for line in lines[:-1]]
        if lines[-1]:
            result.append(lines[-1])
        return result

    def _create_unit(
        self,
        text: str,
        file_path: str,
        start_line: int,
        end_line: int,
        namespace: str | None = None,
        container: str | None = None,
        member: str | None = None,
    ) -> ContentUnit:
        return ContentUnit.create(
            file_path,
            text,
            start_line=start_line,
            end_line=end_line,
            language=self.language,
            namespace=namespace,
            container=container,
            member=member,
        )

    def _lines_unit(
        self,
        lines: list[str],
        file_path: str,
        start_line: int,
        end_line: int,
        **labels: str | None,
    ) -> ContentUnit:
        """Unit holding source lines ``start_line..end_line`` verbatim."""
        text = "".join(lines[start_line - 1 : end_line])
        return self._create_unit(text, file_path, start_line, end_line, **labels)

    def _whole_file_unit(self, text: str, file_path: str) -> ContentUnit:
        lines = self._split_into_lines(text)
        return self._create_unit(text, file_path, 1, max(1, len(lines)))

    @staticmethod
    def _fold(
        lines: list[str], start_line: int, end_line: int, folds: list[Fold | None]
    ) -> str:
        """Text of a span with each folded sub-span replaced by its signature.

        Used for type skeletons: the type keeps its header, fields and
        properties while member bodies shrink to ``{ ... }``.
        """
        out: list[str] = []
        line = start_line
        for fold_start, fold_end, replacement in sorted(f for f in folds if f):
            if fold_start < line:
                continue
            out.extend(lines[line - 1 : fold_start - 1])
            out.append(replacement)
            line = fold_end + 1
        out.extend(lines[line - 1 : end_line])
        return "".join(out)

    def _leftover_unit(
        self,
        lines: list[str],
        units: list[ContentUnit],
        file_path: str,
        ignore: Callable[[str], bool] | None = None,
        **labels: str | None,
    ) -> ContentUnit | None:
        """One unit for the non-blank lines no other unit covers.

        Imports, module constants and top-level statements land here so
        every meaningful line of a file is embedded somewhere.
        """
        covered = set()
        for unit in units:
            covered.update(range(unit.start_line, unit.end_line + 1))

        kept: list[int] = []
        for number, line in enumerate(lines, start=1):
            if number in covered or not line.strip():
                continue
            if ignore is not None and ignore(line.strip()):
                continue
            kept.append(number)
        if not kept:
            return None

        text = "".join(lines[number - 1] for number in kept)
        if not text.endswith("\n"):
            text += "\n"
        return self._create_unit(text, file_path, kept[0], kept[-1], **labels)

    @staticmethod
    def _comment_start(lines: list[str], start_line: int, prefixes: tuple[str, ...]) -> int:
        """Move ``start_line`` up over directly preceding comment lines."""
        while start_line > 1 and lines[start_line - 2].strip().startswith(prefixes):
            start_line -= 1
        return start_line

    @staticmethod
    def _finalize(units: list[ContentUnit]) -> list[ContentUnit]:
        """Order by source span and assign positions."""
        ordered = sorted(
            units, key=lambda u: (u.start_line, u.end_line, u.container or "", u.member or "")
        )
        return [replace(unit, position=index) for index, unit in enumerate(ordered)]


class TreeSitterExtractor(BaseExtractor):
    """Extractor with a tree-sitter path and a regex fallback.

    Grammars are loaded lazily on first use. When a grammar cannot be
    loaded, or parsing fails, the regex implementation handles the file.
    """

    def __init__(self, language: str, use_tree_sitter: bool = True) -> None:
        super().__init__(language)
        self._use_tree_sitter = use_tree_sitter
        self._parsers: dict = {}
        # Parser objects are not safe to share between worker threads
        self._lock = threading.Lock()

    def extract(self, text: str, file_path: str) -> list[ContentUnit]:
        if not text.strip():
            return []

        parser = self._ensure_parser_initialized(self._grammar_for(file_path))
        if parser is not None:
            try:
                with self._lock:
                    tree = parser.parse(text.encode("utf-8"))
                return self._extract_from_tree(tree, text, file_path)
            except Exception as e:
                logger.warning(f"Tree-sitter parsing failed for {file_path}: {e}")
        return self._regex_extract(text, file_path)

    def _ensure_parser_initialized(self, grammar: str):
        """Parser for ``grammar``, or None when tree-sitter is unavailable."""
        if not self._use_tree_sitter:
            return None
        with self._lock:
            if grammar not in self._parsers:
                self._parsers[grammar] = self._initialize_parser(grammar)
            return self._parsers[grammar]

    def _initialize_parser(self, grammar: str):
        try:
            parser = get_parser(grammar)
        except Exception as e:
            logger.debug(f"tree-sitter grammar {grammar} unavailable: {e}, using regex fallback")
            return None
        logger.debug(f"{grammar} tree-sitter parser initialized via tree-sitter-language-pack")
        return parser

    @abstractmethod
    def _grammar_for(self, file_path: str) -> str:
        ...

    @abstractmethod
    def _extract_from_tree(self, tree, text: str, file_path: str) -> list[ContentUnit]:
        ...

    @abstractmethod
    def _regex_extract(self, text: str, file_path: str) -> list[ContentUnit]:
        ...

    # ------------------------------------------------------------------
    # Node helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _node_name(node) -> str | None:
        name = node.child_by_field_name("name")
        if name is None:
            for child in node.children:
                if child.type in ("identifier", "type_identifier", "property_identifier"):
                    name = child
                    break
        if name is None:
            return None
        return name.text.decode("utf-8", errors="replace")

    @staticmethod
    def _first_row(node) -> int:
        """0-based first row of a node including comments directly above it."""
        row = node.start_point[0]
        sibling = node.prev_named_sibling
        while (
            sibling is not None
            and sibling.type == "comment"
            and sibling.end_point[0] >= row - 1
        ):
            before = sibling.prev_sibling
            # A trailing comment on the previous statement's line is not ours
            if before is not None and before.end_point[0] == sibling.start_point[0]:
                break
            row = sibling.start_point[0]
            sibling = sibling.prev_named_sibling
        return row

    @staticmethod
    def _row_offsets(source: bytes) -> list[int]:
        offsets = [0]
        pos = source.find(b"\n")
        while pos != -1:
            offsets.append(pos + 1)
            pos = source.find(b"\n", pos + 1)
        return offsets

    def _fold_node(
        self, node, body, source: bytes, offsets: list[int], suffix: str = " { ... }"
    ) -> Fold | None:
        """Fold a member to its signature; one-line members stay verbatim."""
        if body is None:
            return None
        first_row = self._first_row(node)
        last_row = node.end_point[0]
        if first_row == last_row:
            return None
        head = source[offsets[first_row] : body.start_byte].decode("utf-8", errors="replace")
        return first_row + 1, last_row + 1, head.rstrip() + suffix + "\n"


def find_block_end(
    content: str,
    start_pos: int,
    verbatim_strings: bool = False,
    template_strings: bool = False,
) -> int | None:
    """Return the offset just past the brace matching the first ``{``.

    Braces inside comments, string and character literals are ignored.
    ``verbatim_strings`` enables C# ``@"..."`` literals and
    ``template_strings`` JavaScript backtick literals.
    """
    brace_start = content.find("{", start_pos)
    if brace_start == -1:
        return None

    brace_count = 0
    pos = brace_start
    quote = ""
    in_verbatim_string = False
    in_line_comment = False
    in_block_comment = False
    escape_next = False

    while pos < len(content):
        char = content[pos]
        nxt = content[pos + 1] if pos + 1 < len(content) else ""

        if in_line_comment:
            if char == "\n":
                in_line_comment = False
        elif in_block_comment:
            if char == "*" and nxt == "/":
                in_block_comment = False
                pos += 1
        elif in_verbatim_string:
            # In verbatim strings, only "" is an escape sequence
            if char == '"':
                if nxt == '"':
                    pos += 1
                else:
                    in_verbatim_string = False
        elif escape_next:
            escape_next = False
        elif quote:
            if char == "\\":
                escape_next = True
            elif char == quote:
                quote = ""
        elif char == "/" and nxt == "/":
            in_line_comment = True
            pos += 1
        elif char == "/" and nxt == "*":
            in_block_comment = True
            pos += 1
        elif verbatim_strings and char == "@" and nxt == '"':
            in_verbatim_string = True
            pos += 1
        elif char in "\"'" or (template_strings and char == "`"):
            quote = char
        elif char == "{":
            brace_count += 1
        elif char == "}":
            brace_count -= 1
            if brace_count == 0:
                return pos + 1

        pos += 1

    return None
