"""Split source files into embedding-sized code blocks with tree-sitter.

Definition nodes (functions, classes, methods, ...) are collected from the
syntax tree and processed through a FIFO queue:

* nodes shorter than ``MIN_BLOCK_CHARS`` are dropped;
* nodes longer than ``MAX_BLOCK_CHARS * MAX_CHARS_TOLERANCE_FACTOR`` are
  replaced by their children, or line-chunked when they have none;
* everything else becomes a block, annotated with the chain of named
  containers around it.

Files without any definition are line-chunked as a whole. Finally, blocks
whose span and content sit inside an earlier block are dropped.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from collections import deque
from pathlib import Path
from typing import Any

import tree_sitter
import tree_sitter_go
import tree_sitter_javascript
import tree_sitter_python
import tree_sitter_rust
import tree_sitter_typescript
from tree_sitter import Language, Parser

from codeindex.config import (
    MAX_BLOCK_CHARS,
    MAX_CHARS_TOLERANCE_FACTOR,
    MIN_BLOCK_CHARS,
    MIN_CHUNK_REMAINDER_CHARS,
)
from codeindex.models import (
    CHUNK_SOURCE_FALLBACK,
    CHUNK_SOURCE_GRAMMAR,
    CHUNK_SOURCE_LINE_SEGMENT,
    CodeBlock,
    ParentContainer,
)

logger = logging.getLogger(__name__)

# ── Languages ────────────────────────────────────────────────────────────

# Language detection by extension
EXTENSION_TO_LANGUAGE = {
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",  # TSX needs its own grammar
    ".mts": "typescript",
    ".cts": "typescript",
    ".go": "go",
    ".rs": "rust",
}

SUPPORTED_EXTENSIONS = frozenset(EXTENSION_TO_LANGUAGE)

_JS_DEFINITIONS = {
    "function_declaration",
    "generator_function_declaration",
    "class_declaration",
    "method_definition",
    "lexical_declaration",
    "variable_declaration",
}

# Node types treated as definitions, per language
_DEFINITION_TYPES: dict[str, set[str]] = {
    "python": {"class_definition", "function_definition", "decorated_definition"},
    "javascript": _JS_DEFINITIONS,
    "typescript": _JS_DEFINITIONS
    | {
        "abstract_class_declaration",
        "interface_declaration",
        "type_alias_declaration",
        "enum_declaration",
        "internal_module",
        "module",
    },
    "go": {"function_declaration", "method_declaration", "type_declaration"},
    "rust": {
        "function_item",
        "struct_item",
        "enum_item",
        "impl_item",
        "trait_item",
        "mod_item",
        "macro_definition",
    },
}
_DEFINITION_TYPES["tsx"] = _DEFINITION_TYPES["typescript"]

# Ancestors that show up in a block's parent chain, with their display name
_CONTAINER_TYPES = {
    "class_declaration": "class",
    "class_definition": "class",
    "abstract_class_declaration": "class",
    "interface_declaration": "interface",
    "interface_definition": "interface",
    "namespace_declaration": "namespace",
    "namespace_definition": "namespace",
    "internal_module": "namespace",
    "module_declaration": "module",
    "module_definition": "module",
    "mod_item": "module",
    "function_declaration": "function",
    "function_definition": "function",
    "function_item": "function",
    "method_definition": "method",
    "method_declaration": "method",
    "impl_item": "impl",
    "trait_item": "trait",
    "object_expression": "object",
    "object_pattern": "object",
    "object": "object",
    "pair": "property",
}

_IDENTIFIER_TYPES = {"identifier", "type_identifier", "property_identifier"}

_parsers: dict[str, Parser] = {}


def _get_parser(language: str) -> Parser | None:
    """Get or create a tree-sitter parser for the language."""
    if language in _parsers:
        return _parsers[language]

    if language == "python":
        lang_obj = Language(tree_sitter_python.language())
    elif language == "javascript":
        lang_obj = Language(tree_sitter_javascript.language())
    elif language == "typescript":
        lang_obj = Language(tree_sitter_typescript.language_typescript())
    elif language == "tsx":
        lang_obj = Language(tree_sitter_typescript.language_tsx())
    elif language == "go":
        lang_obj = Language(tree_sitter_go.language())
    elif language == "rust":
        lang_obj = Language(tree_sitter_rust.language())
    else:
        return None

    parser = Parser(lang_obj)
    _parsers[language] = parser
    return parser


def detect_language(path: str) -> str | None:
    """Detect language from file extension."""
    return EXTENSION_TO_LANGUAGE.get(Path(path).suffix.lower())


def is_supported(path: str) -> bool:
    return detect_language(path) is not None


def compute_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def _segment_hash(*parts: Any) -> str:
    return compute_hash("-".join(str(p) for p in parts))


# ── Node helpers ─────────────────────────────────────────────────────────


def _node_text(node: tree_sitter.Node, source: bytes) -> str:
    return source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")


def _unquote(name: str) -> str:
    if len(name) >= 2 and name[0] == name[-1] and name[0] in "\"'":
        return name[1:-1]
    return name


def _node_identifier(node: tree_sitter.Node, source: bytes) -> str | None:
    """Best-effort name of a definition or container node."""
    name = node.child_by_field_name("name")
    if name is not None:
        return _unquote(_node_text(name, source))

    for child in node.children:
        if child.type in _IDENTIFIER_TYPES:
            return _unquote(_node_text(child, source))

    # decorated_definition -> inner definition
    inner = node.child_by_field_name("definition")
    if inner is not None:
        return _node_identifier(inner, source)

    # const foo = () => ...
    for child in node.children:
        if child.type == "variable_declarator":
            declared = child.child_by_field_name("name")
            if declared is not None:
                return _node_text(declared, source)

    # JSON-like pairs: use the key
    if node.type == "pair" and node.children:
        return _unquote(_node_text(node.children[0], source))

    return None


def _build_parent_chain(node: tree_sitter.Node, source: bytes) -> list[ParentContainer]:
    chain: list[ParentContainer] = []
    current = node.parent
    while current is not None:
        container_type = _CONTAINER_TYPES.get(current.type)
        if container_type is not None:
            identifier = _node_identifier(current, source)
            if identifier:
                chain.insert(0, ParentContainer(identifier, container_type))
        current = current.parent
    return chain


def _hierarchy_display(
    chain: list[ParentContainer], identifier: str | None, node_type: str
) -> str | None:
    parts = [f"{p.container_type} {p.identifier}" for p in chain]
    if identifier:
        parts.append(f"{_CONTAINER_TYPES.get(node_type, node_type)} {identifier}")
    return " > ".join(parts) if parts else None


def _collect_definitions(root: tree_sitter.Node, types: set[str]) -> list[tree_sitter.Node]:
    """Definition nodes in document order, nested ones included."""
    found: list[tree_sitter.Node] = []
    stack = [root]
    while stack:
        node = stack.pop()
        if node.type in types:
            found.append(node)
        stack.extend(reversed(node.children))
    return found


def _is_contained(block: CodeBlock, other: CodeBlock) -> bool:
    return (
        block.file_path == other.file_path
        and block.start_line >= other.start_line
        and block.end_line <= other.end_line
        and block.content in other.content
    )


_SOURCE_PRIORITY = {
    CHUNK_SOURCE_GRAMMAR: 0,
    CHUNK_SOURCE_FALLBACK: 1,
    CHUNK_SOURCE_LINE_SEGMENT: 2,
}


def deduplicate_blocks(blocks: list[CodeBlock]) -> list[CodeBlock]:
    """Drop blocks contained in an earlier block of equal or higher priority."""
    ordered = sorted(blocks, key=lambda b: _SOURCE_PRIORITY.get(b.chunk_source, 3))
    result: list[CodeBlock] = []
    for block in ordered:
        if not any(_is_contained(block, kept) for kept in result):
            result.append(block)
    return result


# ── Line chunking ────────────────────────────────────────────────────────


def chunk_text_by_lines(
    lines: list[str],
    file_path: str,
    file_hash: str,
    chunk_type: str,
    seen: set[str],
    base_start_line: int = 1,
) -> list[CodeBlock]:
    """Group *lines* into blocks between the min and max size.

    When closing a chunk would leave a remainder shorter than
    ``MIN_CHUNK_REMAINDER_CHARS``, the split point moves back so the tail
    gets enough lines. Single lines longer than the limit are cut into
    ``MAX_BLOCK_CHARS`` segments.
    """
    chunks: list[CodeBlock] = []
    effective_max = MAX_BLOCK_CHARS * MAX_CHARS_TOLERANCE_FACTOR
    n = len(lines)

    def line_length(idx: int) -> int:
        # +1 for the newline, except on the last line
        return len(lines[idx]) + (1 if idx < n - 1 else 0)

    current: list[str] = []
    current_len = 0
    chunk_start = 0

    def finalize(end_idx: int) -> None:
        nonlocal current, current_len, chunk_start
        # The split may sit before the last buffered line
        span = lines[chunk_start : end_idx + 1]
        content = "\n".join(span)
        if span and len(content) >= MIN_BLOCK_CHARS:
            start_line = base_start_line + chunk_start
            end_line = base_start_line + end_idx
            seg_hash = _segment_hash(file_path, start_line, end_line, content)
            if seg_hash not in seen:
                seen.add(seg_hash)
                chunks.append(
                    CodeBlock(
                        file_path=file_path,
                        identifier=None,
                        block_type=chunk_type,
                        start_line=start_line,
                        end_line=end_line,
                        content=content,
                        file_hash=file_hash,
                        segment_hash=seg_hash,
                        chunk_source=CHUNK_SOURCE_FALLBACK,
                    )
                )
        current = []
        current_len = 0
        chunk_start = end_idx + 1

    i = 0
    while i < n:
        line = lines[i]
        length = line_length(i)
        line_no = base_start_line + i

        if length > effective_max:
            if current:
                finalize(i - 1)
            for offset in range(0, len(line), MAX_BLOCK_CHARS):
                segment = line[offset : offset + MAX_BLOCK_CHARS]
                seg_hash = _segment_hash(file_path, line_no, line_no, offset, segment)
                if seg_hash in seen:
                    continue
                seen.add(seg_hash)
                chunks.append(
                    CodeBlock(
                        file_path=file_path,
                        identifier=None,
                        block_type=f"{chunk_type}_segment",
                        start_line=line_no,
                        end_line=line_no,
                        content=segment,
                        file_hash=file_hash,
                        segment_hash=seg_hash,
                        chunk_source=CHUNK_SOURCE_LINE_SEGMENT,
                    )
                )
            chunk_start = i + 1
            i += 1
            continue

        if current_len > 0 and current_len + length > effective_max:
            split_idx = i - 1
            remainder = sum(line_length(j) for j in range(i, n))
            if (
                current_len >= MIN_BLOCK_CHARS
                and remainder < MIN_CHUNK_REMAINDER_CHARS
                and len(current) > 1
            ):
                for k in range(i - 2, chunk_start - 1, -1):
                    head = len("\n".join(lines[chunk_start : k + 1])) + 1
                    tail = len("\n".join(lines[k + 1 :])) + 1
                    if head >= MIN_BLOCK_CHARS and tail >= MIN_CHUNK_REMAINDER_CHARS:
                        split_idx = k
                        break
            finalize(split_idx)
            # Lines after the split point start the next chunk
            i = chunk_start
            continue

        current.append(line)
        current_len += length
        i += 1

    if current:
        finalize(n - 1)

    return chunks


# ── Parser ───────────────────────────────────────────────────────────────


class CodeParser:
    """Turns a source file into a list of :class:`CodeBlock`."""

    async def parse_file(
        self,
        file_path: str,
        content: str | None = None,
        file_hash: str | None = None,
    ) -> list[CodeBlock]:
        """Parse *file_path*, reading it from disk when *content* is None."""
        if not is_supported(file_path):
            return []

        if content is None:
            try:
                content = await asyncio.to_thread(
                    Path(file_path).read_text, encoding="utf-8"
                )
            except (OSError, UnicodeDecodeError) as e:
                logger.error("Error reading file %s: %s", file_path, e)
                return []
            file_hash = compute_hash(content)
        elif file_hash is None:
            file_hash = compute_hash(content)

        return self.parse_content(file_path, content, file_hash)

    def parse_content(self, file_path: str, content: str, file_hash: str) -> list[CodeBlock]:
        language = detect_language(file_path)
        if language is None:
            return []

        try:
            parser = _get_parser(language)
        except Exception as e:
            logger.error("Error loading %s grammar for %s: %s", language, file_path, e)
            return []
        if parser is None:
            logger.warning("No parser available for %s", file_path)
            return []

        source = content.encode("utf-8")
        try:
            tree = parser.parse(source)
        except Exception as e:
            logger.error("Error parsing %s: %s", file_path, e)
            return []

        seen: set[str] = set()
        definitions = _collect_definitions(tree.root_node, _DEFINITION_TYPES[language])
        if not definitions:
            if len(content) >= MIN_BLOCK_CHARS:
                return chunk_text_by_lines(
                    content.split("\n"), file_path, file_hash, "fallback_chunk", seen
                )
            return []

        max_chars = MAX_BLOCK_CHARS * MAX_CHARS_TOLERANCE_FACTOR
        results: list[CodeBlock] = []
        queue = deque(definitions)
        while queue:
            node = queue.popleft()
            text = _node_text(node, source)
            if len(text) < MIN_BLOCK_CHARS:
                continue

            if len(text) > max_chars:
                if node.children:
                    queue.extend(node.children)
                else:
                    results.extend(
                        chunk_text_by_lines(
                            text.split("\n"),
                            file_path,
                            file_hash,
                            node.type,
                            seen,
                            node.start_point[0] + 1,
                        )
                    )
                continue

            start_line = node.start_point[0] + 1
            end_line = node.end_point[0] + 1
            seg_hash = _segment_hash(file_path, start_line, end_line, text)
            if seg_hash in seen:
                continue
            seen.add(seg_hash)

            identifier = _node_identifier(node, source)
            chain = _build_parent_chain(node, source)
            results.append(
                CodeBlock(
                    file_path=file_path,
                    identifier=identifier,
                    block_type=node.type,
                    start_line=start_line,
                    end_line=end_line,
                    content=text,
                    file_hash=file_hash,
                    segment_hash=seg_hash,
                    chunk_source=CHUNK_SOURCE_GRAMMAR,
                    parent_chain=chain,
                    hierarchy_display=_hierarchy_display(chain, identifier, node.type),
                )
            )

        return deduplicate_blocks(results)
