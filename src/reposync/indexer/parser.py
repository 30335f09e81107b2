"""Tree-sitter chunking of source files into AST-scoped code chunks."""

from __future__ import annotations

from pathlib import PurePosixPath

import tree_sitter_typescript as ts_typescript
from tree_sitter import Language, Parser, Query, QueryCursor

from reposync.indexer.paths import language_for
from reposync.storage.sqlite_store import CodeChunk

TS_LANGUAGE = Language(ts_typescript.language_typescript())
TSX_LANGUAGE = Language(ts_typescript.language_tsx())

# Files with no recognizable symbols get one file-level chunk, but only when
# they are small enough for it to be useful.
FALLBACK_MAX_CHARS = 10_000
FALLBACK_CHUNK_CHARS = 5_000

# ── Tree-sitter query for chunk extraction ──
# Captures function declarations, class declarations, method definitions,
# interface declarations, type aliases, enum declarations, and exported
# variable declarations.

_CHUNK_QUERY_SRC = """
(function_declaration
  name: (identifier) @name) @definition

(class_declaration
  name: (type_identifier) @name) @definition

(method_definition
  name: (property_identifier) @name) @definition

(interface_declaration
  name: (type_identifier) @name) @definition

(type_alias_declaration
  name: (type_identifier) @name) @definition

(enum_declaration
  name: (identifier) @name) @definition

(export_statement
  declaration: (lexical_declaration
    (variable_declarator
      name: (identifier) @name))) @definition
"""

# Map tree-sitter node types to chunk type strings
_NODE_KIND_MAP = {
    "function_declaration": "function",
    "class_declaration": "class",
    "method_definition": "method",
    "interface_declaration": "interface",
    "type_alias_declaration": "type",
    "enum_declaration": "enum",
    "export_statement": "variable",
}

_TS_SUFFIXES = {".ts"}
_TSX_SUFFIXES = {".tsx", ".jsx", ".js", ".mjs"}


class CodeChunker:
    """Splits TypeScript/JavaScript into symbol chunks, other languages into one summary chunk."""

    def __init__(self) -> None:
        self._ts_query = Query(TS_LANGUAGE, _CHUNK_QUERY_SRC)
        self._tsx_query = Query(TSX_LANGUAGE, _CHUNK_QUERY_SRC)

    def _get_parser_and_query(self, path: str) -> tuple[Parser, Query] | None:
        # Parsers are stateful, so each call gets its own; queries are shared.
        suffix = PurePosixPath(path).suffix.lower()
        if suffix in _TS_SUFFIXES:
            return Parser(TS_LANGUAGE), self._ts_query
        if suffix in _TSX_SUFFIXES:
            return Parser(TSX_LANGUAGE), self._tsx_query
        return None

    def chunk(self, path: str, source: str) -> list[CodeChunk]:
        """Produce chunks for one file.

        One chunk per matched symbol for grammars we parse. Falls back to a
        single ``file_summary`` chunk when nothing matched and the file is
        small.
        """
        language = language_for(path) or "text"
        chunks: list[CodeChunk] = []

        parser_and_query = self._get_parser_and_query(path)
        if parser_and_query is not None:
            parser, query = parser_and_query
            tree = parser.parse(source.encode("utf-8"))
            cursor = QueryCursor(query)
            for _pattern_idx, captures in cursor.matches(tree.root_node):
                def_nodes = captures.get("definition", [])
                name_nodes = captures.get("name", [])
                if not def_nodes or not name_nodes:
                    continue

                def_node = def_nodes[0]
                name_node = name_nodes[0]
                chunks.append(
                    CodeChunk(
                        file_path=path,
                        chunk_index=len(chunks),
                        chunk_type=_NODE_KIND_MAP.get(def_node.type, "variable"),
                        name=name_node.text.decode("utf-8"),
                        code=def_node.text.decode("utf-8", errors="replace"),
                        start_line=def_node.start_point[0] + 1,  # 1-indexed
                        end_line=def_node.end_point[0] + 1,
                        language=language,
                    )
                )

        if not chunks and len(source) < FALLBACK_MAX_CHARS:
            chunks.append(
                CodeChunk(
                    file_path=path,
                    chunk_index=0,
                    chunk_type="file_summary",
                    name=PurePosixPath(path).name,
                    code=source[:FALLBACK_CHUNK_CHARS],
                    start_line=1,
                    end_line=source.count("\n") + 1,
                    language=language,
                )
            )
        return chunks
