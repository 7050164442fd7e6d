from __future__ import annotations

import threading
from functools import lru_cache

import tree_sitter_java
from tree_sitter import Language, Parser, Tree


class TreeSitterError(RuntimeError):
    """Raised when the Java grammar cannot be loaded or source cannot be parsed."""


@lru_cache(maxsize=1)
def java_language() -> Language:
    try:
        return Language(tree_sitter_java.language())
    except (TypeError, ValueError, RuntimeError) as exc:
        raise TreeSitterError(f"tree-sitter Java grammar not usable: {exc}") from exc


_PARSER_LOCAL = threading.local()


def _get_parser() -> Parser:
    """
    Return a per-thread Parser for Java.

    tree-sitter Parser objects are not thread-safe; the model builder parses on
    a worker pool, so each thread keeps its own instance.
    """

    parser: Parser | None = getattr(_PARSER_LOCAL, "parser", None)
    if parser is None:
        parser = Parser(java_language())
        _PARSER_LOCAL.parser = parser
    return parser


def parse_java(source: bytes) -> Tree:
    try:
        return _get_parser().parse(source)
    except (ValueError, TypeError, RuntimeError) as exc:
        raise TreeSitterError(f"tree-sitter failed to parse source: {exc}") from exc
