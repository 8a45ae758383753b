"""
Declaration readers used for AST symbol lookup during intent mapping.

``.ls`` documents are line oriented: exactly one ``goal "..."`` followed by
``capability <name> "..."`` and ``check <name> "..."`` declarations. Python
modules are read with the standard ``ast`` module.
"""

from __future__ import annotations

import ast
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

_STRING = r'"((?:[^"\\\r\n]|\\[\\"nt])*)"'
_GOAL_LINE = re.compile(r"^([ \t]*)goal[ \t]+" + _STRING + r"[ \t]*$")
_NAMED_LINE = re.compile(r"^([ \t]*)(capability|check)[ \t]+([A-Za-z][A-Za-z0-9_-]*)[ \t]+" + _STRING + r"[ \t]*$")
_ESCAPES = {"\\": "\\", '"': '"', "n": "\n", "t": "\t"}


@dataclass(frozen=True)
class SourceRange:
    start_line: int
    start_column: int
    end_line: int
    end_column: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "start_line": self.start_line,
            "start_column": self.start_column,
            "end_line": self.end_line,
            "end_column": self.end_column,
        }


@dataclass(frozen=True)
class Declaration:
    """A named symbol found in structured source."""

    kind: str
    name: str
    description: str
    symbol_path: str
    range: SourceRange


def _decode(raw: str) -> str:
    return re.sub(r"\\(.)", lambda match: _ESCAPES[match.group(1)], raw)


def read_ls_declarations(source: str) -> Optional[List[Declaration]]:
    """
    Parse an ``.ls`` document; None when it is not a well-formed document.

    A document must start with its single goal and contain at least one
    capability and one check.
    """
    declarations: List[Declaration] = []
    goals = capabilities = checks = 0

    for index, line in enumerate(re.split(r"\r?\n", source), start=1):
        if not line.strip():
            continue

        goal = _GOAL_LINE.match(line)
        if goal:
            if declarations:
                return None
            goals += 1
            column = len(goal.group(1)) + 1
            value = _decode(goal.group(2))
            declarations.append(
                Declaration(
                    kind="goal",
                    name=value,
                    description="",
                    symbol_path="goal",
                    range=SourceRange(index, column, index, len(line.rstrip()) + 1),
                )
            )
            continue

        named = _NAMED_LINE.match(line)
        if not named or goals != 1:
            return None
        kind, name = named.group(2), named.group(3)
        if kind == "capability":
            capabilities += 1
        else:
            checks += 1
        declarations.append(
            Declaration(
                kind=kind,
                name=name,
                description=_decode(named.group(4)),
                symbol_path=f"{kind}:{name}",
                range=SourceRange(index, len(named.group(1)) + 1, index, len(line.rstrip()) + 1),
            )
        )

    if goals != 1 or capabilities == 0 or checks == 0:
        return None
    return declarations


def _node_range(node: ast.AST) -> SourceRange:
    end_line = getattr(node, "end_lineno", None) or node.lineno
    end_column = getattr(node, "end_col_offset", None)
    return SourceRange(
        start_line=node.lineno,
        start_column=node.col_offset + 1,
        end_line=end_line,
        end_column=(end_column if end_column is not None else node.col_offset) + 1,
    )


def _first_doc_line(node: ast.AST) -> str:
    doc = ast.get_docstring(node, clean=True) or ""
    return doc.strip().splitlines()[0] if doc.strip() else ""


def read_python_declarations(source: str) -> Optional[List[Declaration]]:
    """Module level classes and functions plus class methods; None on syntax errors."""
    try:
        tree = ast.parse(source)
    except (SyntaxError, ValueError):
        return None

    declarations: List[Declaration] = []

    def visit(body, prefix: str) -> None:
        for node in body:
            if isinstance(node, ast.ClassDef):
                qualname = f"{prefix}{node.name}"
                declarations.append(
                    Declaration("class", node.name, _first_doc_line(node), f"class:{qualname}", _node_range(node))
                )
                visit(node.body, f"{qualname}.")
            elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
                qualname = f"{prefix}{node.name}"
                declarations.append(
                    Declaration(
                        "function", node.name, _first_doc_line(node), f"function:{qualname}", _node_range(node)
                    )
                )

    visit(tree.body, "")
    return declarations
