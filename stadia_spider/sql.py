"""
Composable SQL fragments.

SQL("select json from {} where {}", table, condition) builds an SQLExpression
whose text only ever contains the literal template pieces. Every `{}` slot is
filled either by splicing another expression (anything with __sql__ or an
SQLExpression, which flattens into the parent) or by a bound `?` parameter.
Values are never concatenated into the query text.
"""

from __future__ import annotations

import json
from typing import Any, Iterable, List, Sequence, Tuple


class SQLExpression:
    """Query text pieces interleaved with bound parameter values."""

    def __init__(self, strings: Sequence[str] = ("",), values: Sequence[Any] = ()):
        if len(strings) != len(values) + 1:
            raise TypeError("len(strings) != len(values) + 1")
        self.strings: Tuple[str, ...] = tuple(strings)
        self.values: Tuple[Any, ...] = tuple(values)

    def __sql__(self) -> "SQLExpression":
        return self

    @property
    def text(self) -> str:
        return "?".join(self.strings)

    @property
    def args(self) -> Tuple[str, Tuple[Any, ...]]:
        return self.text, self.values

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SQLExpression):
            return NotImplemented
        return self.strings == other.strings and self.values == other.values

    def __repr__(self) -> str:
        return f"SQLExpression({self.text!r}, {list(self.values)!r})"


def _bind(value: Any) -> Any:
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, separators=(",", ":"), sort_keys=True)
    return value


def to_sql(value: Any) -> SQLExpression | None:
    """Return the expression a spliceable object stands for, else None."""
    if isinstance(value, SQLExpression):
        return value
    hook = getattr(value, "__sql__", None)
    if callable(hook):
        return hook()
    return None


def SQL(template: str, *params: Any) -> SQLExpression:
    """Build an expression from a template with one `{}` slot per param."""
    pieces = template.split("{}")
    if len(pieces) != len(params) + 1:
        raise TypeError(
            f"template has {len(pieces) - 1} slots but {len(params)} params were given"
        )

    strings: List[str] = []
    values: List[Any] = []
    buffer = pieces[0]
    for param, piece in zip(params, pieces[1:]):
        nested = to_sql(param)
        if nested is not None:
            buffer += nested.strings[0]
            for nested_value, nested_string in zip(nested.values, nested.strings[1:]):
                strings.append(buffer)
                values.append(nested_value)
                buffer = nested_string
        else:
            strings.append(buffer)
            values.append(_bind(param))
            buffer = ""
        buffer += piece
    strings.append(buffer)
    return SQLExpression(strings, values)


def raw(text: str) -> SQLExpression:
    """Trusted literal text, e.g. a constant JSON path."""
    return SQLExpression([text])


def identifier(name: str) -> SQLExpression:
    """A double-quoted SQLite identifier."""
    if "\x00" in name:
        raise ValueError("identifiers may not contain NUL")
    return raw('"' + name.replace('"', '""') + '"')


def join(separator: str, expressions: Iterable[Any]) -> SQLExpression:
    result = None
    for expression in expressions:
        if result is None:
            result = SQL("{}", expression)
        else:
            result = SQL("{}" + separator + "{}", result, expression)
    return result if result is not None else SQLExpression()


TRUE = raw("true")
