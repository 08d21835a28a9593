"""
Positional "proto" values returned by the batch RPC endpoint.

These are plain JSON arrays, unrelated to Protocol Buffers. All structure is
positional, so everything downstream reads them by fixed index through at().
"""

from __future__ import annotations

from typing import Any, List, Optional, Union

from pydantic import TypeAdapter
from typing_extensions import TypeAliasType

Proto = TypeAliasType("Proto", Union[None, bool, int, float, str, List["Proto"]])

# Only the top level is checked; nested arrays are taken as-is.
ProtoMessage = Optional[List[Union[None, bool, int, float, str, List[Any]]]]

message_adapter: TypeAdapter = TypeAdapter(ProtoMessage)


def at(proto: Any, *indices: int) -> Any:
    """
    Read a nested element by position.

    Returns None when any step is missing, null, or not an array, so a short
    array is read the same as one padded with trailing nulls.

    Examples:
        >>> at([1, [2, 3]], 1, 0)
        2
        >>> at([1], 4) is None
        True
    """
    node = proto
    for index in indices:
        if not isinstance(node, list) or index >= len(node):
            return None
        node = node[index]
    return node


def validate_message(value: Any) -> Optional[list]:
    """Check that value is an array of proto values (or null)."""
    return message_adapter.validate_python(value)
