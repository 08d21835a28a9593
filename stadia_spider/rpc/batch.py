# stadia_spider/rpc/batch.py
"""
Envelope codec for the batchexecute endpoint.

A request is a list of (method id, args) pairs. The response stream starts
with an anti-XSSI prefix followed by length-prefixed chunks; each chunk is a
JSON array of envelopes and the ones tagged "wrb.fr" carry our results, each
with a JSON-encoded payload and the 1-based index of the call it answers.
"""

from __future__ import annotations

import json
import re
from typing import Any, List, Optional, Sequence, Tuple
from urllib.parse import urlencode

RESULT_TAG = "wrb.fr"
_CHUNK_SEPARATOR = re.compile(r"\n\d+\n")


class EnvelopeError(ValueError):
    """The response stream could not be split into envelopes."""


def _compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


def encode_batch(pairs: Sequence[Tuple[str, Any]]) -> str:
    envelopes = [
        [method_id, _compact(args if args is not None else []), None, str(index + 1)]
        for index, (method_id, args) in enumerate(pairs)
    ]
    return _compact([envelopes])


def encode_batch_form(pairs: Sequence[Tuple[str, Any]], at_token: Optional[str]) -> bytes:
    """POST body for a batch: the f.req payload and the anti-forgery token."""
    form = {"f.req": encode_batch(pairs)}
    if at_token:
        form["at"] = at_token
    return urlencode(form).encode("utf-8")


def _correlation_index(envelope: list, position: int) -> Tuple[int, int]:
    tag = envelope[6] if len(envelope) > 6 else None
    try:
        return (int(tag), position)
    except (TypeError, ValueError):
        # Untagged results keep the order they arrived in, after tagged ones.
        return (1 << 31, position)


def decode_batch(text: str) -> List[Any]:
    """Return the decoded payload of every result envelope, in call order."""
    results = []
    for chunk in _CHUNK_SEPARATOR.split(text)[1:]:
        chunk = chunk.strip()
        if not chunk:
            continue
        try:
            envelopes = json.loads(chunk)
        except json.JSONDecodeError as e:
            raise EnvelopeError(f"unparsable response chunk: {chunk[:200]!r}") from e
        if not isinstance(envelopes, list):
            raise EnvelopeError(f"response chunk is not an array: {chunk[:200]!r}")
        for envelope in envelopes:
            if isinstance(envelope, list) and envelope and envelope[0] == RESULT_TAG:
                results.append(envelope)

    ordered = sorted(
        enumerate(results), key=lambda item: _correlation_index(item[1], item[0])
    )
    payloads = []
    for _, envelope in ordered:
        payload = envelope[2] if len(envelope) > 2 else None
        try:
            payloads.append(json.loads(payload) if payload is not None else None)
        except (TypeError, json.JSONDecodeError) as e:
            raise EnvelopeError(f"unparsable payload for {envelope[1]!r}") from e
    return payloads
