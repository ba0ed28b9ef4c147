"""Canonical JSON.

Every structure that is hashed or signed goes through here first so that
independent implementations produce byte-identical inputs.
"""

import json
from typing import Any


def canonical_json(obj: Any) -> str:
    """Serialize an object to canonical JSON.

    Rules:
    - Keys sorted lexicographically, at every nesting level
    - No whitespace outside strings
    - UTF-8, non-ASCII characters kept literal
    - Integral floats rendered as integers

    Args:
        obj: Object to serialize

    Returns:
        Canonical JSON string
    """

    def _preprocess(o: Any) -> Any:
        if isinstance(o, dict):
            return {k: _preprocess(v) for k, v in o.items()}
        if isinstance(o, (list, tuple)):
            return [_preprocess(v) for v in o]
        if isinstance(o, float) and o.is_integer():
            return int(o)
        return o

    return json.dumps(
        _preprocess(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize an object to canonical JSON bytes.

    Args:
        obj: Object to serialize

    Returns:
        UTF-8 encoded canonical JSON bytes
    """
    return canonical_json(obj).encode("utf-8")
