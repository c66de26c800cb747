"""
Canonical cache key construction.

A key is fully determined by a namespace and a parameter map. Parameters are
sorted by name before serialization, so two logically identical queries built
with different parameter order produce the same key.
"""

from __future__ import annotations

import re
from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import quote

# Characters left unescaped by JavaScript's encodeURIComponent
_SAFE_CHARS = "-_.!~*'()"

# Characters that are illegal in most key/value store paths
_RESERVED = re.compile(r"[.#$\[\]]")


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_stringify(v) for v in value)
    return str(value)


def _encode(text: str) -> str:
    return _RESERVED.sub("_", quote(text, safe=_SAFE_CHARS))


def build_key(namespace: str, params: Mapping[str, Any] | None = None) -> str:
    """Build the canonical cache key for ``namespace`` and ``params``.

    Args:
        namespace: Logical query family (e.g. "sim_usage").
        params: Arbitrary string-keyed parameters.

    Returns:
        ``namespace`` when there are no params, else
        ``namespace:k1=v1&k2=v2`` with keys sorted.

    Example:
        >>> build_key("usage", {"b": 2, "a": 1})
        'usage:a=1&b=2'
    """
    if not params:
        return namespace

    param_string = "&".join(
        f"{_encode(str(name))}={_encode(_stringify(params[name]))}"
        for name in sorted(params)
    )
    return f"{namespace}:{param_string}" if param_string else namespace


def build_query_key(query_key: str | Sequence[Any]) -> str:
    """Build a cache key from a query-key array.

    A plain string is used as the key verbatim. A sequence is treated as
    ``[namespace, *parts]`` and the parts become a single ``params`` value.
    """
    if isinstance(query_key, str):
        return query_key
    if not query_key:
        raise ValueError("query_key must not be empty")
    namespace, *parts = query_key
    return build_key(str(namespace), {"params": parts} if parts else None)
