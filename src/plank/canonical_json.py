"""Deterministic canonical JSON for local state snapshots."""

from __future__ import annotations

import json
import math
from typing import Any


class CanonicalJsonTypeError(TypeError):
    """Raised when a snapshot holds a value with no canonical JSON form."""


def _check(value: Any, path: str = "$") -> None:
    if value is None or isinstance(value, (str, bool, int)):
        return
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Non-finite float at {path}: {value!r}")
        return
    if isinstance(value, (list, tuple)):
        for idx, item in enumerate(value):
            _check(item, f"{path}[{idx}]")
        return
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise CanonicalJsonTypeError(f"Unsupported key type at {path}: {type(key).__name__}")
            _check(item, f"{path}.{key}")
        return
    raise CanonicalJsonTypeError(f"Unsupported type at {path}: {type(value).__name__}")


def canonical_dumps(value: Any) -> str:
    """Serialize rows, lists of rows or whole surface states to canonical JSON.

    Keys are sorted at every depth, list (and tuple) order is kept, non-ASCII
    text is left as-is and no whitespace is emitted. Two states encode to the
    same string exactly when they hold the same data.
    """
    _check(value)
    return json.dumps(
        value,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        allow_nan=False,
    )
