"""Fingerprints for optimistic-state snapshots."""

from __future__ import annotations

import hashlib
from typing import Any

from .canonical_json import canonical_dumps


def snapshot_hash(state: Any) -> str:
    """Return the `sha256:` fingerprint of a state, row or row list."""
    data = canonical_dumps(state).encode("utf-8")
    return f"sha256:{hashlib.sha256(data).hexdigest()}"
