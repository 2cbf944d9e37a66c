"""Canonical JSON for manifests.

UTF-8, no whitespace, object keys sorted at every depth, arrays kept in
order. This is the only path by which a manifest becomes bytes for hashing
or signing; any other serialization breaks signature verification.
"""

import json
from typing import Any


def _prepare(obj: Any) -> Any:
    """Convert manifest dataclasses to plain dicts with nulls materialized."""
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return obj


def canonical_json(obj: Any) -> str:
    """Serialize to the canonical JSON string."""
    return json.dumps(
        _prepare(obj),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


def canonicalize(obj: Any) -> bytes:
    """Serialize to canonical UTF-8 bytes."""
    return canonical_json(obj).encode("utf-8")
