"""
Content hashing helpers.

Revision hashes and secret value hashes are SHA-256 digests over a canonical
JSON rendering, so logically equal payloads always hash the same regardless
of key order.
"""

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """Render a value as compact JSON with sorted keys."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def content_hash(value: Any) -> str:
    """Return the hex SHA-256 digest of a value's canonical JSON."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()
