"""
PhiloGraph - Payload Hashing

Stable digests of JSON-like payloads. Reasoning cache keys and saga log
entries both hash the same canonical form, so equal payloads always
produce equal keys regardless of dict ordering.
"""

from typing import Any
import hashlib
import json


def canonical_json(payload: Any) -> str:
    """Key-sorted, whitespace-free JSON; non-JSON values are rendered with str()."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def payload_hash(payload: Any) -> str:
    """
    Hex sha256 of the canonical JSON of payload.

    Example:
        payload_hash({'b': 1, 'a': 2}) == payload_hash({'a': 2, 'b': 1})
    """
    return hashlib.sha256(canonical_json(payload).encode()).hexdigest()
