# src/start_challenge/utils/hash.py
"""Hashing helpers providing a BLAKE3 interface over canonical JSON."""

from __future__ import annotations

import json
from typing import Any

from blake3 import blake3


def canonical_json(payload: Any) -> str:
    """Serialize ``payload`` with sorted keys and no insignificant whitespace."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)


def blake3_digest(data: bytes) -> bytes:
    """Return the byte digest of the supplied data."""
    return blake3(data).digest()


def blake3_hexdigest(data: bytes) -> str:
    """Return the hexadecimal digest of the supplied data."""
    return blake3(data).hexdigest()


def canonical_hexdigest(payload: Any) -> str:
    """Return the BLAKE3 hex digest of the canonical JSON form of ``payload``."""
    return blake3_hexdigest(canonical_json(payload).encode("utf-8"))
