"""
Hashing Utilities — SHA-256 digests for the wizard audit trail.
"""
import hashlib
import json
from typing import Any


def canonical_json(data: Any) -> bytes:
    """Deterministic JSON encoding (sorted keys, no whitespace)."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def generate_hash(data: Any) -> str:
    """SHA-256 of the canonical JSON encoding of ``data``."""
    return hashlib.sha256(canonical_json(data)).hexdigest()


def generate_chain_hash(current_data: Any, previous_hash: str = "") -> str:
    """SHA-256(previous_hash + hash(current_data)); links each audit entry to the one before."""
    chain_input = f"{previous_hash}{generate_hash(current_data)}".encode("utf-8")
    return hashlib.sha256(chain_input).hexdigest()


def short_hash(tx_hash: str | None, width: int = 10) -> str:
    """Abbreviated hash for log lines, e.g. 0x1234abcd…"""
    if not tx_hash:
        return "-"
    return tx_hash if len(tx_hash) <= width + 2 else f"{tx_hash[:width + 2]}…"
