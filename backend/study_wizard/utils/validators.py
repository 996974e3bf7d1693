"""
Validators — Format checks for on-chain identifiers.
"""
import re

TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def validate_tx_hash(tx_hash: str | None) -> bool:
    """Validate a transaction hash: 0x followed by 64 hex characters."""
    if not tx_hash:
        return False
    return bool(TX_HASH_RE.match(tx_hash.strip()))


def validate_address(address: str | None) -> bool:
    """Validate an EVM account address: 0x followed by 40 hex characters."""
    if not address:
        return False
    return bool(ADDRESS_RE.match(address.strip()))


def normalize_owner(address: str | None) -> str:
    """Owners are compared lower-cased; checksum casing must not split one wallet in two."""
    if not address:
        return ""
    return address.strip().lower()


def to_token_units(amount: float, decimals: int = 6) -> int:
    """Scale a human amount to integer token units, flooring the remainder."""
    return int(amount * 10 ** decimals)
