from study_wizard.utils.hashing import generate_hash, generate_chain_hash, short_hash
from study_wizard.utils.validators import (
    validate_tx_hash, validate_address, normalize_owner, to_token_units,
)

__all__ = [
    "generate_hash", "generate_chain_hash", "short_hash",
    "validate_tx_hash", "validate_address", "normalize_owner", "to_token_units",
]
