"""
Ownership Guard — a wallet only ever resumes its own wizard session.
"""
import logging

from study_wizard.schemas.wizard import WizardStatus
from study_wizard.services.errors import OwnershipMismatchError
from study_wizard.services.session_store import SessionStore
from study_wizard.utils.validators import normalize_owner, validate_address

logger = logging.getLogger(__name__)


class OwnershipGuard:

    @staticmethod
    def owns(store: SessionStore, actor: str) -> bool:
        """True when ``actor`` may use the session as it stands (idle sessions belong to anyone)."""
        if not validate_address(actor):
            raise OwnershipMismatchError("A connected wallet is required")
        status, owner = store.persisted_owner()
        return status is WizardStatus.IDLE or owner == normalize_owner(actor)

    @staticmethod
    def enforce(store: SessionStore, actor: str) -> bool:
        """Reset the session when it belongs to another wallet.

        Returns True if a reset happened. Addresses compare case-insensitively.
        """
        if OwnershipGuard.owns(store, actor):
            return False

        _, owner = store.persisted_owner()
        logger.warning("Session %s owned by %s, accessed by %s; resetting", store.key, owner, normalize_owner(actor))
        store.reset(reason="ownership")
        return True
