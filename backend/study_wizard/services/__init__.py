from study_wizard.services.audit_service import AuditService
from study_wizard.services.session_store import SessionStore, current_step
from study_wizard.services.context import ContextRegistry, WizardContext
from study_wizard.services.indexer import StudyIndexer, index_with_retry
from study_wizard.services.tx_builder import TxBuilder
from study_wizard.services.orchestrator import WizardOrchestrator, build_view

__all__ = [
    "AuditService", "SessionStore", "current_step", "ContextRegistry", "WizardContext",
    "StudyIndexer", "index_with_retry", "TxBuilder", "WizardOrchestrator", "build_view",
]
