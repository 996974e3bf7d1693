from study_wizard.models.wizard_session import WizardSessionRecord
from study_wizard.models.study import Study, StepIndexEntry
from study_wizard.models.audit import AuditLog

__all__ = ["WizardSessionRecord", "Study", "StepIndexEntry", "AuditLog"]
