from study_wizard.schemas.wizard import WizardSession, WizardStatus, WizardStep
from study_wizard.schemas.forms import (
    EscrowStepForm, RegistryStepForm, CriteriaStepForm, MilestonesStepForm, MilestoneInput,
)

__all__ = [
    "WizardSession", "WizardStatus", "WizardStep",
    "EscrowStepForm", "RegistryStepForm", "CriteriaStepForm", "MilestonesStepForm", "MilestoneInput",
]
