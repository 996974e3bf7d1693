"""
Pydantic Schemas — Request & Response models for API validation.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

from study_wizard.schemas.forms import (
    CriteriaStepForm, EscrowStepForm, MilestoneInput, MilestonesStepForm, RegistryStepForm,
)
from study_wizard.schemas.wizard import WizardSession, WizardStep


# ──────────────── Studies ────────────────

class CreateInitialRequest(BaseModel):
    title: str = ""
    description: str = ""


class CreateInitialResponse(BaseModel):
    study_id: str
    message: str = "Initial study created successfully"


class StudyResponse(BaseModel):
    id: str
    researcher_address: str
    title: str
    description: str
    status: str
    total_funding: float = 0.0
    max_participants: int = 0
    chain_id: Optional[int] = None
    escrow_id: Optional[str] = None
    registry_id: Optional[str] = None
    escrow_tx_hash: Optional[str] = None
    registry_tx_hash: Optional[str] = None
    criteria_tx_hash: Optional[str] = None
    milestones_tx_hash: Optional[str] = None
    milestone_ids: List[str] = []
    wizard_steps_completed: List[str] = []
    wizard_completed: bool = False
    created_at: datetime

    class Config:
        from_attributes = True


# ──────────────── Transaction building ────────────────

class BuildTxRequest(BaseModel):
    step: WizardStep
    owner: str = Field(..., description="Wallet address that will sign")
    escrow_id: Optional[int] = None
    registry_id: Optional[int] = None
    form: Dict[str, Any] = Field(..., description="Step form data")
    funding: Optional[Dict[str, Any]] = Field(None, description="Step 1 form data, for derived fields")
    item_index: Optional[int] = Field(None, description="Sequential milestone item; omitted for batch")


# ──────────────── Indexing ────────────────

class IndexStepRequest(BaseModel):
    database_id: str
    step: WizardStep
    tx_hash: str
    chain_id: int
    block_number: int
    payload: Dict[str, Any] = {}


class IndexStepResponse(BaseModel):
    success: bool = True
    study_id: str
    step: WizardStep
    derived_ids: Dict[str, Any] = {}
    steps_completed: List[str] = []
    wizard_complete: bool = False
    duplicate: bool = False
    message: str = ""


# ──────────────── Wizard session ────────────────

class MilestonePlanView(BaseModel):
    mode: Literal["sequential", "batch"]
    total: int
    current_index: int
    tx_hashes: List[str] = []


class ActiveStepView(BaseModel):
    step: WizardStep
    index: int
    label: str
    is_resuming: bool = False
    initial_data: Optional[Dict[str, Any]] = None
    pending_tx_hash: Optional[str] = None
    milestone_plan: Optional[MilestonePlanView] = None


class WizardSessionView(BaseModel):
    session: WizardSession
    current_step: Optional[int] = None
    active: Optional[ActiveStepView] = None
    can_resume: bool = False
    ownership_reset: bool = False


class BudgetCheckRequest(BaseModel):
    total_funding: float = Field(..., gt=0)
    milestones: List[MilestoneInput]


class BudgetCheckResponse(BaseModel):
    total_rewards: float
    total_funding: float
    remaining: float
    over_budget: bool
    blocking: bool


# ──────────────── Wizard commands ────────────────

class StartCommand(BaseModel):
    kind: Literal["start"] = "start"


class SubmitEscrowCommand(BaseModel):
    kind: Literal["submit_escrow"] = "submit_escrow"
    form: EscrowStepForm


class SubmitRegistryCommand(BaseModel):
    kind: Literal["submit_registry"] = "submit_registry"
    form: RegistryStepForm


class SubmitCriteriaCommand(BaseModel):
    kind: Literal["submit_criteria"] = "submit_criteria"
    form: CriteriaStepForm


class SubmitMilestonesCommand(BaseModel):
    kind: Literal["submit_milestones"] = "submit_milestones"
    form: MilestonesStepForm


class RetryCommand(BaseModel):
    """Resume the active step with the input already on record."""

    kind: Literal["retry"] = "retry"


class CancelCommand(BaseModel):
    kind: Literal["cancel"] = "cancel"


class FinishCommand(BaseModel):
    kind: Literal["finish"] = "finish"


WizardCommand = Annotated[
    Union[
        StartCommand, SubmitEscrowCommand, SubmitRegistryCommand, SubmitCriteriaCommand,
        SubmitMilestonesCommand, RetryCommand, CancelCommand, FinishCommand,
    ],
    Field(discriminator="kind"),
]

wizard_command_adapter: TypeAdapter = TypeAdapter(WizardCommand)


# ──────────────── Admin / Audit ────────────────

class AuditLogEntry(BaseModel):
    id: int
    session_id: str
    action: str
    payload_hash: Optional[str] = None
    previous_hash: Optional[str] = None
    actor: Optional[str] = None
    timestamp: datetime
    log_metadata: Optional[Dict] = None

    class Config:
        from_attributes = True


# ──────────────── Generic ────────────────

class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    database: str
    uptime_seconds: float
