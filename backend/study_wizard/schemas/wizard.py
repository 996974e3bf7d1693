"""
Wizard Domain Types — status machine, steps, and the session snapshot.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class WizardStatus(str, Enum):
    IDLE = "idle"
    DRAFT = "draft"
    ESCROW = "escrow"
    ESCROW_DONE = "escrow_done"
    REGISTRY = "registry"
    REGISTRY_DONE = "registry_done"
    CRITERIA = "criteria"
    CRITERIA_DONE = "criteria_done"
    MILESTONES = "milestones"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return STATUS_ORDER.index(self)

    def at_least(self, other: "WizardStatus") -> bool:
        return self.rank >= other.rank


STATUS_ORDER: List[WizardStatus] = list(WizardStatus)


class WizardStep(str, Enum):
    ESCROW = "escrow"
    REGISTRY = "registry"
    CRITERIA = "criteria"
    MILESTONES = "milestones"

    @property
    def index(self) -> int:
        return list(WizardStep).index(self) + 1

    @property
    def form_key(self) -> str:
        return f"step{self.index}"

    @property
    def ready_status(self) -> WizardStatus:
        """Status in which this step becomes the active one."""
        return _STEP_STATUSES[self][0]

    @property
    def in_progress_status(self) -> WizardStatus:
        return _STEP_STATUSES[self][1]

    @property
    def done_status(self) -> WizardStatus:
        return _STEP_STATUSES[self][2]


_STEP_STATUSES = {
    WizardStep.ESCROW: (WizardStatus.DRAFT, WizardStatus.ESCROW, WizardStatus.ESCROW_DONE),
    WizardStep.REGISTRY: (WizardStatus.ESCROW_DONE, WizardStatus.REGISTRY, WizardStatus.REGISTRY_DONE),
    WizardStep.CRITERIA: (WizardStatus.REGISTRY_DONE, WizardStatus.CRITERIA, WizardStatus.CRITERIA_DONE),
    WizardStep.MILESTONES: (WizardStatus.CRITERIA_DONE, WizardStatus.MILESTONES, WizardStatus.COMPLETE),
}

STEP_LABELS = {
    WizardStep.ESCROW: "Escrow Setup",
    WizardStep.REGISTRY: "Registry Publication",
    WizardStep.CRITERIA: "Eligibility Criteria",
    WizardStep.MILESTONES: "Milestones",
}


class SessionIds(BaseModel):
    database_id: Optional[str] = None
    escrow_id: Optional[int] = None
    registry_id: Optional[int] = None


class SessionTxHashes(BaseModel):
    escrow: Optional[str] = None
    registry: Optional[str] = None
    criteria: Optional[str] = None
    milestones: List[str] = Field(default_factory=list)


class PendingTx(BaseModel):
    """A broadcast transaction whose step has not been checkpointed yet."""

    step: WizardStep
    tx_hash: str
    item_index: Optional[int] = None   # sequential milestone item, if any
    chain_id: Optional[int] = None     # set once confirmed
    block_number: Optional[int] = None
    emitted_ids: List[int] = Field(default_factory=list)

    @property
    def confirmed(self) -> bool:
        return self.block_number is not None


class WizardSession(BaseModel):
    """Read-only snapshot of a persisted wizard run."""

    key: str
    status: WizardStatus = WizardStatus.IDLE
    owner: Optional[str] = None
    ids: SessionIds = Field(default_factory=SessionIds)
    tx_hashes: SessionTxHashes = Field(default_factory=SessionTxHashes)
    form_data: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    milestone_index: int = 0
    pending_tx: Optional[PendingTx] = None
    error: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def form(self, step: WizardStep) -> Optional[Dict[str, Any]]:
        return self.form_data.get(step.form_key)


class UnsignedTx(BaseModel):
    """Contract call description handed to the wallet for signing."""

    step: WizardStep
    to: str
    function_name: str
    args: List[Any]
    chain_id: int
    value: int = 0
    item_index: Optional[int] = None


class Confirmation(BaseModel):
    tx_hash: str
    chain_id: int
    block_number: int
    success: bool = True
    emitted_ids: List[int] = Field(default_factory=list)  # first indexed topic of each log
