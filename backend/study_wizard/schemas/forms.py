"""
Step Form Schemas — user input captured at each wizard step.

Each step validates only the data its blockchain transaction needs; ids minted by
earlier transactions come from the session, never from the form.
"""
import math
import re
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

HEX_NUMBER_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")
DECIMAL_NUMBER_RE = re.compile(r"^[0-9]+$")


class EscrowStepForm(BaseModel):
    # Basic info
    title: str = Field(..., min_length=10, max_length=200)
    description: str = Field(..., min_length=50, max_length=2000)
    region: str = Field(..., min_length=2)

    # Compensation split in basis points (10000 = 100%)
    patient_percentage: int = Field(..., ge=0, le=10000)
    clinic_percentage: int = Field(..., ge=0, le=10000)

    # Funding, in USDC
    total_funding: float = Field(..., gt=0, le=10_000_000)
    max_participants: int = Field(..., gt=0, le=10_000)
    payment_per_participant: float = Field(..., gt=0, le=1_000_000)

    certified_providers: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_splits_and_funding(self):
        if self.patient_percentage + self.clinic_percentage != 10000:
            raise ValueError("Patient and clinic percentages must sum to 100%")
        if self.payment_per_participant * self.max_participants > self.total_funding:
            raise ValueError("Total funding must cover all participants")
        return self


class RegistryStepForm(BaseModel):
    # Generated from step 1 funding when left empty
    compensation_description: Optional[str] = Field(None, min_length=10, max_length=500)
    criteria_uri: Optional[str] = None


class CriteriaStepForm(BaseModel):
    min_age: int = Field(..., ge=0, le=120)
    max_age: int = Field(..., ge=0, le=120)
    requires_eligibility_proof: bool = False
    eligibility_code_hash: str = "0"

    @field_validator("eligibility_code_hash", mode="before")
    @classmethod
    def normalize_code_hash(cls, value):
        """Accept a decimal or 0x-prefixed hex number; stored as canonical decimal."""
        text = str(value).strip() if value is not None else ""
        if not text:
            return "0"
        if HEX_NUMBER_RE.match(text):
            return str(int(text, 16))
        if DECIMAL_NUMBER_RE.match(text):
            return str(int(text))
        raise ValueError("Eligibility code hash must be a decimal or 0x-prefixed hex number")

    @model_validator(mode="after")
    def check_age_range(self):
        if self.min_age > self.max_age:
            raise ValueError("Minimum age must be less than or equal to maximum age")
        if not self.requires_eligibility_proof:
            self.eligibility_code_hash = "0"
        return self


class MilestoneType(str, Enum):
    ENROLLMENT = "Enrollment"
    DATA_SUBMISSION = "DataSubmission"
    FOLLOW_UP_VISIT = "FollowUpVisit"
    STUDY_COMPLETION = "StudyCompletion"
    CUSTOM = "Custom"


class MilestoneInput(BaseModel):
    type: MilestoneType
    description: str = Field(..., min_length=5, max_length=200)
    reward_amount: float = Field(..., gt=0, le=1_000_000)


class MilestonesStepForm(BaseModel):
    # Upper bound is policy (MAX_MILESTONES), checked by the strategist
    milestones: List[MilestoneInput] = Field(..., min_length=1)


def compensation_description(payment_per_participant: float) -> str:
    """Public compensation text derived from step-1 funding parameters."""
    return (
        f"Participants will receive {payment_per_participant:g} USDC total "
        f"for completing the study appointments"
    )


def generate_milestone_template(appointments: int, total_funding: float) -> List[MilestoneInput]:
    """Enrollment, one follow-up per appointment, then completion, rewarded evenly."""
    if appointments < 0:
        raise ValueError("appointments must be >= 0")
    reward = math.floor(total_funding / (appointments + 2))
    if reward <= 0:
        raise ValueError("Total funding too small for the requested number of milestones")

    items = [MilestoneInput(type=MilestoneType.ENROLLMENT, description="Initial enrollment", reward_amount=reward)]
    items += [
        MilestoneInput(
            type=MilestoneType.FOLLOW_UP_VISIT,
            description=f"Follow-up visit {i + 1}",
            reward_amount=reward,
        )
        for i in range(appointments)
    ]
    items.append(
        MilestoneInput(
            type=MilestoneType.STUDY_COMPLETION,
            description="Complete all requirements",
            reward_amount=reward,
        )
    )
    return items
