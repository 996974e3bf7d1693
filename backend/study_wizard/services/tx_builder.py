"""
Transaction Builder — unsigned contract calls for each wizard step.

Builds, never executes: the result is handed to the user's wallet for signing.
"""
import logging
from typing import List, Optional

from study_wizard.config import Settings, get_settings
from study_wizard.schemas.forms import (
    CriteriaStepForm, EscrowStepForm, MilestoneInput, MilestonesStepForm, RegistryStepForm,
    compensation_description,
)
from study_wizard.schemas.schemas import BuildTxRequest
from study_wizard.schemas.wizard import UnsignedTx, WizardStep
from study_wizard.services.errors import PreconditionViolation, TransportError
from study_wizard.utils.validators import to_token_units

logger = logging.getLogger(__name__)


class TxBuilder:
    """Builds the ResearchFundingEscrow / StudyRegistry calls for the wizard."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    # ──────────────── Contracts ────────────────

    def _escrow_address(self) -> str:
        if not self.settings.ESCROW_CONTRACT_ADDRESS:
            raise TransportError("ResearchFundingEscrow contract not deployed")
        return self.settings.ESCROW_CONTRACT_ADDRESS

    def _registry_address(self) -> str:
        if not self.settings.REGISTRY_CONTRACT_ADDRESS:
            raise TransportError("StudyRegistry contract not deployed")
        return self.settings.REGISTRY_CONTRACT_ADDRESS

    def _tx(self, step: WizardStep, to: str, function_name: str, args: list,
            item_index: Optional[int] = None) -> UnsignedTx:
        return UnsignedTx(
            step=step,
            to=to,
            function_name=function_name,
            args=args,
            chain_id=self.settings.DEFAULT_CHAIN_ID,
            item_index=item_index,
        )

    # ──────────────── Steps ────────────────

    def build_escrow(self, form: EscrowStepForm, owner: str) -> UnsignedTx:
        providers = form.certified_providers or [owner]
        # Description lives off-chain (registry step); the contract still takes the argument
        return self._tx(
            WizardStep.ESCROW, self._escrow_address(), "createStudy",
            [form.title, "", providers, form.max_participants],
        )

    def build_registry(self, escrow_id: Optional[int], form: RegistryStepForm,
                       funding: Optional[EscrowStepForm]) -> UnsignedTx:
        if escrow_id is None:
            raise PreconditionViolation("Escrow ID is required", step=WizardStep.REGISTRY.value)
        compensation = form.compensation_description
        if not compensation:
            if funding is None:
                raise PreconditionViolation("Step 1 funding is required to describe compensation",
                                            step=WizardStep.REGISTRY.value)
            compensation = compensation_description(funding.payment_per_participant)
        region = funding.region if funding else ""
        metadata_uri = form.criteria_uri or f"ipfs://metadata/{escrow_id}"
        return self._tx(
            WizardStep.REGISTRY, self._registry_address(), "publishStudy",
            [region, compensation, metadata_uri],
        )

    def build_criteria(self, registry_id: Optional[int], form: CriteriaStepForm) -> UnsignedTx:
        if registry_id is None:
            raise PreconditionViolation("Registry ID is required", step=WizardStep.CRITERIA.value)
        return self._tx(
            WizardStep.CRITERIA, self._registry_address(), "setStudyCriteria",
            [registry_id, form.min_age, form.max_age, int(form.eligibility_code_hash)],
        )

    def build_milestone(self, escrow_id: Optional[int], item: MilestoneInput, index: int) -> UnsignedTx:
        if escrow_id is None:
            raise PreconditionViolation("Escrow ID is required", step=WizardStep.MILESTONES.value)
        return self._tx(
            WizardStep.MILESTONES, self._escrow_address(), "addMilestone",
            [escrow_id, item.description, to_token_units(item.reward_amount, self.settings.USDC_DECIMALS)],
            item_index=index,
        )

    def build_milestones_batch(self, escrow_id: Optional[int], items: List[MilestoneInput]) -> UnsignedTx:
        if escrow_id is None:
            raise PreconditionViolation("Escrow ID is required", step=WizardStep.MILESTONES.value)
        descriptions = [m.description for m in items]
        amounts = [to_token_units(m.reward_amount, self.settings.USDC_DECIMALS) for m in items]
        return self._tx(
            WizardStep.MILESTONES, self._escrow_address(), "addMilestonesBatch",
            [escrow_id, descriptions, amounts],
        )

    # ──────────────── Dispatch ────────────────

    def build(self, request: BuildTxRequest) -> UnsignedTx:
        """Build the transaction described by a BuildTxRequest."""
        step = request.step
        if step is WizardStep.ESCROW:
            tx = self.build_escrow(EscrowStepForm(**request.form), request.owner)
        elif step is WizardStep.REGISTRY:
            funding = EscrowStepForm(**request.funding) if request.funding else None
            tx = self.build_registry(request.escrow_id, RegistryStepForm(**request.form), funding)
        elif step is WizardStep.CRITERIA:
            tx = self.build_criteria(request.registry_id, CriteriaStepForm(**request.form))
        else:
            items = MilestonesStepForm(**request.form).milestones
            if request.item_index is not None:
                if not 0 <= request.item_index < len(items):
                    raise PreconditionViolation(f"Milestone index {request.item_index} out of range",
                                                step=step.value)
                tx = self.build_milestone(request.escrow_id, items[request.item_index], request.item_index)
            else:
                tx = self.build_milestones_batch(request.escrow_id, items)

        logger.info("Built %s transaction %s for %s", step.value, tx.function_name, request.owner)
        return tx
