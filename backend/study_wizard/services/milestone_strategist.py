"""
Milestone Batch Strategist — executes the final wizard step.

Up to ``batch_threshold`` milestones are added one transaction at a time
(sequential); above it, one ``addMilestonesBatch`` transaction carries them all.
Sequential progress (index + confirmed hashes) is checkpointed after every
item, so a resumed run signs only the items that are left.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import List, Literal, Sequence

from study_wizard.config import WizardPolicy
from study_wizard.schemas.forms import EscrowStepForm, MilestoneInput, MilestonesStepForm
from study_wizard.schemas.schemas import BuildTxRequest, MilestonePlanView
from study_wizard.schemas.wizard import WizardSession, WizardStep
from study_wizard.services.errors import (
    BudgetExceededError, InvalidInputError, PreconditionViolation, WizardError,
)
from study_wizard.services.step_controller import StepController

logger = logging.getLogger(__name__)

Mode = Literal["sequential", "batch"]


def choose_mode(count: int, threshold: int = 6) -> Mode:
    """``count <= threshold`` is sequential; anything larger is one batch."""
    return "sequential" if count <= threshold else "batch"


@dataclass(frozen=True)
class BudgetCheck:
    total_rewards: float
    total_funding: float
    remaining: float
    over_budget: bool
    blocking: bool


def check_budget(items: Sequence[MilestoneInput], total_funding: float, policy: str = "block") -> BudgetCheck:
    """Pure comparison of summed rewards against step-1 funding; run on every edit."""
    total_rewards = math.fsum(item.reward_amount for item in items)
    over = total_rewards > total_funding
    return BudgetCheck(
        total_rewards=total_rewards,
        total_funding=total_funding,
        remaining=total_funding - total_rewards,
        over_budget=over,
        blocking=over and policy == "block",
    )


def enforce_budget(items: Sequence[MilestoneInput], total_funding: float, policy: str = "block") -> BudgetCheck:
    result = check_budget(items, total_funding, policy)
    if result.blocking:
        raise BudgetExceededError(result.total_rewards, result.total_funding)
    if result.over_budget:
        logger.warning("Milestone rewards %.2f exceed funding %.2f (policy=%s)",
                       result.total_rewards, result.total_funding, policy)
    return result


@dataclass
class MilestoneBatchPlan:
    """Recomputed from form data on every run; only index and hashes are persisted."""

    items: List[MilestoneInput]
    mode: Mode
    current_index: int = 0
    tx_hashes: List[str] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: WizardSession, policy: WizardPolicy) -> "MilestoneBatchPlan":
        data = session.form(WizardStep.MILESTONES)
        if not data:
            raise InvalidInputError("No milestones on record", step=WizardStep.MILESTONES.value)
        items = MilestonesStepForm(**data).milestones
        if len(items) > policy.max_milestones:
            raise InvalidInputError(f"Maximum {policy.max_milestones} milestones allowed",
                                    step=WizardStep.MILESTONES.value)
        plan = cls(
            items=items,
            mode=choose_mode(len(items), policy.batch_threshold),
            current_index=session.milestone_index,
            tx_hashes=list(session.tx_hashes.milestones),
        )
        if plan.mode == "batch" and plan.current_index:
            raise PreconditionViolation("Sequential progress recorded for a batch-sized milestone list",
                                        step=WizardStep.MILESTONES.value)
        return plan

    @property
    def remaining(self) -> range:
        return range(self.current_index, len(self.items))

    def view(self) -> MilestonePlanView:
        return MilestonePlanView(
            mode=self.mode,
            total=len(self.items),
            current_index=self.current_index,
            tx_hashes=self.tx_hashes,
        )


def total_funding_of(session: WizardSession) -> float:
    data = session.form(WizardStep.ESCROW)
    if not data:
        raise PreconditionViolation("Milestones require step 1 funding data", step=WizardStep.MILESTONES.value)
    return EscrowStepForm(**data).total_funding


class MilestonesStepController(StepController):
    step = WizardStep.MILESTONES
    form_model = MilestonesStepForm

    def check_preconditions(self, session):
        super().check_preconditions(session)
        if session.ids.escrow_id is None or session.ids.registry_id is None:
            raise PreconditionViolation("Milestones require escrow and registry ids", step=self.step.value)
        if not session.tx_hashes.criteria:
            raise PreconditionViolation("Milestones require confirmed criteria", step=self.step.value)

    def build_request(self, session, form, item_index=None):
        return BuildTxRequest(
            step=self.step,
            owner=session.owner,
            escrow_id=session.ids.escrow_id,
            registry_id=session.ids.registry_id,
            form=form.model_dump(mode="json"),
            item_index=item_index,
        )

    async def run(self, form=None):
        session = self.prepare(form)
        form = self.load_form(session)
        try:
            plan = MilestoneBatchPlan.from_session(session, self.ctx.policy)
            enforce_budget(plan.items, total_funding_of(session), self.ctx.policy.budget_policy)

            if plan.mode == "batch":
                logger.info("Adding %d milestones in one batch transaction", len(plan.items))
                confirmation = await self.execute_tx(session, form)
                hashes = [confirmation.tx_hash]
            else:
                last = len(plan.items) - 1
                logger.info("Adding milestones sequentially: %d of %d left",
                            len(plan.remaining), len(plan.items))
                for index in plan.remaining:
                    confirmation = await self.execute_tx(self.store.read(), form, item_index=index)
                    # The last item stays pending until indexed, so a failed index retries without re-signing
                    if index < last:
                        self.store.record_milestone_progress(confirmation.tx_hash)
                hashes = self.store.read().tx_hashes.milestones + [confirmation.tx_hash]

            payload = {
                "emitted_ids": confirmation.emitted_ids,
                "tx_hashes": hashes,
                "mode": plan.mode,
                "escrow_id": session.ids.escrow_id,
                "registry_id": session.ids.registry_id,
                "milestones": [item.model_dump(mode="json") for item in plan.items],
            }
            await self.index(session, confirmation, payload)
            return self.store.complete_milestones_tx(hashes)
        except WizardError as exc:
            self.record_failure(exc)
            raise
