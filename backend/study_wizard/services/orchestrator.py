"""
Wizard Orchestrator — turns wizard commands into step runs for one session.

Owns the session lifecycle: ownership check and single-flight creation on
activation, dispatch of submit/retry to the active step's controller, and full
reset when persisted state can no longer be trusted.
"""
import logging
from typing import Dict, Optional, Type

from study_wizard.config import WizardPolicy
from study_wizard.schemas.schemas import (
    ActiveStepView, CancelCommand, FinishCommand, MilestonePlanView, RetryCommand,
    StartCommand, SubmitCriteriaCommand, SubmitEscrowCommand, SubmitMilestonesCommand,
    SubmitRegistryCommand, WizardSessionView,
)
from study_wizard.schemas.wizard import STEP_LABELS, WizardSession, WizardStatus, WizardStep
from study_wizard.services.context import ContextRegistry, WizardContext
from study_wizard.services.errors import (
    CorruptSessionError, InvalidTransitionError, PreconditionViolation, StepInProgressError,
    StepMismatchError, TransportError, WizardError,
)
from study_wizard.services.milestone_strategist import MilestonesStepController, choose_mode
from study_wizard.services.ownership import OwnershipGuard
from study_wizard.services.session_store import current_step
from study_wizard.services.step_controller import (
    CriteriaStepController, EscrowStepController, RegistryStepController, StepController,
)

logger = logging.getLogger(__name__)

CONTROLLERS: Dict[WizardStep, Type[StepController]] = {
    WizardStep.ESCROW: EscrowStepController,
    WizardStep.REGISTRY: RegistryStepController,
    WizardStep.CRITERIA: CriteriaStepController,
    WizardStep.MILESTONES: MilestonesStepController,
}

SUBMIT_COMMANDS = {
    SubmitEscrowCommand: WizardStep.ESCROW,
    SubmitRegistryCommand: WizardStep.REGISTRY,
    SubmitCriteriaCommand: WizardStep.CRITERIA,
    SubmitMilestonesCommand: WizardStep.MILESTONES,
}


def build_view(session: WizardSession, policy: WizardPolicy, ownership_reset: bool = False) -> WizardSessionView:
    """Render-ready projection of a session: active step, resume flag and saved input."""
    step = current_step(session.status)
    active = None
    if step is not None:
        plan = None
        saved = session.form(step)
        if step is WizardStep.MILESTONES and saved and saved.get("milestones"):
            plan = MilestonePlanView(
                mode=choose_mode(len(saved["milestones"]), policy.batch_threshold),
                total=len(saved["milestones"]),
                current_index=session.milestone_index,
                tx_hashes=session.tx_hashes.milestones,
            )
        active = ActiveStepView(
            step=step,
            index=step.index,
            label=STEP_LABELS[step],
            is_resuming=session.status is step.in_progress_status or session.pending_tx is not None,
            initial_data=saved,
            pending_tx_hash=session.pending_tx.tx_hash if session.pending_tx else None,
            milestone_plan=plan,
        )
    return WizardSessionView(
        session=session,
        current_step=step.index if step else None,
        active=active,
        can_resume=session.status not in (WizardStatus.IDLE, WizardStatus.COMPLETE),
        ownership_reset=ownership_reset,
    )


class WizardOrchestrator:

    def __init__(self, ctx: WizardContext, registry: Optional[ContextRegistry] = None):
        self.ctx = ctx
        self.registry = registry

    @property
    def store(self):
        return self.ctx.store

    # ──────────────── Lifecycle ────────────────

    async def activate(self, actor: str) -> WizardSessionView:
        """Enter the wizard: enforce ownership, then resume or start a session."""
        ownership_reset = self.guard(actor)
        try:
            session = self.store.read()
        except CorruptSessionError as exc:
            logger.error("Session %s is corrupt, starting over: %s", self.ctx.key, exc.message)
            self.store.reset(reason="corrupt")
            session = self.store.read()

        if session.status is WizardStatus.IDLE:
            await self.ensure_started(actor)
        return self.view(ownership_reset=ownership_reset)

    async def ensure_started(self, owner: str) -> WizardSession:
        """Create the backing study at most once per session."""
        session = self.store.read()
        if session.ids.database_id or self.ctx.creating:
            return session

        self.ctx.creating = True
        try:
            database_id = await self.ctx.create_initial(owner)
        except WizardError as exc:
            self.store.set_error(exc.message)
            raise
        except Exception as exc:
            logger.error("Initial study creation failed for %s: %s", owner, exc)
            self.store.set_error("Could not create the study record")
            raise TransportError("Could not create the study record") from exc
        finally:
            self.ctx.creating = False
        return self.store.start_creation(database_id, owner)

    def cancel(self) -> WizardSessionView:
        self.store.cancel_creation()
        self._teardown()
        return self.view()

    def finish(self) -> str:
        """Leave a completed wizard; returns the study's database id."""
        session = self.store.read()
        if session.status is not WizardStatus.COMPLETE:
            raise InvalidTransitionError(f"Cannot finish a wizard in status '{session.status.value}'")
        self.store.reset(reason="finished")
        self._teardown()
        logger.info("Wizard %s finished for study %s", self.ctx.key, session.ids.database_id)
        return session.ids.database_id

    def guard(self, actor: str) -> bool:
        """Ownership check for every entry point; returns True if the session was reset.

        A session with a step in flight is never reset; another wallet is turned away instead.
        """
        if self.ctx.busy:
            if not OwnershipGuard.owns(self.store, actor):
                raise StepInProgressError("The wizard is busy with another wallet's transaction; try again shortly")
            return False
        return OwnershipGuard.enforce(self.store, actor)

    def _teardown(self) -> None:
        if self.registry is not None:
            self.registry.drop(self.ctx.key)
        else:
            self.ctx.teardown()

    # ──────────────── Commands ────────────────

    async def handle(self, command, actor: str) -> WizardSessionView:
        if isinstance(command, StartCommand):
            return await self.activate(actor)

        if self.ctx.running:
            raise StepInProgressError("A step is already in progress for this session; retry once it settles")
        if self.guard(actor):
            return self.view(ownership_reset=True)

        if isinstance(command, CancelCommand):
            return self.cancel()
        if isinstance(command, FinishCommand):
            self.finish()
            return self.view()
        if isinstance(command, RetryCommand):
            step = current_step(self._read().status)
            if step is None:
                raise StepMismatchError("Nothing to retry: the wizard is complete")
            return await self._run(step, None)

        step = SUBMIT_COMMANDS.get(type(command))
        if step is None:
            raise TypeError(f"Unknown wizard command: {type(command).__name__}")
        return await self._run(step, command.form)

    async def _run(self, step: WizardStep, form) -> WizardSessionView:
        if self.ctx.running:
            raise StepInProgressError(f"{step.value} is already in progress", step=step.value)
        self.ctx.running = True
        controller = CONTROLLERS[step](self.ctx)
        try:
            await controller.run(form)
        except PreconditionViolation as exc:
            logger.error("Session %s reset after %s on %s: %s", self.ctx.key, exc.code, step.value, exc.message)
            self.store.reset(reason=exc.code.lower())
            self._teardown()
            raise
        finally:
            self.ctx.running = False
        return self.view()

    def _read(self) -> WizardSession:
        try:
            return self.store.read()
        except CorruptSessionError:
            self.store.reset(reason="corrupt")
            self._teardown()
            raise

    def view(self, ownership_reset: bool = False) -> WizardSessionView:
        return build_view(self._read(), self.ctx.policy, ownership_reset)
