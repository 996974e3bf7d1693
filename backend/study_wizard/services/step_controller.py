"""
Step Controllers — drive one wizard step through build, sign, confirm, index, checkpoint.

A broadcast hash is written to the session before confirmation is awaited, and
the confirmation before indexing is attempted. A retry therefore resumes at the
first stage that has not completed: it waits on the known hash, or only re-runs
the indexer, and never asks the wallet to sign the same step twice.
"""
import asyncio
import logging
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ValidationError

from study_wizard.schemas.forms import (
    CriteriaStepForm, EscrowStepForm, RegistryStepForm,
)
from study_wizard.schemas.schemas import BuildTxRequest
from study_wizard.schemas.wizard import Confirmation, WizardSession, WizardStatus, WizardStep
from study_wizard.services.context import WizardContext
from study_wizard.services.errors import (
    ConfirmationTimeoutError, InvalidInputError, InvalidTransitionError, PreconditionViolation, StepMismatchError,
    TransactionRevertedError, WizardError,
)
from study_wizard.services.indexer import index_with_retry
from study_wizard.services.session_store import current_step
from study_wizard.utils.hashing import short_hash

logger = logging.getLogger(__name__)


class StepController:
    """Generic single-transaction step. Subclasses fill in the step-specific parts."""

    step: WizardStep
    form_model: Type[BaseModel]

    def __init__(self, ctx: WizardContext):
        self.ctx = ctx

    @property
    def store(self):
        return self.ctx.store

    # ──────────────── Step-specific hooks ────────────────

    def check_preconditions(self, session: WizardSession) -> None:
        if not session.ids.database_id:
            raise PreconditionViolation("Session has no databaseId", step=self.step.value)

    def build_request(self, session: WizardSession, form: BaseModel,
                      item_index: Optional[int] = None) -> BuildTxRequest:
        raise NotImplementedError

    def index_payload(self, session: WizardSession, form: BaseModel,
                      confirmation: Confirmation) -> Dict[str, Any]:
        return {"emitted_ids": confirmation.emitted_ids}

    def checkpoint(self, tx_hash: str, derived: Dict[str, Any]) -> WizardSession:
        raise NotImplementedError

    # ──────────────── Driver ────────────────

    def load_form(self, session: WizardSession) -> BaseModel:
        data = session.form(self.step)
        if data is None:
            raise InvalidInputError(f"No {self.step.value} input on record", step=self.step.value)
        try:
            return self.form_model(**data)
        except ValidationError as exc:
            raise InvalidInputError(f"Recorded {self.step.value} input is invalid: {exc}",
                                    step=self.step.value) from exc

    def prepare(self, form: Optional[BaseModel]) -> WizardSession:
        """Check the step is active, its upstream ids exist, and record new input."""
        session = self.store.read()
        if session.status is WizardStatus.IDLE or current_step(session.status) is not self.step:
            raise StepMismatchError(
                f"{self.step.value} is not the active step (status '{session.status.value}')",
                step=self.step.value,
            )
        self.check_preconditions(session)

        if form is not None:
            data = form.model_dump(mode="json")
            if session.form(self.step) != data:
                try:
                    session = self.store.save_form_data(self.step, data)
                except InvalidTransitionError as exc:
                    # Locked by a broadcast or partly-submitted transaction
                    raise InvalidInputError(exc.message, step=self.step.value) from exc
        return session

    async def run(self, form: Optional[BaseModel] = None) -> WizardSession:
        session = self.prepare(form)
        form = self.load_form(session)
        try:
            confirmation = await self.execute_tx(session, form)
            derived = await self.index(session, confirmation, self.index_payload(session, form, confirmation))
            return self.checkpoint(confirmation.tx_hash, derived)
        except WizardError as exc:
            self.record_failure(exc)
            raise

    def record_failure(self, exc: WizardError) -> None:
        """Attach the error to the active step; precondition failures are escalated instead."""
        if not isinstance(exc, PreconditionViolation):
            logger.warning("%s step failed (%s): %s", self.step.value, exc.code, exc.message)
            self.store.set_error(exc.message)

    async def execute_tx(self, session: WizardSession, form: BaseModel,
                         item_index: Optional[int] = None) -> Confirmation:
        """Get one transaction confirmed, reusing a pending hash when there is one."""
        pending = session.pending_tx
        if pending is not None and pending.step is self.step and pending.item_index == item_index:
            if pending.confirmed:
                logger.info("Resuming %s: %s already confirmed", self.step.value, short_hash(pending.tx_hash))
                return Confirmation(
                    tx_hash=pending.tx_hash,
                    chain_id=pending.chain_id,
                    block_number=pending.block_number,
                    emitted_ids=pending.emitted_ids,
                )
            tx_hash = pending.tx_hash
            logger.info("Resuming %s: waiting on broadcast %s", self.step.value, short_hash(tx_hash))
        else:
            tx = await self.ctx.gateway.build_transaction(self.build_request(session, form, item_index))
            # Suspends on the wallet prompt; cancelling here leaves no trace in the session
            tx_hash = await self.ctx.gateway.sign_and_broadcast(tx)
            self.store.record_broadcast(self.step, tx_hash, item_index)

        confirmation = await self.confirm(tx_hash)
        self.store.record_confirmation(
            self.step, tx_hash, confirmation.chain_id, confirmation.block_number, confirmation.emitted_ids,
        )
        if not confirmation.success:
            self.store.discard_pending(self.step, tx_hash)
            raise TransactionRevertedError(
                f"{self.step.value} transaction {short_hash(tx_hash)} failed on-chain",
                step=self.step.value, tx_hash=tx_hash,
            )
        return confirmation

    async def confirm(self, tx_hash: str) -> Confirmation:
        timeout = self.ctx.policy.confirmation_timeout
        try:
            return await asyncio.wait_for(self.ctx.gateway.wait_for_confirmation(tx_hash), timeout)
        except asyncio.TimeoutError as exc:
            raise ConfirmationTimeoutError(
                f"Transaction {short_hash(tx_hash)} not confirmed after {timeout:g}s; retry to keep waiting",
                step=self.step.value, tx_hash=tx_hash,
            ) from exc

    async def index(self, session: WizardSession, confirmation: Confirmation,
                    payload: Dict[str, Any]) -> Dict[str, Any]:
        policy = self.ctx.policy
        return await index_with_retry(
            self.ctx.indexer,
            session.ids.database_id,
            self.step,
            confirmation.tx_hash,
            confirmation.chain_id,
            confirmation.block_number,
            payload,
            max_attempts=policy.indexer_max_attempts,
            backoff=policy.indexer_backoff,
        )


class EscrowStepController(StepController):
    step = WizardStep.ESCROW
    form_model = EscrowStepForm

    def build_request(self, session, form, item_index=None):
        return BuildTxRequest(step=self.step, owner=session.owner, form=form.model_dump(mode="json"))

    def index_payload(self, session, form, confirmation):
        return {
            "emitted_ids": confirmation.emitted_ids,
            "title": form.title,
            "description": form.description,
            "total_funding": form.total_funding,
            "max_participants": form.max_participants,
            "sponsor": session.owner,
        }

    def checkpoint(self, tx_hash, derived):
        return self.store.complete_escrow_tx(tx_hash, derived["escrow_id"])


class RegistryStepController(StepController):
    step = WizardStep.REGISTRY
    form_model = RegistryStepForm

    def check_preconditions(self, session):
        super().check_preconditions(session)
        if session.ids.escrow_id is None or not session.tx_hashes.escrow:
            raise PreconditionViolation("Registry step requires a confirmed escrow", step=self.step.value)
        if session.form(WizardStep.ESCROW) is None:
            raise PreconditionViolation("Registry step requires step 1 funding data", step=self.step.value)

    def build_request(self, session, form, item_index=None):
        return BuildTxRequest(
            step=self.step,
            owner=session.owner,
            escrow_id=session.ids.escrow_id,
            form=form.model_dump(mode="json"),
            funding=session.form(WizardStep.ESCROW),
        )

    def index_payload(self, session, form, confirmation):
        return {"emitted_ids": confirmation.emitted_ids, "escrow_id": session.ids.escrow_id}

    def checkpoint(self, tx_hash, derived):
        return self.store.complete_registry_tx(tx_hash, derived["registry_id"])


class CriteriaStepController(StepController):
    step = WizardStep.CRITERIA
    form_model = CriteriaStepForm

    def check_preconditions(self, session):
        super().check_preconditions(session)
        if session.ids.registry_id is None or not session.tx_hashes.registry:
            raise PreconditionViolation("Criteria step requires a published registry entry", step=self.step.value)

    def build_request(self, session, form, item_index=None):
        return BuildTxRequest(
            step=self.step,
            owner=session.owner,
            registry_id=session.ids.registry_id,
            form=form.model_dump(mode="json"),
        )

    def index_payload(self, session, form, confirmation):
        return {
            "emitted_ids": confirmation.emitted_ids,
            "registry_id": session.ids.registry_id,
            "min_age": form.min_age,
            "max_age": form.max_age,
            "eligibility_code_hash": form.eligibility_code_hash,
        }

    def checkpoint(self, tx_hash, derived):
        return self.store.complete_criteria_tx(tx_hash)
