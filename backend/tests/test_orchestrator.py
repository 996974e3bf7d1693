import asyncio

import pytest
from sqlalchemy.orm import Session

from study_wizard.models.study import Study
from study_wizard.models.wizard_session import WizardSessionRecord
from study_wizard.schemas.schemas import (
    CancelCommand, FinishCommand, RetryCommand, SubmitEscrowCommand, SubmitMilestonesCommand,
)
from study_wizard.schemas.wizard import WizardStatus, WizardStep
from study_wizard.services.audit_service import AuditService
from study_wizard.services.context import ContextRegistry
from study_wizard.services.errors import (
    ConfirmationTimeoutError, InvalidTransitionError, OwnershipMismatchError, PreconditionViolation,
    StepInProgressError, TransportError, UserDeclinedError,
)
from study_wizard.services.orchestrator import WizardOrchestrator
from study_wizard.services.study_service import StudyService

from conftest import ESCROW_ID, OTHER, OWNER, FakeGateway, drive, escrow_form, milestones_form, run


def test_activate_starts_one_session(orchestrator, db):
    view = run(orchestrator.activate(OWNER))
    assert view.session.status is WizardStatus.DRAFT
    assert view.current_step == 1
    assert view.active.step is WizardStep.ESCROW
    assert not view.ownership_reset

    again = run(orchestrator.activate(OWNER.upper().replace("0X", "0x")))
    assert again.session.ids.database_id == view.session.ids.database_id
    assert db.query(Study).count() == 1


def test_other_wallet_resets_session(orchestrator, db):
    run(drive(orchestrator, "escrow"))
    first_study = orchestrator.store.read().ids.database_id

    view = run(orchestrator.activate(OTHER))
    assert view.ownership_reset
    assert view.session.status is WizardStatus.DRAFT
    assert view.session.owner == OTHER
    assert view.session.ids.database_id != first_study
    assert view.session.ids.escrow_id is None

    resets = [e for e in AuditService.get_trail(db, "profile-1") if e.action == "SESSION_RESET"]
    assert resets[0].log_metadata["payload"]["reason"] == "ownership"


def test_command_from_other_wallet_does_not_run(orchestrator, gateway):
    run(orchestrator.activate(OWNER))
    view = run(orchestrator.handle(SubmitEscrowCommand(form=escrow_form()), OTHER))
    assert view.ownership_reset
    assert view.session.status is WizardStatus.IDLE
    assert gateway.signatures == []


def test_wallet_required(orchestrator):
    with pytest.raises(OwnershipMismatchError):
        run(orchestrator.activate(""))
    with pytest.raises(OwnershipMismatchError):
        run(orchestrator.activate("not-a-wallet"))


def test_initial_creation_is_single_flight(make_context, db):
    created = []

    async def slow_create(owner):
        await asyncio.sleep(0.01)
        study = StudyService.create_initial(db, owner)
        created.append(study.id)
        return study.id

    orchestrator = WizardOrchestrator(make_context(create_initial=slow_create))

    async def activate_twice():
        return await asyncio.gather(orchestrator.activate(OWNER), orchestrator.activate(OWNER))

    run(activate_twice())
    assert len(created) == 1
    assert orchestrator.store.read().ids.database_id == created[0]


def test_failed_initial_creation_leaves_session_idle(make_context):
    async def broken_create(owner):
        raise RuntimeError("database is locked")

    orchestrator = WizardOrchestrator(make_context(create_initial=broken_create))
    with pytest.raises(TransportError):
        run(orchestrator.activate(OWNER))
    session = orchestrator.store.read()
    assert session.status is WizardStatus.IDLE
    assert session.error
    assert not orchestrator.ctx.creating


def test_retry_command_resumes_active_step(orchestrator, gateway):
    run(orchestrator.activate(OWNER))
    gateway.decline = 1
    with pytest.raises(UserDeclinedError):
        run(orchestrator.handle(SubmitEscrowCommand(form=escrow_form()), OWNER))

    view = run(orchestrator.handle(RetryCommand(), OWNER))
    assert view.session.status is WizardStatus.ESCROW_DONE
    assert view.active.step is WizardStep.REGISTRY


def test_unknown_command_is_rejected(orchestrator):
    run(orchestrator.activate(OWNER))
    with pytest.raises(TypeError):
        run(orchestrator.handle(object(), OWNER))


def test_missing_upstream_data_resets_session(orchestrator, ctx, db):
    run(drive(orchestrator, "escrow"))
    record = db.get(WizardSessionRecord, "profile-1")
    record.form_data = {}
    db.commit()

    with pytest.raises(PreconditionViolation):
        run(orchestrator.handle(RetryCommand(), OWNER))
    assert orchestrator.store.read().status is WizardStatus.IDLE
    assert not ctx.active


def test_corrupt_session_starts_over_on_activate(orchestrator, db):
    run(orchestrator.activate(OWNER))
    record = db.get(WizardSessionRecord, "profile-1")
    corrupt_study = record.database_id
    record.status = WizardStatus.REGISTRY_DONE.value
    db.commit()

    view = run(orchestrator.activate(OWNER))
    assert view.session.status is WizardStatus.DRAFT
    assert view.session.ids.database_id != corrupt_study


def test_cancel_discards_session(orchestrator, ctx):
    run(drive(orchestrator, "registry"))
    view = run(orchestrator.handle(CancelCommand(), OWNER))
    assert view.session.status is WizardStatus.IDLE
    assert not view.can_resume
    assert not ctx.active


def test_finish_requires_complete(orchestrator):
    run(drive(orchestrator, "criteria"))
    with pytest.raises(InvalidTransitionError):
        orchestrator.finish()

    run(orchestrator.handle(SubmitMilestonesCommand(form=milestones_form(2)), OWNER))
    database_id = orchestrator.store.read().ids.database_id
    assert orchestrator.finish() == database_id
    assert orchestrator.store.read().status is WizardStatus.IDLE


def test_finish_command_returns_idle_view(orchestrator):
    run(drive(orchestrator, "criteria"))
    run(orchestrator.handle(SubmitMilestonesCommand(form=milestones_form(1)), OWNER))
    view = run(orchestrator.handle(FinishCommand(), OWNER))
    assert view.session.status is WizardStatus.IDLE


def test_view_marks_resumed_step(orchestrator, gateway):
    run(orchestrator.activate(OWNER))
    gateway.stall = 1
    with pytest.raises(ConfirmationTimeoutError):
        run(orchestrator.handle(SubmitEscrowCommand(form=escrow_form()), OWNER))

    view = orchestrator.view()
    assert view.can_resume
    assert view.active.is_resuming
    assert view.active.pending_tx_hash == view.session.pending_tx.tx_hash
    assert view.active.initial_data["title"] == "Sleep Quality Study 2026"


def test_view_shows_milestone_plan(orchestrator, gateway):
    run(drive(orchestrator, "criteria"))
    gateway.decline_at_item = 1
    with pytest.raises(UserDeclinedError):
        run(orchestrator.handle(SubmitMilestonesCommand(form=milestones_form(3)), OWNER))

    plan = orchestrator.view().active.milestone_plan
    assert plan.mode == "sequential"
    assert plan.total == 3
    assert plan.current_index == 1
    assert len(plan.tx_hashes) == 1


def test_context_registry_lifecycle(make_context, db):
    registry = ContextRegistry(lambda key, session: make_context(key=key))
    first = registry.get("profile-1", db)
    assert registry.get("profile-1", db) is first
    assert len(registry) == 1

    registry.drop("profile-1")
    assert not first.active
    assert registry.peek("profile-1") is None
    assert registry.get("profile-1", db) is not first


def test_context_registry_evicts_idle_contexts(make_context, db):
    now = [0.0]
    registry = ContextRegistry(lambda key, session: make_context(key=key), idle_ttl=60, clock=lambda: now[0])
    stale = registry.get("profile-1", db)
    busy = registry.get("profile-2", db)
    busy.running = True

    now[0] = 120
    registry.get("profile-3", db)
    assert registry.peek("profile-1") is None
    assert not stale.active
    assert registry.peek("profile-2") is busy
    assert len(registry) == 2


def test_busy_context_keeps_its_database_session(make_context, db):
    registry = ContextRegistry(lambda key, session: make_context(key=key))
    context = registry.get("profile-1", db)
    store = context.store
    other = Session(bind=db.get_bind())
    try:
        context.running = True
        assert registry.get("profile-1", other).store is store
        context.running = False
        assert registry.get("profile-1", other).store is not store
    finally:
        other.close()


class HeldGateway(FakeGateway):
    """Holds every wallet prompt until ``release`` is set."""

    release: asyncio.Event

    async def sign_and_broadcast(self, tx):
        await self.release.wait()
        return await super().sign_and_broadcast(tx)


def test_second_submit_while_step_in_flight_is_rejected(make_context, settings, db):
    gateway = HeldGateway(settings)
    orchestrator = WizardOrchestrator(make_context(gateway=gateway))

    async def submit_during_wallet_prompt():
        gateway.release = asyncio.Event()
        await orchestrator.activate(OWNER)
        command = SubmitEscrowCommand(form=escrow_form())
        first = asyncio.create_task(orchestrator.handle(command, OWNER))
        await asyncio.sleep(0)

        rejected = []
        for again in (orchestrator.handle(command, OWNER), orchestrator.handle(RetryCommand(), OWNER),
                      orchestrator.handle(CancelCommand(), OWNER), orchestrator.activate(OTHER)):
            try:
                await again
            except StepInProgressError as exc:
                rejected.append(exc)
        reloaded = await orchestrator.activate(OWNER)

        gateway.release.set()
        return rejected, reloaded, await first

    rejected, reloaded, view = run(submit_during_wallet_prompt())
    assert len(rejected) == 4
    assert all(exc.retryable for exc in rejected)
    assert reloaded.session.status is WizardStatus.DRAFT

    assert len(gateway.calls("createStudy")) == 1
    assert view.session.status is WizardStatus.ESCROW_DONE
    assert view.session.ids.escrow_id == ESCROW_ID
    assert db.query(Study).count() == 1
    assert not orchestrator.ctx.running
