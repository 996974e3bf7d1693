"""
Pytest configuration and fixtures.

Every test gets its own in-memory SQLite database and a scripted wallet/chain
gateway, so wizard runs are deterministic and never touch the network.
"""
import asyncio
import itertools
from typing import Dict, List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from study_wizard.config import Settings, WizardPolicy
from study_wizard.database import init_db, make_engine
from study_wizard.schemas.forms import (
    CriteriaStepForm, EscrowStepForm, MilestoneInput, MilestonesStepForm, MilestoneType, RegistryStepForm,
)
from study_wizard.schemas.wizard import Confirmation, UnsignedTx
from study_wizard.services.context import WizardContext
from study_wizard.services.errors import TransportError, UserDeclinedError
from study_wizard.services.indexer import StudyIndexer
from study_wizard.services.orchestrator import WizardOrchestrator
from study_wizard.services.session_store import SessionStore
from study_wizard.services.study_service import StudyService
from study_wizard.services.tx_builder import TxBuilder

OWNER = "0x" + "Ab" * 20
OTHER = "0x" + "cd" * 20
ESCROW_ID = 7
REGISTRY_ID = 11


@pytest.fixture
def db():
    engine = make_engine("sqlite:///:memory:")
    init_db(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ESCROW_CONTRACT_ADDRESS="0x" + "e" * 40,
        REGISTRY_CONTRACT_ADDRESS="0x" + "f" * 40,
    )


class FakeGateway:
    """Scripted wallet + chain.

    ``decline`` / ``revert`` / ``stall`` count down: each affects that many of
    the next signatures (or confirmations) before behaving normally again.
    """

    def __init__(self, settings: Settings):
        self.builder = TxBuilder(settings)
        self.sent: Dict[str, UnsignedTx] = {}
        self.signatures: List[UnsignedTx] = []
        self.decline = 0
        self.decline_at_item: Optional[int] = None
        self.revert = 0
        self.stall = 0
        self._hashes = itertools.count(1)
        self._blocks = itertools.count(100)

    async def build_transaction(self, request):
        return self.builder.build(request)

    async def sign_and_broadcast(self, tx: UnsignedTx) -> str:
        if self.decline_at_item is not None and tx.item_index == self.decline_at_item:
            self.decline_at_item = None
            raise UserDeclinedError("User rejected the request", step=tx.step.value)
        if self.decline:
            self.decline -= 1
            raise UserDeclinedError("User rejected the request", step=tx.step.value)
        tx_hash = "0x" + format(next(self._hashes), "064x")
        self.signatures.append(tx)
        self.sent[tx_hash] = tx
        return tx_hash

    async def wait_for_confirmation(self, tx_hash: str) -> Confirmation:
        if self.stall:
            self.stall -= 1
            await asyncio.sleep(3600)
        tx = self.sent[tx_hash]
        success = True
        if self.revert:
            self.revert -= 1
            success = False
        return Confirmation(
            tx_hash=tx_hash,
            chain_id=tx.chain_id,
            block_number=next(self._blocks),
            success=success,
            emitted_ids=emitted_ids(tx) if success else [],
        )

    def calls(self, function_name: str) -> List[UnsignedTx]:
        return [tx for tx in self.signatures if tx.function_name == function_name]


def emitted_ids(tx: UnsignedTx) -> List[int]:
    if tx.function_name == "createStudy":
        return [ESCROW_ID]
    if tx.function_name == "publishStudy":
        return [REGISTRY_ID]
    if tx.function_name == "addMilestone":
        return [100 + tx.item_index]
    if tx.function_name == "addMilestonesBatch":
        return [100 + i for i in range(len(tx.args[1]))]
    return []


class FlakyIndexer:
    """Fails the first ``failures`` calls with TransportError, then delegates."""

    def __init__(self, inner, failures: int = 0):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def index_step(self, *args):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise TransportError("indexer unavailable")
        return await self.inner.index_step(*args)


@pytest.fixture
def gateway(settings) -> FakeGateway:
    return FakeGateway(settings)


@pytest.fixture
def indexer(db) -> FlakyIndexer:
    return FlakyIndexer(StudyIndexer(db))


@pytest.fixture
def policy() -> WizardPolicy:
    return WizardPolicy(confirmation_timeout=0.05, indexer_max_attempts=2, indexer_backoff=0)


@pytest.fixture
def make_context(db, gateway, indexer, policy):
    def factory(key: str = "profile-1", **overrides) -> WizardContext:
        async def create_initial(owner: str) -> str:
            return StudyService.create_initial(db, owner).id

        fields = dict(
            key=key,
            store=SessionStore(db, key),
            gateway=gateway,
            indexer=indexer,
            create_initial=create_initial,
            policy=policy,
        )
        fields.update(overrides)
        return WizardContext(**fields).init()

    return factory


@pytest.fixture
def ctx(make_context) -> WizardContext:
    return make_context()


@pytest.fixture
def orchestrator(ctx) -> WizardOrchestrator:
    return WizardOrchestrator(ctx)


# ─── Step input ──────────────────────────────────────────────────────

def escrow_form(**overrides) -> EscrowStepForm:
    fields = dict(
        title="Sleep Quality Study 2026",
        description="Observational study of sleep quality across six weeks of wearable tracking.",
        region="EU",
        patient_percentage=7000,
        clinic_percentage=3000,
        total_funding=250,
        max_participants=5,
        payment_per_participant=50,
    )
    fields.update(overrides)
    return EscrowStepForm(**fields)


def registry_form(**overrides) -> RegistryStepForm:
    return RegistryStepForm(**overrides)


def criteria_form(**overrides) -> CriteriaStepForm:
    fields = dict(min_age=18, max_age=65)
    fields.update(overrides)
    return CriteriaStepForm(**fields)


def milestones_form(count: int, reward: float = 10) -> MilestonesStepForm:
    return MilestonesStepForm(milestones=[
        MilestoneInput(type=MilestoneType.CUSTOM, description=f"Milestone {i + 1}", reward_amount=reward)
        for i in range(count)
    ])


def run(coro):
    return asyncio.run(coro)


async def drive(orchestrator: WizardOrchestrator, through: str, actor: str = OWNER) -> None:
    """Start a session and submit steps up to and including ``through``."""
    from study_wizard.schemas.schemas import (
        SubmitCriteriaCommand, SubmitEscrowCommand, SubmitRegistryCommand,
    )

    await orchestrator.activate(actor)
    commands = [
        ("escrow", SubmitEscrowCommand(form=escrow_form())),
        ("registry", SubmitRegistryCommand(form=registry_form())),
        ("criteria", SubmitCriteriaCommand(form=criteria_form())),
    ]
    for name, command in commands:
        await orchestrator.handle(command, actor)
        if name == through:
            return
