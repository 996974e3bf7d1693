"""
Indexer — records what a confirmed wizard transaction produced.

Keyed by (database_id, step, tx_hash): a repeated call for the same key returns
the ids recorded the first time and writes nothing.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from study_wizard.models.study import Study, StepIndexEntry
from study_wizard.schemas.schemas import IndexStepResponse
from study_wizard.schemas.wizard import WizardStep
from study_wizard.services.errors import PreconditionViolation, TransportError
from study_wizard.utils.hashing import short_hash
from study_wizard.utils.validators import validate_tx_hash

logger = logging.getLogger(__name__)

REQUIRED_STEPS = [step.value for step in WizardStep]


class StudyNotFoundError(LookupError):
    pass


class Indexer(Protocol):
    async def index_step(self, database_id: str, step: WizardStep, tx_hash: str, chain_id: int,
                         block_number: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Return derived ids ({} for steps that mint none)."""
        ...


def derive_ids(step: WizardStep, emitted_ids: List[int]) -> Dict[str, Any]:
    """Escrow and registry mint one id (first event topic); milestones mint one per item."""
    if step is WizardStep.ESCROW:
        if not emitted_ids:
            raise ValueError("Escrow transaction emitted no escrow id")
        return {"escrow_id": int(emitted_ids[0])}
    if step is WizardStep.REGISTRY:
        if not emitted_ids:
            raise ValueError("Registry transaction emitted no registry id")
        return {"registry_id": int(emitted_ids[0])}
    if step is WizardStep.MILESTONES:
        return {"milestone_ids": [int(i) for i in emitted_ids]}
    return {}


class StudyIndexer:
    """Database-backed Indexer used by the API and by in-process wizards."""

    def __init__(self, db: Session):
        self.db = db

    def _validate(self, step: WizardStep, tx_hash: str, block_number: int) -> None:
        if not validate_tx_hash(tx_hash):
            raise ValueError("Invalid transaction hash")
        if not block_number or block_number <= 0:
            raise ValueError("Invalid block number")
        if step not in WizardStep:
            raise ValueError(f"Invalid step. Must be one of: {', '.join(REQUIRED_STEPS)}")

    def index(self, database_id: str, step: WizardStep, tx_hash: str, chain_id: int,
              block_number: int, payload: Optional[Dict[str, Any]] = None) -> IndexStepResponse:
        """Index a confirmed step transaction; see module docstring for idempotency."""
        payload = payload or {}
        self._validate(step, tx_hash, block_number)

        study = self.db.query(Study).filter(Study.id == database_id).first()
        if study is None:
            raise StudyNotFoundError(f"Study {database_id} not found. Create the initial study first.")

        existing = self._find_entry(database_id, step, tx_hash)
        if existing is not None:
            logger.info("Index %s/%s %s already recorded", database_id, step.value, short_hash(tx_hash))
            return self._response(study, step, existing.derived_ids or {}, duplicate=True)

        derived = derive_ids(step, payload.get("emitted_ids") or [])
        self._apply(study, step, tx_hash, chain_id, block_number, derived, payload)

        entry = StepIndexEntry(
            database_id=database_id,
            step=step.value,
            tx_hash=tx_hash,
            chain_id=chain_id,
            block_number=block_number,
            derived_ids=derived,
            payload=payload,
        )
        self.db.add(entry)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with an identical request; the winner's row is authoritative
            self.db.rollback()
            existing = self._find_entry(database_id, step, tx_hash)
            study = self.db.query(Study).filter(Study.id == database_id).first()
            return self._response(study, step, existing.derived_ids or {}, duplicate=True)

        self.db.refresh(study)
        logger.info("Indexed %s for study %s: %s", step.value, database_id, derived or "no new ids")
        return self._response(study, step, derived)

    async def index_step(self, database_id: str, step: WizardStep, tx_hash: str, chain_id: int,
                         block_number: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.index(database_id, step, tx_hash, chain_id, block_number, payload).derived_ids

    # ──────────────── Internals ────────────────

    def _find_entry(self, database_id: str, step: WizardStep, tx_hash: str) -> Optional[StepIndexEntry]:
        return (
            self.db.query(StepIndexEntry)
            .filter(
                StepIndexEntry.database_id == database_id,
                StepIndexEntry.step == step.value,
                StepIndexEntry.tx_hash == tx_hash,
            )
            .first()
        )

    def _apply(self, study: Study, step: WizardStep, tx_hash: str, chain_id: int, block_number: int,
               derived: Dict[str, Any], payload: Dict[str, Any]) -> None:
        study.chain_id = chain_id
        if step is WizardStep.ESCROW:
            study.escrow_id = str(derived["escrow_id"])
            study.escrow_tx_hash = tx_hash
            study.escrow_block_number = block_number
            if payload.get("title"):
                study.title = payload["title"]
            if payload.get("description"):
                study.description = payload["description"]
            if payload.get("total_funding"):
                study.total_funding = float(payload["total_funding"])
            if payload.get("max_participants"):
                study.max_participants = int(payload["max_participants"])
            if payload.get("sponsor"):
                study.sponsor = payload["sponsor"]
        elif step is WizardStep.REGISTRY:
            study.registry_id = str(derived["registry_id"])
            study.registry_tx_hash = tx_hash
            study.registry_block_number = block_number
        elif step is WizardStep.CRITERIA:
            study.criteria_tx_hash = tx_hash
        else:
            study.milestones_tx_hash = tx_hash
            study.milestones_block_number = block_number
            study.milestone_ids = [str(i) for i in derived.get("milestone_ids", [])]

        completed = list(study.wizard_steps_completed or [])
        if step.value not in completed:
            completed.append(step.value)
        study.wizard_steps_completed = completed
        if all(s in completed for s in REQUIRED_STEPS) and not study.wizard_completed:
            study.wizard_completed = True
            study.wizard_completed_at = datetime.utcnow()
            study.status = "active"

    def _response(self, study: Study, step: WizardStep, derived: Dict[str, Any],
                  duplicate: bool = False) -> IndexStepResponse:
        complete = bool(study.wizard_completed)
        return IndexStepResponse(
            study_id=study.id,
            step=step,
            derived_ids=derived,
            steps_completed=list(study.wizard_steps_completed or []),
            wizard_complete=complete,
            duplicate=duplicate,
            message=(
                "Wizard completed! All steps indexed successfully."
                if complete else f"Step '{step.value}' indexed successfully."
            ),
        )


async def index_with_retry(indexer: Indexer, database_id: str, step: WizardStep, tx_hash: str,
                           chain_id: int, block_number: int, payload: Dict[str, Any],
                           max_attempts: int = 4, backoff: float = 0.5) -> Dict[str, Any]:
    """Call the indexer, retrying TransportError with exponential backoff.

    Safe because indexing is idempotent per (database_id, step, tx_hash).
    Anything other than TransportError is raised on the first attempt.
    """
    attempt = 1
    while True:
        try:
            return await indexer.index_step(database_id, step, tx_hash, chain_id, block_number, payload)
        except TransportError as exc:
            if attempt >= max_attempts:
                raise TransportError(
                    f"Indexing {step.value} failed after {attempt} attempts: {exc.message}",
                    step=step.value, tx_hash=tx_hash,
                ) from exc
            delay = backoff * (2 ** (attempt - 1))
            logger.warning("Indexer attempt %d/%d for %s failed (%s); retrying in %.2fs",
                           attempt, max_attempts, short_hash(tx_hash), exc.message, delay)
            await asyncio.sleep(delay)
            attempt += 1
        except (ValueError, StudyNotFoundError) as exc:
            raise PreconditionViolation(f"Indexer rejected {step.value}: {exc}", step=step.value) from exc
