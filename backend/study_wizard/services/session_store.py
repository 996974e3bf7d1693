"""
Session Store — the persisted, single-writer record of wizard progress.

The mutation methods below are the only legal way to move ``status``. Each one
checks the status it starts from and raises ``InvalidTransitionError`` instead of
correcting anything. Every read re-checks that status agrees with the ids and
hashes on record; a disagreement raises ``CorruptSessionError``.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from study_wizard.models.wizard_session import WizardSessionRecord
from study_wizard.schemas.wizard import (
    PendingTx, SessionIds, SessionTxHashes, WizardSession, WizardStatus, WizardStep,
)
from study_wizard.services.audit_service import AuditService
from study_wizard.services.errors import CorruptSessionError, InvalidTransitionError
from study_wizard.utils.hashing import short_hash
from study_wizard.utils.validators import normalize_owner

logger = logging.getLogger(__name__)

S = WizardStatus


def current_step(status: WizardStatus) -> Optional[WizardStep]:
    """Map a persisted status to the step that should be active.

    "Done" statuses map to the *next* step. ``complete`` has no active step.
    """
    if status in (S.IDLE, S.DRAFT, S.ESCROW):
        return WizardStep.ESCROW
    if status in (S.ESCROW_DONE, S.REGISTRY):
        return WizardStep.REGISTRY
    if status in (S.REGISTRY_DONE, S.CRITERIA):
        return WizardStep.CRITERIA
    if status in (S.CRITERIA_DONE, S.MILESTONES):
        return WizardStep.MILESTONES
    return None


def check_invariants(session: WizardSession) -> None:
    """Raise CorruptSessionError if status and recorded ids/hashes disagree."""
    status = session.status
    ids, hashes = session.ids, session.tx_hashes
    problems: List[str] = []

    def agree(name: str, threshold: WizardStatus, present: bool):
        if status.at_least(threshold) != present:
            state = "missing" if not present else "present too early"
            problems.append(f"{name} {state} at status '{status.value}'")

    agree("databaseId/owner", S.DRAFT, bool(ids.database_id and session.owner))
    agree("escrowId", S.ESCROW_DONE, ids.escrow_id is not None)
    agree("escrow hash", S.ESCROW_DONE, bool(hashes.escrow))
    agree("registryId", S.REGISTRY_DONE, ids.registry_id is not None)
    agree("registry hash", S.REGISTRY_DONE, bool(hashes.registry))
    agree("criteria hash", S.CRITERIA_DONE, bool(hashes.criteria))

    if status == S.COMPLETE and not hashes.milestones:
        problems.append("milestone hashes missing at status 'complete'")
    if status.rank < S.MILESTONES.rank and hashes.milestones:
        problems.append(f"milestone hashes present at status '{status.value}'")
    if session.milestone_index != len(hashes.milestones):
        problems.append("milestone index does not match recorded hashes")

    pending = session.pending_tx
    if pending is not None and status != pending.step.in_progress_status:
        problems.append(f"pending {pending.step.value} transaction at status '{status.value}'")

    if problems:
        raise CorruptSessionError("Corrupt wizard session: " + "; ".join(problems))


def _to_int(value: Optional[str]) -> Optional[int]:
    return int(value) if value not in (None, "") else None


class SessionStore:
    """Durable wizard state for one session key, backed by SQLAlchemy."""

    def __init__(self, db: Session, key: str):
        self.db = db
        self.key = key

    # ──────────────── Reads ────────────────

    def _record(self) -> Optional[WizardSessionRecord]:
        return self.db.query(WizardSessionRecord).filter(WizardSessionRecord.id == self.key).first()

    def _snapshot(self, record: Optional[WizardSessionRecord]) -> WizardSession:
        if record is None:
            return WizardSession(key=self.key)
        return WizardSession(
            key=record.id,
            status=WizardStatus(record.status),
            owner=record.owner,
            ids=SessionIds(
                database_id=record.database_id,
                escrow_id=_to_int(record.escrow_id),
                registry_id=_to_int(record.registry_id),
            ),
            tx_hashes=SessionTxHashes(
                escrow=record.escrow_tx_hash,
                registry=record.registry_tx_hash,
                criteria=record.criteria_tx_hash,
                milestones=list(record.milestone_tx_hashes or []),
            ),
            form_data=dict(record.form_data or {}),
            milestone_index=record.milestone_index or 0,
            pending_tx=PendingTx(**record.pending_tx) if record.pending_tx else None,
            error=record.error,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )

    def read(self) -> WizardSession:
        session = self._snapshot(self._record())
        check_invariants(session)
        return session

    def get_current_step(self) -> Optional[WizardStep]:
        return current_step(self.read().status)

    def is_creating(self) -> bool:
        return self.read().status not in (S.IDLE, S.COMPLETE)

    can_resume = is_creating

    # ──────────────── Helpers ────────────────

    def _require(self, allowed: Iterable[WizardStatus], operation: str) -> WizardSessionRecord:
        allowed = tuple(allowed)
        record = self._record()
        status = WizardStatus(record.status) if record else S.IDLE
        if record is None or status not in allowed:
            raise InvalidTransitionError(
                f"{operation} is not allowed in status '{status.value}' "
                f"(expected one of: {', '.join(s.value for s in allowed)})"
            )
        return record

    def _commit(self, record: WizardSessionRecord, action: Optional[str] = None,
                payload: Optional[Dict[str, Any]] = None) -> WizardSession:
        self.db.commit()
        self.db.refresh(record)
        if action:
            AuditService.log(self.db, self.key, action, payload=payload, actor=record.owner)
        return self._snapshot(record)

    # ──────────────── Initialization ────────────────

    def start_creation(self, database_id: str, owner: str,
                       initial_form_data: Optional[Dict[str, Any]] = None) -> WizardSession:
        record = self._record()
        if record is not None and record.status != S.IDLE.value:
            raise InvalidTransitionError(f"start_creation is not allowed in status '{record.status}'")
        if not database_id or not normalize_owner(owner):
            raise InvalidTransitionError("start_creation requires a databaseId and an owner")

        if record is None:
            record = WizardSessionRecord(id=self.key)
            self.db.add(record)
        record.status = S.DRAFT.value
        record.owner = normalize_owner(owner)
        record.database_id = database_id
        record.form_data = dict(initial_form_data or {})
        record.milestone_tx_hashes = []
        record.milestone_index = 0
        record.pending_tx = None
        record.error = None

        logger.info("Wizard session %s started for %s (study %s)", self.key, record.owner, database_id)
        return self._commit(record, "SESSION_START", {"database_id": database_id, "owner": record.owner})

    # ──────────────── Step progress ────────────────

    def persisted_owner(self) -> tuple[WizardStatus, Optional[str]]:
        """Raw status and owner, without the invariant check (used by the ownership guard)."""
        record = self._record()
        if record is None:
            return S.IDLE, None
        return WizardStatus(record.status), record.owner

    def save_form_data(self, step: WizardStep, data: Dict[str, Any]) -> WizardSession:
        record = self._require((step.ready_status, step.in_progress_status), f"save_form_data({step.value})")
        if record.pending_tx:
            raise InvalidTransitionError(
                f"{step.value} input is locked: transaction {short_hash(record.pending_tx['tx_hash'])} already broadcast"
            )
        if step is WizardStep.MILESTONES and record.milestone_index:
            raise InvalidTransitionError("Milestones are locked once sequential submission has started")
        form_data = dict(record.form_data or {})
        form_data[step.form_key] = data
        record.form_data = form_data
        return self._commit(record)

    def record_broadcast(self, step: WizardStep, tx_hash: str,
                         item_index: Optional[int] = None) -> WizardSession:
        """Remember a broadcast hash; the step is now in progress and must never be re-signed."""
        record = self._require((step.ready_status, step.in_progress_status), f"record_broadcast({step.value})")
        pending = record.pending_tx
        if pending:
            if pending["tx_hash"] == tx_hash:
                return self._snapshot(record)
            raise InvalidTransitionError(
                f"A {pending['step']} transaction ({short_hash(pending['tx_hash'])}) is already pending"
            )
        record.status = step.in_progress_status.value
        record.error = None
        record.pending_tx = PendingTx(step=step, tx_hash=tx_hash, item_index=item_index).model_dump(mode="json")
        logger.info("Session %s: %s transaction broadcast %s", self.key, step.value, short_hash(tx_hash))
        return self._commit(record, "STEP_BROADCAST", {"step": step.value, "tx_hash": tx_hash, "item": item_index})

    def record_confirmation(self, step: WizardStep, tx_hash: str, chain_id: int, block_number: int,
                            emitted_ids: Optional[List[int]] = None) -> WizardSession:
        record = self._require((step.in_progress_status,), f"record_confirmation({step.value})")
        pending = record.pending_tx
        if not pending or pending["tx_hash"] != tx_hash:
            raise InvalidTransitionError(f"No pending {step.value} transaction {short_hash(tx_hash)}")
        record.pending_tx = {
            **pending,
            "chain_id": chain_id,
            "block_number": block_number,
            "emitted_ids": list(emitted_ids or []),
        }
        return self._commit(record)

    def discard_pending(self, step: WizardStep, tx_hash: str) -> WizardSession:
        """Forget a broadcast transaction that reverted; the step may be signed again."""
        record = self._require((step.in_progress_status,), f"discard_pending({step.value})")
        pending = record.pending_tx
        if not pending or pending["tx_hash"] != tx_hash:
            raise InvalidTransitionError(f"No pending {step.value} transaction {short_hash(tx_hash)}")
        if pending.get("block_number") is None:
            raise InvalidTransitionError("Only a mined (reverted) transaction can be discarded")
        record.pending_tx = None
        logger.warning("Session %s: discarded reverted %s transaction %s", self.key, step.value, short_hash(tx_hash))
        return self._commit(record)

    def record_milestone_progress(self, tx_hash: str) -> WizardSession:
        """Append one confirmed sequential milestone hash and advance the index, in one write."""
        record = self._require((S.MILESTONES,), "record_milestone_progress")
        hashes = list(record.milestone_tx_hashes or [])
        if tx_hash in hashes:
            raise InvalidTransitionError(f"Milestone transaction {short_hash(tx_hash)} already recorded")
        pending = record.pending_tx
        if pending and pending["tx_hash"] != tx_hash:
            raise InvalidTransitionError(f"Pending milestone transaction is {short_hash(pending['tx_hash'])}")
        hashes.append(tx_hash)
        record.milestone_tx_hashes = hashes
        record.milestone_index = len(hashes)
        record.pending_tx = None
        return self._commit(record, "MILESTONE_PROGRESS", {"tx_hash": tx_hash, "index": len(hashes)})

    # ──────────────── Checkpoints ────────────────

    def complete_escrow_tx(self, tx_hash: str, escrow_id: int) -> WizardSession:
        record = self._require((S.DRAFT, S.ESCROW), "complete_escrow_tx")
        record.escrow_id = str(escrow_id)
        record.escrow_tx_hash = tx_hash
        return self._checkpoint(record, WizardStep.ESCROW, tx_hash, escrow_id=escrow_id)

    def complete_registry_tx(self, tx_hash: str, registry_id: int) -> WizardSession:
        record = self._require((S.ESCROW_DONE, S.REGISTRY), "complete_registry_tx")
        record.registry_id = str(registry_id)
        record.registry_tx_hash = tx_hash
        return self._checkpoint(record, WizardStep.REGISTRY, tx_hash, registry_id=registry_id)

    def complete_criteria_tx(self, tx_hash: str) -> WizardSession:
        record = self._require((S.REGISTRY_DONE, S.CRITERIA), "complete_criteria_tx")
        record.criteria_tx_hash = tx_hash
        return self._checkpoint(record, WizardStep.CRITERIA, tx_hash)

    def complete_milestones_tx(self, tx_hashes: List[str]) -> WizardSession:
        record = self._require((S.CRITERIA_DONE, S.MILESTONES), "complete_milestones_tx")
        if not tx_hashes:
            raise InvalidTransitionError("complete_milestones_tx requires at least one hash")
        record.milestone_tx_hashes = list(tx_hashes)
        record.milestone_index = len(tx_hashes)
        return self._checkpoint(record, WizardStep.MILESTONES, tx_hashes[-1], count=len(tx_hashes))

    def _checkpoint(self, record: WizardSessionRecord, step: WizardStep, tx_hash: str, **extra) -> WizardSession:
        record.status = step.done_status.value
        record.pending_tx = None
        record.error = None
        logger.info("Session %s: checkpoint %s -> %s (%s)", self.key, step.value, record.status, short_hash(tx_hash))
        payload = {"step": step.value, "tx_hash": tx_hash, **extra}
        snapshot = self._commit(record, "STEP_CHECKPOINT", payload)
        if snapshot.status is S.COMPLETE:
            AuditService.log(self.db, self.key, "SESSION_COMPLETED", payload={"database_id": record.database_id},
                             actor=record.owner)
        return snapshot

    # ──────────────── Errors ────────────────

    def set_error(self, message: str) -> WizardSession:
        """Record a non-fatal error; status is left alone so the step can be retried."""
        record = self._record()
        if record is None:
            record = WizardSessionRecord(id=self.key, status=S.IDLE.value, form_data={}, milestone_tx_hashes=[])
            self.db.add(record)
        record.error = message
        return self._commit(record)

    def clear_error(self) -> WizardSession:
        record = self._record()
        if record is None:
            return WizardSession(key=self.key)
        record.error = None
        return self._commit(record)

    # ──────────────── Teardown ────────────────

    def cancel_creation(self, reason: str = "cancelled") -> WizardSession:
        """Discard the whole session. Confirmed transactions stay on-chain."""
        record = self._record()
        if record is not None:
            owner, status = record.owner, record.status
            self.db.delete(record)
            self.db.commit()
            action = "SESSION_CANCELLED" if reason == "cancelled" else "SESSION_RESET"
            AuditService.log(self.db, self.key, action, payload={"reason": reason, "status": status}, actor=owner)
            logger.info("Session %s cleared from status '%s' (%s)", self.key, status, reason)
        return WizardSession(key=self.key)

    def reset(self, reason: str = "reset") -> WizardSession:
        return self.cancel_creation(reason=reason)
