"""
Audit Service — Manages the hash-chained trail of wizard events.
"""
from datetime import datetime
from typing import Optional, Dict

from sqlalchemy.orm import Session

from study_wizard.models.audit import AuditLog
from study_wizard.utils.hashing import generate_chain_hash


class AuditService:
    """Creates tamper-evident audit log entries with hash chaining."""

    @staticmethod
    def log(
        db: Session,
        session_id: str,
        action: str,
        payload: Optional[Dict] = None,
        actor: Optional[str] = None,
        metadata: Optional[Dict] = None,
    ) -> AuditLog:
        """Append one event to the session's chain; the stored payload is what ``verify_chain`` re-hashes."""
        last_entry = (
            db.query(AuditLog)
            .filter(AuditLog.session_id == session_id)
            .order_by(AuditLog.id.desc())
            .first()
        )
        previous_hash = last_entry.payload_hash if last_entry else ""

        entry = AuditLog(
            session_id=session_id,
            action=action,
            payload_hash=generate_chain_hash(payload or {}, previous_hash),
            previous_hash=previous_hash,
            actor=actor,
            log_metadata={**(metadata or {}), "payload": payload or {}},
            timestamp=datetime.utcnow(),
        )

        db.add(entry)
        db.commit()
        db.refresh(entry)

        return entry

    @staticmethod
    def get_trail(db: Session, session_id: str) -> list[AuditLog]:
        """Get the full audit trail for a session, in insertion order."""
        return (
            db.query(AuditLog)
            .filter(AuditLog.session_id == session_id)
            .order_by(AuditLog.id.asc())
            .all()
        )

    @staticmethod
    def verify_chain(db: Session, session_id: str) -> dict:
        """Verify the integrity of the audit chain for a session.

        Recomputes every chain hash from the stored payload, so an edited payload
        is detected as well as a broken link.

        Returns:
            dict with 'valid' (bool), 'total_entries', and 'broken_at' (if invalid).
        """
        entries = AuditService.get_trail(db, session_id)

        previous = ""
        for entry in entries:
            payload = (entry.log_metadata or {}).get("payload", {})
            if entry.previous_hash != previous or entry.payload_hash != generate_chain_hash(payload, previous):
                return {
                    "valid": False,
                    "total_entries": len(entries),
                    "broken_at": entry.id,
                    "message": f"Chain broken at entry {entry.id} ({entry.action})",
                }
            previous = entry.payload_hash

        return {"valid": True, "total_entries": len(entries), "broken_at": None}
