"""
Admin Routes — Wizard session overview and audit trail access.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from study_wizard.database import get_db
from study_wizard.models.wizard_session import WizardSessionRecord
from study_wizard.schemas.schemas import AuditLogEntry
from study_wizard.services.audit_service import AuditService

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/audit/{session_id}", response_model=list[AuditLogEntry])
def get_audit_trail(session_id: str, db: Session = Depends(get_db)):
    """Get the full audit trail for a wizard session."""
    logs = AuditService.get_trail(db, session_id)
    if not logs:
        raise HTTPException(status_code=404, detail="No audit logs found for this session")
    return logs


@router.get("/audit/{session_id}/verify")
def verify_audit_chain(session_id: str, db: Session = Depends(get_db)):
    """Verify the integrity of the audit hash chain for a session."""
    return AuditService.verify_chain(db, session_id)


@router.get("/sessions")
def list_sessions(
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    db: Session = Depends(get_db),
):
    """List in-flight wizard sessions with optional status filter."""
    query = db.query(WizardSessionRecord).order_by(WizardSessionRecord.updated_at.desc())
    if status:
        query = query.filter(WizardSessionRecord.status == status)

    total = query.count()
    sessions = query.offset(offset).limit(limit).all()

    return {
        "total": total,
        "sessions": [
            {
                "id": s.id,
                "status": s.status,
                "owner": s.owner,
                "database_id": s.database_id,
                "milestone_index": s.milestone_index,
                "error": s.error,
                "updated_at": s.updated_at.isoformat() if s.updated_at else None,
            }
            for s in sessions
        ],
    }
