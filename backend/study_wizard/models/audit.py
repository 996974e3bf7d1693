"""
Audit Log Model — Immutable, tamper-evident audit trail.
Every wizard event is SHA-256 hashed and timestamped.
"""
from datetime import datetime
from sqlalchemy import Column, String, Integer, DateTime, JSON

from study_wizard.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    # Not a foreign key: the trail outlives the wizard session it describes
    session_id = Column(String(64), nullable=False, index=True)

    action = Column(String(50), nullable=False)
    # Actions: SESSION_START, STEP_BROADCAST, STEP_CHECKPOINT, MILESTONE_PROGRESS,
    #          SESSION_RESET, SESSION_CANCELLED, SESSION_COMPLETED

    payload_hash = Column(String(64))       # SHA-256 chain hash of the action payload
    previous_hash = Column(String(64))      # Hash chain for tamper detection

    actor = Column(String(64))              # wallet address that triggered the event

    log_metadata = Column(JSON, default=dict)
    timestamp = Column(DateTime, default=datetime.utcnow)
