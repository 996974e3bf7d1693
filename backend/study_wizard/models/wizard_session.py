"""
Wizard Session Model — Persisted state machine record for one study-creation run.
Maps to the 'wizard_sessions' table, keyed by the browser profile's session key.
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, JSON, Integer, Text

from study_wizard.database import Base


class WizardSessionRecord(Base):
    __tablename__ = "wizard_sessions"

    id = Column(String(64), primary_key=True, index=True)
    status = Column(String(24), default="idle", nullable=False)
    # Statuses: idle → draft → escrow → escrow_done → registry → registry_done
    #           → criteria → criteria_done → milestones → complete

    owner = Column(String(64))              # lower-cased wallet address

    database_id = Column(String(36))        # Study.id, assigned before any TX
    escrow_id = Column(String(78))          # uint256 as decimal string
    registry_id = Column(String(78))

    escrow_tx_hash = Column(String(66))
    registry_tx_hash = Column(String(66))
    criteria_tx_hash = Column(String(66))
    milestone_tx_hashes = Column(JSON, default=list)
    milestone_index = Column(Integer, default=0)

    pending_tx = Column(JSON, nullable=True)  # {step, hash, chain_id, block_number}

    form_data = Column(JSON, default=dict)  # step1..step4
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
