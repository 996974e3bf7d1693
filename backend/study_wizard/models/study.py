"""
Study Model — Off-chain study record and the step indexing ledger.
"""
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, Boolean, Float, ForeignKey, UniqueConstraint,
)

from study_wizard.database import Base


class Study(Base):
    __tablename__ = "studies"

    id = Column(String(36), primary_key=True, index=True)
    researcher_address = Column(String(64), nullable=False, index=True)

    title = Column(String(200), default="Untitled Study (Draft)")
    description = Column(String(2000), default="Study in creation...")
    status = Column(String(16), default="created")  # created | active

    total_funding = Column(Float, default=0.0)
    max_participants = Column(Integer, default=0)
    sponsor = Column(String(64))

    chain_id = Column(Integer)
    escrow_id = Column(String(78), index=True)
    registry_id = Column(String(78), index=True)

    escrow_tx_hash = Column(String(66))
    escrow_block_number = Column(Integer)
    registry_tx_hash = Column(String(66))
    registry_block_number = Column(Integer)
    criteria_tx_hash = Column(String(66))
    milestones_tx_hash = Column(String(66))
    milestones_block_number = Column(Integer)
    milestone_ids = Column(JSON, default=list)

    wizard_steps_completed = Column(JSON, default=list)
    wizard_completed = Column(Boolean, default=False)
    wizard_completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class StepIndexEntry(Base):
    """One row per (study, step, tx hash); a repeated indexing call finds it and returns."""

    __tablename__ = "step_index_entries"
    __table_args__ = (
        UniqueConstraint("database_id", "step", "tx_hash", name="uq_step_index_key"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True, index=True)
    database_id = Column(String(36), ForeignKey("studies.id"), nullable=False, index=True)

    step = Column(String(16), nullable=False)  # escrow | registry | criteria | milestones
    tx_hash = Column(String(66), nullable=False)
    chain_id = Column(Integer, nullable=False)
    block_number = Column(Integer)

    derived_ids = Column(JSON, default=dict)
    payload = Column(JSON, default=dict)

    indexed_at = Column(DateTime, default=datetime.utcnow)
