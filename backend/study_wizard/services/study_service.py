"""
Study Service — the off-chain study record behind a wizard session.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy.orm import Session

from study_wizard.models.study import Study
from study_wizard.services.errors import OwnershipMismatchError
from study_wizard.utils.validators import normalize_owner

logger = logging.getLogger(__name__)


class StudyService:

    @staticmethod
    def create_initial(db: Session, researcher_address: str, title: str = "", description: str = "") -> Study:
        """Mint a draft study; its id becomes the wizard session's databaseId."""
        owner = normalize_owner(researcher_address)
        if not owner:
            raise OwnershipMismatchError("A connected wallet is required to create a study")

        study = Study(
            id=str(uuid.uuid4()),
            researcher_address=owner,
            title=title or "Untitled Study (Draft)",
            description=description or "Study in creation...",
            status="created",
            milestone_ids=[],
            wizard_steps_completed=[],
        )
        db.add(study)
        db.commit()
        db.refresh(study)
        logger.info("Initial study %s created for %s", study.id, owner)
        return study

    @staticmethod
    def get(db: Session, study_id: str) -> Optional[Study]:
        return db.query(Study).filter(Study.id == study_id).first()
