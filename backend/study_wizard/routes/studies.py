"""
Study Routes — Off-chain study record, transaction building and step indexing.
Handles: initial creation, study lookup, build-tx, index-step.
"""
from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import ValidationError
from sqlalchemy.orm import Session

from study_wizard.config import get_settings
from study_wizard.database import get_db
from study_wizard.schemas.schemas import (
    BuildTxRequest, CreateInitialRequest, CreateInitialResponse,
    IndexStepRequest, IndexStepResponse, StudyResponse,
)
from study_wizard.schemas.wizard import UnsignedTx
from study_wizard.services.indexer import StudyIndexer, StudyNotFoundError
from study_wizard.services.study_service import StudyService
from study_wizard.services.tx_builder import TxBuilder

router = APIRouter(prefix="/api/studies", tags=["Studies"])


@router.post("/create-initial", response_model=CreateInitialResponse)
def create_initial_study(
    payload: CreateInitialRequest,
    wallet_address: str = Header(..., alias="x-wallet-address"),
    db: Session = Depends(get_db),
):
    """Mint a draft study for the connected wallet."""
    study = StudyService.create_initial(db, wallet_address, payload.title, payload.description)
    return CreateInitialResponse(study_id=study.id)


@router.get("/{study_id}", response_model=StudyResponse)
def get_study(study_id: str, db: Session = Depends(get_db)):
    study = StudyService.get(db, study_id)
    if not study:
        raise HTTPException(status_code=404, detail="Study not found")
    return study


@router.post("/wizard/build-tx", response_model=UnsignedTx)
def build_transaction(payload: BuildTxRequest):
    """Build the unsigned contract call for one wizard step (or one milestone)."""
    try:
        return TxBuilder(get_settings()).build(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=exc.errors(include_url=False, include_context=False))


@router.post("/wizard/index-step", response_model=IndexStepResponse)
def index_step(payload: IndexStepRequest, db: Session = Depends(get_db)):
    """Record a confirmed step transaction against its study. Idempotent per tx hash."""
    try:
        return StudyIndexer(db).index(
            payload.database_id, payload.step, payload.tx_hash,
            payload.chain_id, payload.block_number, payload.payload,
        )
    except StudyNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
