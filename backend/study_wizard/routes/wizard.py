"""
Wizard Routes — Resume, command dispatch and teardown of wizard sessions.

The session key arrives in the ``session-id`` header and the connected wallet in
``x-wallet-address``; every entry point runs the ownership guard first.
"""
from dataclasses import asdict
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.orm import Session

from study_wizard.config import get_settings
from study_wizard.database import get_db
from study_wizard.schemas.schemas import (
    BudgetCheckRequest, BudgetCheckResponse, CancelCommand, WizardSessionView, wizard_command_adapter,
)
from study_wizard.services.milestone_strategist import check_budget
from study_wizard.services.orchestrator import WizardOrchestrator

router = APIRouter(prefix="/api/wizard", tags=["Wizard"])


def get_orchestrator(
    request: Request,
    session_id: str = Header(..., alias="session-id"),
    db: Session = Depends(get_db),
) -> WizardOrchestrator:
    registry = request.app.state.contexts
    return WizardOrchestrator(registry.get(session_id, db), registry)


@router.get("/session", response_model=WizardSessionView)
async def resume_session(
    wallet_address: str = Header(..., alias="x-wallet-address"),
    orchestrator: WizardOrchestrator = Depends(get_orchestrator),
):
    """Enter the wizard: resume the caller's session or start a new one."""
    return await orchestrator.activate(wallet_address)


@router.post("/command", response_model=WizardSessionView)
async def run_command(
    payload: Dict[str, Any] = Body(...),
    wallet_address: str = Header(..., alias="x-wallet-address"),
    orchestrator: WizardOrchestrator = Depends(get_orchestrator),
):
    """Dispatch one tagged wizard command (``kind`` selects the variant)."""
    try:
        command = wizard_command_adapter.validate_python(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=exc.errors(include_url=False, include_context=False))
    return await orchestrator.handle(command, wallet_address)


@router.post("/session/cancel", response_model=WizardSessionView)
async def cancel_session(
    wallet_address: str = Header(..., alias="x-wallet-address"),
    orchestrator: WizardOrchestrator = Depends(get_orchestrator),
):
    """Discard the session. Anything already confirmed stays on-chain."""
    return await orchestrator.handle(CancelCommand(), wallet_address)


@router.post("/session/finish")
def finish_session(
    wallet_address: str = Header(..., alias="x-wallet-address"),
    orchestrator: WizardOrchestrator = Depends(get_orchestrator),
):
    """Leave a completed wizard and hand back the study id."""
    orchestrator.guard(wallet_address)
    return {"study_id": orchestrator.finish(), "message": "Study created successfully"}


@router.post("/milestones/check-budget", response_model=BudgetCheckResponse)
def check_milestone_budget(payload: BudgetCheckRequest):
    result = check_budget(payload.milestones, payload.total_funding, get_settings().BUDGET_POLICY)
    return BudgetCheckResponse(**asdict(result))
