"""
Study Creation Wizard — FastAPI Application Entry Point

Aggregates all routers, configures logging and middleware, owns the per-session
wizard contexts, and initializes the database on startup.
"""
import logging
import os
import time
from datetime import datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

from study_wizard.config import WizardPolicy, get_settings
from study_wizard.database import SessionLocal, init_db
from study_wizard.routes import admin_router, studies_router, wizard_router
from study_wizard.schemas.schemas import HealthResponse
from study_wizard.services.context import ContextRegistry, WizardContext
from study_wizard.services.errors import (
    BudgetExceededError, InvalidInputError, OwnershipMismatchError, PreconditionViolation,
    StepMismatchError, TransactionRevertedError, TransportError, UserDeclinedError, WizardError,
)
from study_wizard.services.http_gateway import HttpTransactionGateway
from study_wizard.services.indexer import StudyIndexer
from study_wizard.services.session_store import SessionStore
from study_wizard.services.study_service import StudyService

settings = get_settings()
logger = logging.getLogger("study_wizard")

# ─── Application Instance ───────────────────────────────────────────
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=(
        "Resumable, multi-step creation of clinical studies on-chain: escrow funding, "
        "registry publication, eligibility criteria and milestone rewards, each "
        "checkpointed so an interrupted wizard resumes without re-signing."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
)


def make_context(key: str, db: Session) -> WizardContext:
    """Wire one wizard session to the shared gateway and db-bound collaborators."""

    async def create_initial(owner: str) -> str:
        return StudyService.create_initial(db, owner).id

    return WizardContext(
        key=key,
        store=SessionStore(db, key),
        gateway=app.state.gateway,
        indexer=StudyIndexer(db),
        create_initial=create_initial,
        policy=WizardPolicy.from_settings(settings),
    )


app.state.gateway = HttpTransactionGateway(settings)
app.state.contexts = ContextRegistry(make_context, idle_ttl=settings.CONTEXT_IDLE_TTL_SECONDS)


# ─── Startup ─────────────────────────────────────────────────────────
BOOT_TIME = time.time()


def configure_logging() -> None:
    os.makedirs(settings.LOG_DIR, exist_ok=True)
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(os.path.join(settings.LOG_DIR, "server.log")),
        ],
    )


@app.on_event("startup")
def on_startup():
    """Initialize logging and database tables, then log boot info."""
    configure_logging()
    init_db()

    boot_msg = (
        f"\n{'='*60}\n"
        f"  {settings.APP_NAME} v{settings.APP_VERSION}\n"
        f"  TIME: {datetime.now().isoformat()}\n"
        f"  CHAIN: {settings.DEFAULT_CHAIN_ID}\n"
        f"  ESCROW: {settings.ESCROW_CONTRACT_ADDRESS or '[!] Not deployed'}\n"
        f"  REGISTRY: {settings.REGISTRY_CONTRACT_ADDRESS or '[!] Not deployed'}\n"
        f"  DATABASE: {settings.DATABASE_URL}\n"
        f"  DEBUG: {settings.DEBUG}\n"
        f"{'='*60}"
    )
    logger.info(boot_msg)


@app.on_event("shutdown")
async def on_shutdown():
    gateway = app.state.gateway
    if isinstance(gateway, HttpTransactionGateway):
        await gateway.close()


# ─── Middleware ──────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log every API request with timing."""
    start = time.time()
    response = await call_next(request)
    duration = round((time.time() - start) * 1000, 1)

    if request.url.path.startswith("/api"):
        logger.info("-> %s %s -> %s (%sms)", request.method, request.url.path, response.status_code, duration)

    return response


# ─── Error Mapping ───────────────────────────────────────────────────
def status_for(exc: WizardError) -> int:
    if isinstance(exc, (BudgetExceededError, InvalidInputError)):
        return 400
    if isinstance(exc, OwnershipMismatchError):
        return 403
    if isinstance(exc, (StepMismatchError, PreconditionViolation, UserDeclinedError)):
        return 409
    if isinstance(exc, (TransportError, TransactionRevertedError)):
        return 502
    return 500


@app.exception_handler(WizardError)
async def wizard_error_handler(request: Request, exc: WizardError):
    return JSONResponse(
        status_code=status_for(exc),
        content={
            "detail": exc.message,
            "error_code": exc.code,
            "step": exc.step,
            "retryable": exc.retryable,
            "tx_hash": getattr(exc, "tx_hash", None),
        },
    )


# ─── API Routers ─────────────────────────────────────────────────────
app.include_router(studies_router)
app.include_router(wizard_router)
app.include_router(admin_router)


@app.get("/health", tags=["Health"], response_model=HealthResponse)
def deep_health():
    """Health check including database connectivity."""
    db_ok = False
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except Exception as exc:
        logger.warning("Health check database probe failed: %s", exc)
    finally:
        db.close()

    return HealthResponse(
        status="healthy" if db_ok else "degraded",
        service=settings.APP_NAME,
        version=settings.APP_VERSION,
        database="connected" if db_ok else "disconnected",
        uptime_seconds=round(time.time() - BOOT_TIME, 1),
    )
