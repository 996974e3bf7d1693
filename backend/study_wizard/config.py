"""
Application Configuration — Environment & Settings
Centralizes all config from .env with Pydantic Settings for validation.
"""
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings

# Resolve paths relative to backend/ directory
BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Core ---
    APP_NAME: str = "Study Creation Wizard API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False

    # --- Database ---
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'data' / 'study_wizard.db'}"

    # --- Logging ---
    LOG_DIR: str = str(BASE_DIR / "logs")
    LOG_LEVEL: str = "INFO"

    # --- HTTP ---
    CORS_ORIGINS: list[str] = ["*"]

    # --- Chain ---
    DEFAULT_CHAIN_ID: int = 11155420  # Optimism Sepolia
    ESCROW_CONTRACT_ADDRESS: str = ""
    REGISTRY_CONTRACT_ADDRESS: str = ""
    USDC_DECIMALS: int = 6

    # --- Wizard policy ---
    MILESTONE_BATCH_THRESHOLD: int = 6
    MAX_MILESTONES: int = 20
    BUDGET_POLICY: str = "block"  # block | warn

    # --- Timeouts & retries ---
    CONFIRMATION_TIMEOUT_SECONDS: float = 180.0
    CONFIRMATION_POLL_SECONDS: float = 2.0
    INDEXER_MAX_ATTEMPTS: int = 4
    INDEXER_BACKOFF_SECONDS: float = 0.5
    CONTEXT_IDLE_TTL_SECONDS: float = 1800.0

    # --- Remote collaborators (HTTP adapters) ---
    SIGNER_URL: str = "http://localhost:8545/signer"
    RPC_URL: str = "http://localhost:8545"
    INDEXER_URL: str = "http://localhost:8000"

    class Config:
        env_file = str(BASE_DIR / ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@dataclass(frozen=True)
class WizardPolicy:
    """Product decisions the wizard core reads instead of hard-coded constants."""

    batch_threshold: int = 6
    max_milestones: int = 20
    budget_policy: str = "block"
    confirmation_timeout: float = 180.0
    indexer_max_attempts: int = 4
    indexer_backoff: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> "WizardPolicy":
        return cls(
            batch_threshold=settings.MILESTONE_BATCH_THRESHOLD,
            max_milestones=settings.MAX_MILESTONES,
            budget_policy=settings.BUDGET_POLICY,
            confirmation_timeout=settings.CONFIRMATION_TIMEOUT_SECONDS,
            indexer_max_attempts=settings.INDEXER_MAX_ATTEMPTS,
            indexer_backoff=settings.INDEXER_BACKOFF_SECONDS,
        )


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
