"""
Wizard Errors — Failure taxonomy for the study-creation wizard.

Retryable errors are recovered locally on the active step; the rest escalate to
a full session reset because the persisted state can no longer be trusted.
"""
from typing import Optional


class WizardError(Exception):
    """Base class for every wizard failure."""

    retryable: bool = False
    code: str = "WIZARD_ERROR"

    def __init__(self, message: str, *, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step


class UserDeclinedError(WizardError):
    """The wallet owner refused to sign, or closed the prompt."""

    retryable = True
    code = "USER_DECLINED"


class TransportError(WizardError):
    """Broadcast, confirmation or indexing could not reach its counterpart.

    ``tx_hash`` is set when a transaction was already broadcast; a retry must
    reuse it instead of signing again.
    """

    retryable = True
    code = "TRANSPORT_FAILURE"

    def __init__(self, message: str, *, step: Optional[str] = None, tx_hash: Optional[str] = None):
        super().__init__(message, step=step)
        self.tx_hash = tx_hash


class ConfirmationTimeoutError(TransportError):
    code = "CONFIRMATION_TIMEOUT"


class TransactionRevertedError(WizardError):
    """The transaction was mined but failed; nothing was checkpointed."""

    retryable = True
    code = "TX_REVERTED"

    def __init__(self, message: str, *, step: Optional[str] = None, tx_hash: Optional[str] = None):
        super().__init__(message, step=step)
        self.tx_hash = tx_hash


class PreconditionViolation(WizardError):
    """An upstream id or hash is missing when a step activates."""

    code = "PRECONDITION_VIOLATION"


class InvalidTransitionError(PreconditionViolation):
    """A store mutation was called from a status that does not allow it."""

    code = "INVALID_TRANSITION"


class CorruptSessionError(PreconditionViolation):
    """Persisted status and persisted ids/hashes disagree."""

    code = "CORRUPT_SESSION"


class StepMismatchError(WizardError):
    """Input was submitted for a step that is not the active one."""

    code = "STEP_MISMATCH"


class InvalidInputError(WizardError):
    """Step input is missing or breaks a policy limit; the user must edit it."""

    code = "INVALID_INPUT"


class BudgetExceededError(WizardError):
    """Milestone rewards exceed the study's total funding."""

    code = "BUDGET_EXCEEDED"

    def __init__(self, total_rewards: float, total_funding: float):
        super().__init__(
            f"Total milestone rewards ({total_rewards:g}) exceed total funding ({total_funding:g})",
            step="milestones",
        )
        self.total_rewards = total_rewards
        self.total_funding = total_funding


class OwnershipMismatchError(WizardError):
    """The session belongs to another wallet."""

    code = "OWNERSHIP_MISMATCH"


class StepInProgressError(StepMismatchError):
    """Another command is already running a step of this session."""

    retryable = True
    code = "STEP_IN_PROGRESS"
