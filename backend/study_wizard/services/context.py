"""
Wizard Context — collaborators for one wizard session, threaded through every step.

Created when a session key is first used and torn down when that session is
reset, cancelled, finished or left idle; nothing here outlives its session.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy.orm import Session

from study_wizard.config import WizardPolicy
from study_wizard.services.gateway import TransactionGateway
from study_wizard.services.indexer import Indexer
from study_wizard.services.session_store import SessionStore

logger = logging.getLogger(__name__)

# owner address -> new study (database) id
CreateInitialStudy = Callable[[str], Awaitable[str]]


@dataclass
class WizardContext:
    key: str
    store: SessionStore
    gateway: TransactionGateway
    indexer: Indexer
    create_initial: CreateInitialStudy
    policy: WizardPolicy = field(default_factory=WizardPolicy)
    # Single-flight guards; both are set before the first await
    creating: bool = False
    running: bool = False
    active: bool = False
    last_used: float = 0.0

    @property
    def busy(self) -> bool:
        return self.creating or self.running

    def init(self) -> "WizardContext":
        self.active = True
        self.creating = False
        self.running = False
        logger.debug("Wizard context %s initialized", self.key)
        return self

    def teardown(self) -> None:
        self.active = False
        self.creating = False
        self.running = False
        logger.debug("Wizard context %s torn down", self.key)


class ContextRegistry:
    """Live contexts by session key; owned by the application, not the module.

    ``factory(key, db)`` builds a context bound to one database session. A context
    outlives requests, so on reuse only its db-bound collaborators are replaced,
    and never while a step or creation is in flight. Contexts unused for
    ``idle_ttl`` seconds are dropped; their session stays persisted.
    """

    def __init__(self, factory: Callable[[str, Session], WizardContext],
                 idle_ttl: float = 1800.0, clock: Callable[[], float] = time.monotonic):
        self._factory = factory
        self._contexts: Dict[str, WizardContext] = {}
        self.idle_ttl = idle_ttl
        self._clock = clock

    def get(self, key: str, db: Session) -> WizardContext:
        now = self._clock()
        self.evict_idle(now)

        context = self._contexts.get(key)
        if context is None or not context.active:
            context = self._factory(key, db).init()
            self._contexts[key] = context
        elif context.store.db is not db and not context.busy:
            fresh = self._factory(key, db)
            context.store = fresh.store
            context.indexer = fresh.indexer
            context.create_initial = fresh.create_initial
        context.last_used = now
        return context

    def evict_idle(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        stale = [
            key for key, context in self._contexts.items()
            if not context.busy and now - context.last_used > self.idle_ttl
        ]
        for key in stale:
            self.drop(key)
        if stale:
            logger.info("Evicted %d idle wizard context(s)", len(stale))
        return len(stale)

    def peek(self, key: str) -> Optional[WizardContext]:
        return self._contexts.get(key)

    def drop(self, key: str) -> None:
        context = self._contexts.pop(key, None)
        if context is not None:
            context.teardown()

    def __len__(self) -> int:
        return len(self._contexts)
