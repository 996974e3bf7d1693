"""
Transaction Gateway — interface the wizard uses to reach the wallet and the chain.

``sign_and_broadcast`` waits on a human and may never return; callers cancel
the wait, not the transaction. ``wait_for_confirmation`` must never broadcast.
"""
from typing import Protocol

from study_wizard.schemas.schemas import BuildTxRequest
from study_wizard.schemas.wizard import Confirmation, UnsignedTx


class TransactionGateway(Protocol):
    async def build_transaction(self, request: BuildTxRequest) -> UnsignedTx:
        """Return the unsigned contract call for a step (or one milestone item)."""
        ...

    async def sign_and_broadcast(self, tx: UnsignedTx) -> str:
        """Ask the active wallet to sign and broadcast; return the transaction hash.

        Raises UserDeclinedError on refusal, TransportError on wallet/network failure.
        """
        ...

    async def wait_for_confirmation(self, tx_hash: str) -> Confirmation:
        """Block until ``tx_hash`` is mined; raise TransportError if the node is unreachable."""
        ...
