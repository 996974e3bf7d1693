"""
HTTP adapters for the wizard's remote collaborators.

- build:    POST {INDEXER_URL}/api/studies/wizard/build-tx
- sign:     POST {SIGNER_URL}/sign-and-send (the wallet bridge)
- confirm:  JSON-RPC eth_getTransactionReceipt on {RPC_URL}, polled
- index:    POST {INDEXER_URL}/api/studies/wizard/index-step

All transport failures surface as TransportError so the step can be retried.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from study_wizard.config import Settings, get_settings
from study_wizard.schemas.schemas import BuildTxRequest, IndexStepRequest
from study_wizard.schemas.wizard import Confirmation, UnsignedTx, WizardStep
from study_wizard.services.errors import TransportError, UserDeclinedError
from study_wizard.services.indexer import StudyNotFoundError
from study_wizard.utils.hashing import short_hash

logger = logging.getLogger(__name__)


def _detail(response: httpx.Response) -> str:
    try:
        return str(response.json().get("detail", response.text))
    except ValueError:
        return response.text


class _HttpAdapter:
    def __init__(self, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self._client = client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def close(self):
        await self._client.aclose()

    async def _post(self, url: str, payload: Any, step: Optional[str] = None,
                    tx_hash: Optional[str] = None) -> httpx.Response:
        try:
            return await self._client.post(url, json=payload)
        except httpx.RequestError as exc:
            raise TransportError(f"Request to {url} failed: {exc}", step=step, tx_hash=tx_hash) from exc


class HttpTransactionGateway(_HttpAdapter):
    """Wallet bridge + JSON-RPC node, spoken to over HTTP."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        super().__init__(client=client)

    async def build_transaction(self, request: BuildTxRequest) -> UnsignedTx:
        url = f"{self.settings.INDEXER_URL.rstrip('/')}/api/studies/wizard/build-tx"
        response = await self._post(url, request.model_dump(mode="json"), step=request.step.value)
        if response.status_code >= 400:
            raise TransportError(f"Could not build {request.step.value} transaction: {_detail(response)}",
                                 step=request.step.value)
        return UnsignedTx(**response.json())

    async def sign_and_broadcast(self, tx: UnsignedTx) -> str:
        url = f"{self.settings.SIGNER_URL.rstrip('/')}/sign-and-send"
        # No client timeout: the wallet prompt waits on a human
        try:
            response = await self._client.post(url, json=tx.model_dump(mode="json"), timeout=None)
        except httpx.RequestError as exc:
            raise TransportError(f"Wallet unreachable: {exc}", step=tx.step.value) from exc

        body = response.json() if response.content else {}
        if response.status_code == 403 or body.get("status") == "rejected":
            raise UserDeclinedError("Signature request was declined in the wallet", step=tx.step.value)
        if response.status_code >= 400 or not body.get("tx_hash"):
            raise TransportError(f"Broadcast failed: {_detail(response)}", step=tx.step.value)

        logger.info("Broadcast %s %s", tx.function_name, short_hash(body["tx_hash"]))
        return body["tx_hash"]

    async def _rpc(self, method: str, params: List[Any], tx_hash: str) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        response = await self._post(self.settings.RPC_URL, payload, tx_hash=tx_hash)
        if response.status_code >= 400:
            raise TransportError(f"RPC {method} failed: HTTP {response.status_code}", tx_hash=tx_hash)
        body = response.json()
        if body.get("error"):
            raise TransportError(f"RPC {method} failed: {body['error'].get('message')}", tx_hash=tx_hash)
        return body.get("result")

    async def wait_for_confirmation(self, tx_hash: str) -> Confirmation:
        while True:
            receipt = await self._rpc("eth_getTransactionReceipt", [tx_hash], tx_hash)
            if receipt:
                return receipt_to_confirmation(tx_hash, receipt, self.settings.DEFAULT_CHAIN_ID)
            await asyncio.sleep(self.settings.CONFIRMATION_POLL_SECONDS)


def receipt_to_confirmation(tx_hash: str, receipt: Dict[str, Any], chain_id: int) -> Confirmation:
    """Map a raw receipt; the first indexed topic of each log is the emitted id."""
    emitted = []
    for log in receipt.get("logs") or []:
        topics = log.get("topics") or []
        if len(topics) > 1:
            emitted.append(int(topics[1], 16))
    return Confirmation(
        tx_hash=tx_hash,
        chain_id=int(receipt["chainId"], 16) if receipt.get("chainId") else chain_id,
        block_number=int(receipt["blockNumber"], 16),
        success=receipt.get("status") == "0x1",
        emitted_ids=emitted,
    )


class HttpIndexer(_HttpAdapter):
    """Client for a remote index-step endpoint."""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings or get_settings()
        super().__init__(client=client)

    async def index_step(self, database_id: str, step: WizardStep, tx_hash: str, chain_id: int,
                         block_number: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.settings.INDEXER_URL.rstrip('/')}/api/studies/wizard/index-step"
        request = IndexStepRequest(
            database_id=database_id, step=step, tx_hash=tx_hash,
            chain_id=chain_id, block_number=block_number, payload=payload,
        )
        response = await self._post(url, request.model_dump(mode="json"), step=step.value, tx_hash=tx_hash)
        if response.status_code == 404:
            raise StudyNotFoundError(_detail(response))
        if response.status_code in (400, 422):
            raise ValueError(_detail(response))
        if response.status_code >= 400:
            raise TransportError(f"Indexer returned HTTP {response.status_code}", step=step.value, tx_hash=tx_hash)
        return response.json().get("derived_ids", {})
