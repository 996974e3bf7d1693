import json

import httpx
import pytest

from study_wizard.schemas.wizard import UnsignedTx, WizardStep
from study_wizard.services.errors import TransportError, UserDeclinedError
from study_wizard.services.http_gateway import HttpIndexer, HttpTransactionGateway, receipt_to_confirmation
from study_wizard.services.indexer import StudyNotFoundError

from conftest import run

TX = "0x" + "5" * 64
ESCROW_TX = UnsignedTx(step=WizardStep.ESCROW, to="0x" + "e" * 40, function_name="createStudy",
                       args=["Title", "", [], 5], chain_id=11155420)


def gateway_with(settings, handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransactionGateway(settings, client=client)


def test_receipt_mapping():
    receipt = {
        "status": "0x1",
        "blockNumber": "0x2a",
        "logs": [{"topics": ["0xabc", "0x7"]}, {"topics": ["0xdef"]}],
    }
    confirmation = receipt_to_confirmation(TX, receipt, 11155420)
    assert confirmation.success
    assert confirmation.block_number == 42
    assert confirmation.emitted_ids == [7]
    assert confirmation.chain_id == 11155420

    assert not receipt_to_confirmation(TX, {**receipt, "status": "0x0"}, 1).success


def test_signer_rejection_maps_to_declined(settings):
    gateway = gateway_with(settings, lambda request: httpx.Response(200, json={"status": "rejected"}))
    with pytest.raises(UserDeclinedError):
        run(gateway.sign_and_broadcast(ESCROW_TX))


def test_signer_returns_hash(settings):
    def handler(request):
        assert json.loads(request.content)["function_name"] == "createStudy"
        return httpx.Response(200, json={"tx_hash": TX})

    assert run(gateway_with(settings, handler).sign_and_broadcast(ESCROW_TX)) == TX


def test_unreachable_signer_is_transport_error(settings):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransportError):
        run(gateway_with(settings, handler).sign_and_broadcast(ESCROW_TX))


def test_confirmation_polls_until_mined(settings):
    settings.CONFIRMATION_POLL_SECONDS = 0
    answers = [None, {"status": "0x1", "blockNumber": "0x10", "logs": []}]

    def handler(request):
        assert json.loads(request.content)["method"] == "eth_getTransactionReceipt"
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "result": answers.pop(0)})

    confirmation = run(gateway_with(settings, handler).wait_for_confirmation(TX))
    assert confirmation.block_number == 16
    assert answers == []


def test_http_indexer_maps_status_codes(settings):
    def handler(request):
        body = json.loads(request.content)
        if body["database_id"] == "missing":
            return httpx.Response(404, json={"detail": "Study not found"})
        if body["database_id"] == "down":
            return httpx.Response(503, json={"detail": "unavailable"})
        return httpx.Response(200, json={"derived_ids": {"registry_id": 11}})

    indexer = HttpIndexer(settings, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    assert run(indexer.index_step("study-1", WizardStep.REGISTRY, TX, 1, 42, {})) == {"registry_id": 11}
    with pytest.raises(StudyNotFoundError):
        run(indexer.index_step("missing", WizardStep.REGISTRY, TX, 1, 42, {}))
    with pytest.raises(TransportError):
        run(indexer.index_step("down", WizardStep.REGISTRY, TX, 1, 42, {}))
