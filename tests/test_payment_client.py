"""
Payment server client tests: how each kind of answer is classified.
"""
import json
from decimal import Decimal

import httpx
import pytest

from food_express.clients.payments import PaymentVerifier
from food_express.core.errors import PaymentDeclined, VerificationError


def verifier(handler) -> PaymentVerifier:
    return PaymentVerifier(base_url="http://payments.test/api/", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_initialize_payment_reads_nested_data():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"data": {"checkout_url": "https://pay.test/c/1", "tx_ref": "TX1"}})

    session = await verifier(handler).initialize_payment({"amount": Decimal("150.00"), "currency": "ETB"})

    assert session.tx_ref == "TX1"
    assert session.checkout_url == "https://pay.test/c/1"
    assert seen["url"] == "http://payments.test/api/pay"
    assert seen["body"] == {"amount": "150.00", "currency": "ETB"}


@pytest.mark.asyncio
async def test_initialize_payment_reads_top_level_fields():
    def handler(request):
        return httpx.Response(201, json={"checkout_url": "https://pay.test/c/2", "tx_ref": "TX2"})

    session = await verifier(handler).initialize_payment({"amount": "10.00"})

    assert session.tx_ref == "TX2"


@pytest.mark.asyncio
async def test_initialize_payment_rejected_by_provider():
    def handler(request):
        return httpx.Response(400, json={"message": "Invalid phone number"})

    with pytest.raises(PaymentDeclined, match="Invalid phone number"):
        await verifier(handler).initialize_payment({"amount": "10.00"})


@pytest.mark.asyncio
async def test_initialize_payment_without_tx_ref_is_a_verification_error():
    def handler(request):
        return httpx.Response(200, json={"checkout_url": "https://pay.test/c/3"})

    with pytest.raises(VerificationError):
        await verifier(handler).initialize_payment({"amount": "10.00"})


@pytest.mark.asyncio
async def test_verify_success():
    def handler(request):
        assert json.loads(request.content) == {"transaction_id": "TX1"}
        return httpx.Response(200, json={"status": "success", "data": {"amount": "150.00"}})

    result = await verifier(handler).verify_payment("TX1")

    assert result.status == "success"
    assert result.data == {"amount": "150.00"}


@pytest.mark.asyncio
@pytest.mark.parametrize("status", ["failed", "cancelled", ""])
async def test_verify_anything_but_success_is_declined(status):
    def handler(request):
        return httpx.Response(200, json={"status": status})

    with pytest.raises(PaymentDeclined):
        await verifier(handler).verify_payment("TX1")


@pytest.mark.asyncio
async def test_verify_unknown_reference_is_declined():
    def handler(request):
        return httpx.Response(404, json={"message": "Transaction not found"})

    with pytest.raises(PaymentDeclined):
        await verifier(handler).verify_payment("TX-NOPE")


@pytest.mark.asyncio
async def test_verify_server_error_is_retryable():
    def handler(request):
        return httpx.Response(502, text="Bad gateway")

    with pytest.raises(VerificationError) as exc_info:
        await verifier(handler).verify_payment("TX1")
    assert exc_info.value.status_code == 502


@pytest.mark.asyncio
async def test_verify_timeout_maps_to_504():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(VerificationError) as exc_info:
        await verifier(handler).verify_payment("TX1")
    assert exc_info.value.timed_out is True
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_verify_garbage_body_is_a_verification_error():
    def handler(request):
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(VerificationError):
        await verifier(handler).verify_payment("TX1")
