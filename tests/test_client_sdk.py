# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Test the resource-server client SDK against a facilitator app.
"""

import time
from unittest.mock import Mock, patch

import httpx
import pytest

from fakes import PAYER, TXID, FakeClock
from x402_utxo_client import FacilitatorClient, build_signed_payment
from x402_utxo_facilitator import decode_payment_header, parse_payment_payload
from x402_utxo_facilitator.codec import canonical_message


@pytest.fixture
def clock() -> FakeClock:
    # Payments below are signed against wall-clock time
    return FakeClock(time.time())


@pytest.fixture
def facilitator_client(cfg, engine) -> FacilitatorClient:
    from run_facilitator import build_app

    transport = httpx.ASGITransport(app=build_app(cfg, engine=engine))
    return FacilitatorClient(
        "http://facilitator.test/x402",
        http=httpx.AsyncClient(transport=transport),
    )


@pytest.mark.asyncio
class TestBuildSignedPayment:
    async def test_signs_canonical_message(self, signer, requirements_data):
        payload, header = await build_signed_payment(signer, requirements_data, payer=PAYER, txid=TXID, vout=0)

        env = parse_payment_payload(payload)
        auth = env.payload.authorization
        assert auth.value == 100
        assert auth.funding_ref.key == f"{TXID}:0"
        assert auth.validBefore - auth.validAfter == 65
        assert await signer.verify(PAYER, env.payload.signature, canonical_message(auth))
        assert decode_payment_header(header) == payload

    async def test_nonces_differ(self, signer, requirements_data):
        a, _ = await build_signed_payment(signer, requirements_data, payer=PAYER, txid=TXID, vout=0)
        b, _ = await build_signed_payment(signer, requirements_data, payer=PAYER, txid=TXID, vout=0)
        assert a["payload"]["authorization"]["nonce"] != b["payload"]["authorization"]["nonce"]


@pytest.mark.asyncio
class TestFacilitatorClient:
    async def test_supported(self, facilitator_client):
        data = await facilitator_client.supported()
        assert data["kinds"][0]["scheme"] == "utxo"

    async def test_verify_then_ledger(self, facilitator_client, signer, requirements_data):
        payload, _ = await build_signed_payment(signer, requirements_data, payer=PAYER, txid=TXID, vout=0)

        result = await facilitator_client.verify(requirements_data, payment_payload=payload)

        assert result == {"isValid": True, "payer": PAYER, "invalidReason": None}
        record = await facilitator_client.ledger(TXID, 0)
        assert record["remainingBalance"] == 900
        assert await facilitator_client.ledger(TXID, 3) is None

    async def test_settle_with_header_form(self, facilitator_client, signer, requirements_data, broadcaster):
        _, header = await build_signed_payment(signer, requirements_data, payer=PAYER, txid=TXID, vout=0)

        result = await facilitator_client.settle(requirements_data, x_payment_b64=header)

        assert result["success"] is True
        assert result["transaction"] == "cd" * 32
        assert len(broadcaster.sent) == 1

    async def test_requires_a_payment(self, facilitator_client, requirements_data):
        with pytest.raises(ValueError):
            await facilitator_client.verify(requirements_data)

    async def test_rejects_non_json_reply(self, requirements_data):
        client = FacilitatorClient("http://facilitator.test/x402")
        with patch.object(client.http, "post") as mock_post:
            mock_response = Mock()
            mock_response.raise_for_status = Mock()
            mock_response.headers = {"content-type": "text/html"}
            mock_post.return_value = mock_response

            with pytest.raises(httpx.HTTPError):
                await client.verify(requirements_data, x_payment_b64="abc")

    async def test_http_error_propagates(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500, json={})))
        client = FacilitatorClient("http://facilitator.test/x402", http=http)
        with pytest.raises(httpx.HTTPStatusError):
            await client.supported()


def test_base_url_required():
    with pytest.raises(ValueError):
        FacilitatorClient("")
