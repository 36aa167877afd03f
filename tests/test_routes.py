# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Test the facilitator HTTP surface: status codes, error shape and debug views.
"""

import pytest
from fastapi.testclient import TestClient

from fakes import PAYER, TXID, signed_payload
from x402_utxo_facilitator import encode_payment_header
from x402_utxo_facilitator.reasons import InvalidReason


@pytest.fixture
def app(cfg, engine):
    from run_facilitator import build_app

    return build_app(cfg, engine=engine)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def body(signer, clock, requirements_data):
    return {
        "x402Version": 1,
        "paymentPayload": signed_payload(signer, now=clock.now),
        "paymentRequirements": requirements_data,
    }


def _assert_error(response, status_code: int) -> dict:
    assert response.status_code == status_code
    data = response.json()
    assert set(data) == {"error", "request_id"}
    assert data["error"]["message"]
    assert response.headers["X-Request-ID"] == data["request_id"]
    return data


class TestFacilitatorRoutes:
    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"

    def test_supported(self, client):
        r = client.get("/x402/supported")
        assert r.status_code == 200
        assert r.json() == {"kinds": [{"x402Version": 1, "scheme": "utxo", "network": "bch"}]}

    def test_verify(self, client, body):
        r = client.post("/x402/verify", json=body)
        assert r.status_code == 200
        assert r.json() == {"isValid": True, "payer": PAYER, "invalidReason": None}
        assert len(r.headers["X-Request-ID"]) == 32

    def test_verify_accepts_payment_header(self, client, body):
        header = encode_payment_header(body.pop("paymentPayload"))
        r = client.post("/x402/verify", json={**body, "paymentHeader": header})
        assert r.status_code == 200
        assert r.json()["isValid"] is True

    def test_invalid_payment_is_still_200(self, client, body):
        body["paymentPayload"]["payload"]["signature"] = "forged"
        r = client.post("/x402/verify", json=body)
        assert r.status_code == 200
        assert r.json()["invalidReason"] == InvalidReason.invalid_signature.value

    def test_unsupported_request_version_is_still_200(self, client, body):
        body["x402Version"] = 2
        r = client.post("/x402/verify", json=body)
        assert r.status_code == 200
        assert r.json()["invalidReason"] == InvalidReason.invalid_x402_version.value

    def test_missing_payment(self, client, body):
        del body["paymentPayload"]
        data = _assert_error(client.post("/x402/verify", json=body), 400)
        assert data["error"]["code"] == "BAD_REQUEST"

    def test_missing_requirements(self, client, body):
        del body["paymentRequirements"]
        _assert_error(client.post("/x402/verify", json=body), 400)

    def test_malformed_requirements(self, client, body):
        del body["paymentRequirements"]["payTo"]
        data = _assert_error(client.post("/x402/settle", json=body), 400)
        assert "payTo" in data["error"]["message"]

    def test_undecodable_payment_header(self, client, body):
        del body["paymentPayload"]
        body["paymentHeader"] = "!!!!"
        _assert_error(client.post("/x402/verify", json=body), 400)

    def test_unexpected_failure_is_500(self, client, engine, body, mocker):
        mocker.patch.object(engine, "verify", side_effect=RuntimeError("secret detail"))
        data = _assert_error(client.post("/x402/verify", json=body), 500)
        assert "secret detail" not in data["error"]["message"]

    def test_settle(self, client, body, broadcaster):
        r = client.post("/x402/settle", json=body)
        assert r.status_code == 200
        data = r.json()
        assert data["success"] is True
        assert data["transaction"] == "cd" * 32
        assert data["network"] == "bch"
        assert len(broadcaster.sent) == 1

    def test_debug_shows_latest_outcomes(self, client, body):
        client.post("/x402/verify", json=body)
        r = client.get("/x402/debug")
        assert r.status_code == 200
        last = r.json()["last_verify"]
        assert last["result"]["isValid"] is True
        assert last["request_id"]

    def test_ledger_record(self, client, body):
        assert client.get(f"/x402/ledger/{TXID}/0").status_code == 404
        client.post("/x402/verify", json=body)
        r = client.get(f"/x402/ledger/{TXID}/0")
        assert r.status_code == 200
        assert r.json()["remainingBalance"] == 900
        assert r.json()["fundingRef"] == f"{TXID}:0"


class TestDebugDisabled:
    @pytest.fixture
    def client(self, cfg, engine):
        from run_facilitator import build_app

        return TestClient(build_app(cfg.model_copy(update={"debug_enabled": False}), engine=engine))

    def test_debug_hidden(self, client):
        assert client.get("/x402/debug").status_code == 404

    def test_ledger_hidden(self, client):
        assert client.get(f"/x402/ledger/{TXID}/0").status_code == 404
