# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Test payment envelope parsing, the canonical message and the X-PAYMENT form.
"""

import base64
import json

import pytest

from fakes import PAY_TO, PAYER, TXID
from x402_utxo_facilitator.codec import (
    MAX_HEADER_BYTES,
    EnvelopeError,
    canonical_message,
    decode_payment_header,
    encode_payment_header,
    parse_payment_payload,
    payment_kind,
    payment_version,
)
from x402_utxo_facilitator.models import FundingRef, PaymentAuthorization


def _raw(**auth_overrides):
    auth = {
        "from": PAYER,
        "to": PAY_TO,
        "value": "100",
        "validAfter": "1700000000",
        "validBefore": "1700000060",
        "nonce": "n-1",
        "txid": TXID,
        "vout": "0",
    }
    auth.update(auth_overrides)
    return {
        "x402Version": 1,
        "scheme": "utxo",
        "network": "bch",
        "payload": {"authorization": auth, "signature": "sig"},
    }


class TestParsePaymentPayload:
    def test_normalizes_numeric_strings(self):
        env = parse_payment_payload(_raw())
        auth = env.payload.authorization
        assert auth.from_ == PAYER
        assert auth.value == 100
        assert auth.validAfter == 1700000000
        assert auth.vout == 0
        assert auth.funding_ref == FundingRef(TXID, 0)

    def test_missing_signature_is_rejected(self):
        raw = _raw()
        del raw["payload"]["signature"]
        with pytest.raises(EnvelopeError, match="signature"):
            parse_payment_payload(raw)

    def test_missing_authorization_is_rejected(self):
        raw = _raw()
        raw["payload"]["authorization"] = {}
        with pytest.raises(EnvelopeError, match="authorization"):
            parse_payment_payload(raw)

    def test_malformed_field_names_location(self):
        with pytest.raises(EnvelopeError, match="value"):
            parse_payment_payload(_raw(value="lots"))

    def test_empty_time_window_is_rejected(self):
        with pytest.raises(EnvelopeError, match="validAfter"):
            parse_payment_payload(_raw(validAfter="1700000060"))

    def test_txid_without_vout_is_rejected(self):
        raw = _raw()
        del raw["payload"]["authorization"]["vout"]
        with pytest.raises(EnvelopeError, match="together"):
            parse_payment_payload(raw)

    def test_non_object_is_rejected(self):
        with pytest.raises(EnvelopeError):
            parse_payment_payload(["not", "an", "envelope"])

    def test_payment_kind_reads_only_scheme_and_network(self):
        assert payment_kind({"scheme": "utxo", "network": "bch", "payload": None}) == ("utxo", "bch")
        assert payment_kind("garbage") == (None, None)

    def test_payment_version(self):
        assert payment_version(_raw()) == 1
        assert payment_version({"scheme": "utxo"}) == 1
        assert payment_version({"x402Version": "2"}) == 2
        assert payment_version({"x402Version": "v1"}) is None
        assert payment_version({"x402Version": True}) is None
        assert payment_version(parse_payment_payload(_raw())) == 1
        assert payment_version("garbage") is None


class TestCanonicalMessage:
    def test_fixed_field_order_and_compact_form(self):
        auth = parse_payment_payload(_raw()).payload.authorization
        msg = canonical_message(auth)
        assert msg == (
            '{"from":"%s","to":"%s","value":"100","txid":"%s","vout":0,'
            '"validAfter":"1700000000","validBefore":"1700000060","nonce":"n-1"}' % (PAYER, PAY_TO, TXID)
        )

    def test_absent_funding_ref_is_omitted(self):
        auth = PaymentAuthorization(
            **{"from": PAYER, "to": PAY_TO, "value": 5, "validBefore": 10, "nonce": "x"}
        )
        assert list(json.loads(canonical_message(auth))) == [
            "from",
            "to",
            "value",
            "validAfter",
            "validBefore",
            "nonce",
        ]

    def test_same_authorization_same_message(self):
        a = parse_payment_payload(_raw()).payload.authorization
        b = parse_payment_payload(_raw(value=100, vout=0)).payload.authorization
        assert canonical_message(a) == canonical_message(b)


class TestPaymentHeader:
    def test_header_decodes_to_parseable_envelope(self):
        env = parse_payment_payload(_raw())
        decoded = decode_payment_header(encode_payment_header(env))
        assert decoded["payload"]["authorization"]["from"] == PAYER
        assert parse_payment_payload(decoded) == env

    def test_urlsafe_unpadded_header_is_accepted(self):
        raw = json.dumps({"scheme": "utxo", "network": "bch", "pad": "??>>"}).encode()
        value = base64.urlsafe_b64encode(raw).decode().rstrip("=")
        assert decode_payment_header(value)["scheme"] == "utxo"

    def test_invalid_base64(self):
        with pytest.raises(EnvelopeError):
            decode_payment_header("!!!!")

    def test_non_object_json(self):
        with pytest.raises(EnvelopeError, match="JSON object"):
            decode_payment_header(base64.b64encode(b"[1,2]").decode())

    def test_oversized_header(self):
        with pytest.raises(EnvelopeError, match="too large"):
            decode_payment_header("A" * (MAX_HEADER_BYTES + 4))
