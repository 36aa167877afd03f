# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Payment envelope parsing and the canonical authorization message.

The canonical message is what the payer signs and what the facilitator
verifies, so both sides must produce it with this module:

    {"from":..,"to":..,"value":"..","txid":..,"vout":0,
     "validAfter":"..","validBefore":"..","nonce":".."}

Field order is fixed, separators are compact, absent optional fields are
omitted and integers other than ``vout`` are rendered as decimal strings.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, Optional, Tuple, Union

from pydantic import ValidationError

from .models import PaymentAuthorization, PaymentEnvelope

MAX_HEADER_BYTES = 8192

_CANONICAL_FIELDS = (
    "from",
    "to",
    "value",
    "txid",
    "vout",
    "validAfter",
    "validBefore",
    "nonce",
)


class EnvelopeError(ValueError):
    pass


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise EnvelopeError(msg)


def payment_kind(raw: Any) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(scheme, network)`` without validating anything else."""
    if isinstance(raw, PaymentEnvelope):
        return raw.scheme, raw.network
    if not isinstance(raw, dict):
        return None, None
    return raw.get("scheme"), raw.get("network")


def payment_version(raw: Any) -> Optional[int]:
    """Return the envelope's ``x402Version`` (1 when absent), or None if unreadable."""
    if isinstance(raw, PaymentEnvelope):
        return raw.x402Version
    if not isinstance(raw, dict):
        return None
    version = raw.get("x402Version", 1)
    if isinstance(version, bool):
        return None
    try:
        return int(version)
    except (TypeError, ValueError):
        return None


def parse_payment_payload(raw: Union[PaymentEnvelope, Dict[str, Any]]) -> PaymentEnvelope:
    if isinstance(raw, PaymentEnvelope):
        envelope = raw
    else:
        _require(isinstance(raw, dict), "paymentPayload must be an object")
        payload = raw.get("payload")
        _require(isinstance(payload, dict), "payload required")
        _require(bool(payload.get("authorization")), "payload.authorization required")
        _require(bool(payload.get("signature")), "payload.signature required")
        try:
            envelope = PaymentEnvelope.model_validate(raw)
        except ValidationError as e:
            fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise EnvelopeError(f"malformed payment payload: {fields}") from e
    auth = envelope.payload.authorization
    _require(auth.validAfter < auth.validBefore, "validAfter must precede validBefore")
    _require((auth.txid is None) == (auth.vout is None), "txid and vout must be given together")
    return envelope


def canonical_message(authorization: PaymentAuthorization) -> str:
    data = authorization.model_dump(by_alias=True)
    ordered: Dict[str, Any] = {}
    for name in _CANONICAL_FIELDS:
        value = data.get(name)
        if value is None:
            continue
        ordered[name] = value if name == "vout" else str(value)
    return json.dumps(ordered, separators=(",", ":"), ensure_ascii=False)


def serialize_envelope(envelope: PaymentEnvelope) -> Dict[str, Any]:
    return envelope.model_dump(by_alias=True, exclude_none=True)


def _b64decode(value: str) -> bytes:
    v = value.strip()
    v += "=" * (-len(v) % 4)
    if "-" in v or "_" in v:
        return base64.urlsafe_b64decode(v)
    return base64.b64decode(v, validate=True)


def decode_payment_header(value: str) -> Dict[str, Any]:
    """Decode the ``X-PAYMENT`` transport form: base64(JSON envelope)."""
    _require(bool(value), "X-PAYMENT header empty")
    _require(len(value) <= MAX_HEADER_BYTES, "X-PAYMENT header too large")
    try:
        data = json.loads(_b64decode(value).decode("utf-8"))
    except ValueError as e:
        raise EnvelopeError(f"invalid X-PAYMENT header: {e}") from e
    _require(isinstance(data, dict), "X-PAYMENT must encode a JSON object")
    return data


def encode_payment_header(envelope: Union[PaymentEnvelope, Dict[str, Any]]) -> str:
    data = serialize_envelope(envelope) if isinstance(envelope, PaymentEnvelope) else envelope
    raw = json.dumps(data, separators=(",", ":"), ensure_ascii=False)
    return base64.b64encode(raw.encode("utf-8")).decode("ascii")
