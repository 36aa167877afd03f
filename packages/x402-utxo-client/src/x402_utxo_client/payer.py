# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import os
import time
from typing import Any, Dict, Optional, Tuple

from x402_utxo_facilitator.codec import canonical_message, encode_payment_header, serialize_envelope
from x402_utxo_facilitator.models import AuthorizationPayload, PaymentAuthorization, PaymentEnvelope
from x402_utxo_facilitator.signature import SignatureService


def _now() -> int:
    return int(time.time())


async def build_signed_payment(
    signer: SignatureService,
    requirements: Dict[str, Any],
    *,
    payer: str,
    txid: str,
    vout: int,
    value: Optional[int] = None,
    valid_for_s: Optional[int] = None,
    nonce: Optional[str] = None,
) -> Tuple[Dict[str, Any], str]:
    """Sign an authorization drawing on funding object ``txid:vout``.

    Returns the ``paymentPayload`` dict and its X-PAYMENT header form.
    """
    now = _now()
    ttl = valid_for_s if valid_for_s is not None else int(requirements.get("maxTimeoutSeconds") or 60)
    auth = PaymentAuthorization(
        **{
            "from": payer,
            "to": requirements["payTo"],
            "value": value if value is not None else int(requirements["maxAmountRequired"]),
            "txid": txid,
            "vout": vout,
            "validAfter": now - 5,
            "validBefore": now + ttl,
            "nonce": nonce or os.urandom(16).hex(),
        }
    )
    signature = await signer.sign(canonical_message(auth))
    envelope = PaymentEnvelope(
        x402Version=1,
        scheme=requirements["scheme"],
        network=requirements["network"],
        payload=AuthorizationPayload(authorization=auth, signature=signature),
    )
    payload = serialize_envelope(envelope)
    return payload, encode_payment_header(envelope)
