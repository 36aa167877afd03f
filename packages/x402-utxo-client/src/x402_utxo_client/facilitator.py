# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx


class FacilitatorClient:
    """Resource-server side client for a facilitator's /x402 routes.

    Each verify or settle call against a funding-object payment consumes one
    metered unit, so a resource server calls one of them per paid request.
    """

    def __init__(self, facilitator_base: str, *, http: Optional[httpx.AsyncClient] = None):
        if not facilitator_base:
            raise ValueError("facilitator_base required")
        base = facilitator_base.rstrip("/")
        self.supported_url = f"{base}/supported"
        self.verify_url = f"{base}/verify"
        self.settle_url = f"{base}/settle"
        self.ledger_url = f"{base}/ledger"
        self.http = http or httpx.AsyncClient(timeout=35.0, follow_redirects=True)

    @staticmethod
    def _json(r: httpx.Response, what: str) -> Dict[str, Any]:
        r.raise_for_status()
        if (r.headers.get("content-type") or "").split(";", 1)[0].strip().lower() != "application/json":
            raise httpx.HTTPError(f"invalid content-type from {what}")
        return r.json()

    @staticmethod
    def _body(
        payment_requirements: Dict[str, Any],
        payment_payload: Optional[Dict[str, Any]],
        x_payment_b64: Optional[str],
    ) -> Dict[str, Any]:
        if payment_payload is None and not x_payment_b64:
            raise ValueError("payment_payload or x_payment_b64 required")
        body: Dict[str, Any] = {"x402Version": 1, "paymentRequirements": payment_requirements}
        if payment_payload is not None:
            body["paymentPayload"] = payment_payload
        else:
            body["paymentHeader"] = x_payment_b64
        return body

    async def supported(self) -> Dict[str, Any]:
        r = await self.http.get(self.supported_url)
        return self._json(r, "/x402/supported")

    async def verify(
        self,
        payment_requirements: Dict[str, Any],
        *,
        payment_payload: Optional[Dict[str, Any]] = None,
        x_payment_b64: Optional[str] = None,
    ) -> Dict[str, Any]:
        r = await self.http.post(
            self.verify_url, json=self._body(payment_requirements, payment_payload, x_payment_b64)
        )
        return self._json(r, "/x402/verify")

    async def settle(
        self,
        payment_requirements: Dict[str, Any],
        *,
        payment_payload: Optional[Dict[str, Any]] = None,
        x_payment_b64: Optional[str] = None,
    ) -> Dict[str, Any]:
        r = await self.http.post(
            self.settle_url, json=self._body(payment_requirements, payment_payload, x_payment_b64)
        )
        return self._json(r, "/x402/settle")

    async def ledger(self, txid: str, vout: int) -> Optional[Dict[str, Any]]:
        """Ledger record for a funding object, or None when the facilitator has none."""
        r = await self.http.get(f"{self.ledger_url}/{txid}/{vout}")
        if r.status_code == 404:
            return None
        return self._json(r, "/x402/ledger")

    async def aclose(self) -> None:
        await self.http.aclose()
