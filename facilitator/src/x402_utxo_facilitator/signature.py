# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
from typing import Optional, Protocol

import httpx

logger = logging.getLogger(__name__)


class SignatureService(Protocol):
    """Wallet-side message signing capability (keys never leave it)."""

    async def sign(self, message: str) -> str:
        ...

    async def verify(self, address: str, signature: str, message: str) -> bool:
        ...


class SignatureVerifier:
    """Checks an authorization signature against the claimed signer address.

    Any failure inside the signature capability counts as an invalid
    signature; nothing is raised to the caller.
    """

    def __init__(self, service: SignatureService):
        self.service = service

    async def verify(self, message: str, signature: str, claimed_address: str) -> bool:
        try:
            return bool(await self.service.verify(claimed_address, signature, message))
        except Exception as e:
            logger.warning(f"Signature check failed for {claimed_address}: {e!r}")
            return False


class RestSignatureService:
    """SignatureService backed by a wallet-service sidecar over HTTP.

    Endpoints:
      - POST {base}/wallet/verify-message {address, signature, message} -> {valid}
      - POST {base}/wallet/sign-message {message} -> {signature}
    """

    def __init__(self, base_url: str, *, http: Optional[httpx.AsyncClient] = None, timeout_s: float = 10.0):
        if not base_url:
            raise ValueError("base_url required for RestSignatureService")
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.AsyncClient(timeout=timeout_s)

    async def sign(self, message: str) -> str:
        r = await self.http.post(f"{self.base_url}/wallet/sign-message", json={"message": message})
        r.raise_for_status()
        signature = r.json().get("signature")
        if not signature:
            raise httpx.HTTPError("wallet service returned no signature")
        return str(signature)

    async def verify(self, address: str, signature: str, message: str) -> bool:
        r = await self.http.post(
            f"{self.base_url}/wallet/verify-message",
            json={"address": address, "signature": signature, "message": message},
        )
        r.raise_for_status()
        return bool(r.json().get("valid"))
