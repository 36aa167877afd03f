# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Dict, List, Optional, Protocol, TypeVar

import httpx

from .models import FundingRef, PaymentRequirements
from .reasons import InvalidReason

logger = logging.getLogger(__name__)

SATS_PER_COIN = Decimal(100_000_000)
_ADDRESS_PREFIXES = ("bitcoincash:", "bchtest:", "bchreg:")

T = TypeVar("T")


class ChainUnavailableError(RuntimeError):
    """Chain lookup failed or timed out; callers must fail closed."""


def normalize_address(address: Optional[str]) -> str:
    a = (address or "").strip().lower()
    for prefix in _ADDRESS_PREFIXES:
        if a.startswith(prefix):
            return a[len(prefix):]
    return a


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    return bool(a) and bool(b) and normalize_address(a) == normalize_address(b)


@dataclass(frozen=True)
class FundingObservation:
    confirmations: int
    recipientAddress: Optional[str]
    value: int


@dataclass(frozen=True)
class Revalidation:
    ok: bool
    reason: Optional[InvalidReason] = None
    observation: Optional[FundingObservation] = None


class ChainClient(Protocol):
    """Raw chain lookups. Implementations may block on network I/O."""

    async def spendable(self, ref: FundingRef) -> bool:
        ...

    async def describe(self, ref: FundingRef) -> Optional[FundingObservation]:
        ...

    async def address_balance(self, address: str) -> int:
        ...


class Broadcaster(Protocol):
    async def send(self, outputs: List[Dict[str, Any]]) -> Optional[str]:
        ...


class ChainOracle:
    """Bounded-time view of chain state for the ledger and settlement engine."""

    def __init__(self, client: ChainClient, *, timeout_s: float = 10.0, default_min_confirmations: int = 1):
        self.client = client
        self.timeout_s = timeout_s
        self.default_min_confirmations = default_min_confirmations

    async def _call(self, what: str, aw: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(aw, timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            logger.warning(f"[CHAIN] {what} timed out after {self.timeout_s}s")
            raise ChainUnavailableError(f"{what} timed out after {self.timeout_s}s") from e
        except ChainUnavailableError:
            raise
        except (httpx.HTTPError, KeyError, TypeError, ValueError) as e:
            logger.warning(f"[CHAIN] {what} failed: {e!r}")
            raise ChainUnavailableError(f"{what} failed: {e!r}") from e

    async def spendable(self, ref: FundingRef) -> bool:
        return bool(await self._call(f"spendable({ref.key})", self.client.spendable(ref)))

    async def describe(self, ref: FundingRef) -> Optional[FundingObservation]:
        return await self._call(f"describe({ref.key})", self.client.describe(ref))

    async def address_balance(self, address: str) -> int:
        return int(await self._call(f"address_balance({address})", self.client.address_balance(address)))

    async def revalidate(self, ref: FundingRef, requirements: PaymentRequirements) -> Revalidation:
        """Check spendability, depth, recipient and value of a funding object.

        Raises ChainUnavailableError when the chain cannot be queried.
        """
        min_conf = requirements.minConfirmations
        if min_conf is None:
            min_conf = self.default_min_confirmations

        if not await self.spendable(ref):
            return Revalidation(ok=False, reason=InvalidReason.utxo_not_spendable)
        obs = await self.describe(ref)
        if obs is None:
            return Revalidation(ok=False, reason=InvalidReason.utxo_output_not_found)
        if obs.confirmations < min_conf:
            return Revalidation(ok=False, reason=InvalidReason.insufficient_confirmations, observation=obs)
        if not same_address(obs.recipientAddress, requirements.payTo):
            return Revalidation(ok=False, reason=InvalidReason.recipient_mismatch, observation=obs)
        if obs.value <= 0:
            return Revalidation(ok=False, reason=InvalidReason.invalid_utxo_value, observation=obs)
        return Revalidation(ok=True, observation=obs)


# -------------------------------
# REST implementations
# -------------------------------


def _to_sats(value: Any) -> int:
    return int((Decimal(str(value)) * SATS_PER_COIN).to_integral_value())


def _json_object(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{what}: expected a JSON object, got {type(data).__name__}")
    return data


class RestChainClient:
    """ChainClient for a bch-api style REST indexer.

    - POST /blockchain/getTxOut {txid, vout, mempool} -> null once spent
    - GET  /rawtransactions/getRawTransaction/{txid}?verbose=true
    - GET  /electrumx/balance/{address} -> {balance: {confirmed, unconfirmed}}
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout_s: float = 10.0,
    ):
        if not base_url:
            raise ValueError("base_url required for RestChainClient")
        self.base_url = base_url.rstrip("/")
        headers = {"Authorization": f"Token {api_token}"} if api_token else {}
        self.http = http or httpx.AsyncClient(timeout=timeout_s, headers=headers)

    async def spendable(self, ref: FundingRef) -> bool:
        r = await self.http.post(
            f"{self.base_url}/blockchain/getTxOut",
            json={"txid": ref.txid, "vout": ref.vout, "mempool": True},
        )
        r.raise_for_status()
        return r.json() is not None

    async def describe(self, ref: FundingRef) -> Optional[FundingObservation]:
        r = await self.http.get(
            f"{self.base_url}/rawtransactions/getRawTransaction/{ref.txid}",
            params={"verbose": "true"},
        )
        if r.status_code == 404:
            return None
        r.raise_for_status()
        tx = _json_object(r.json(), "getRawTransaction")
        outputs = tx.get("vout") or []
        if not isinstance(outputs, list):
            raise ValueError("getRawTransaction: vout must be a list")
        for out in outputs:
            out = _json_object(out, "getRawTransaction vout")
            if int(out.get("n", -1)) != ref.vout:
                continue
            spk = _json_object(out.get("scriptPubKey") or {}, "scriptPubKey")
            addresses = spk.get("addresses") or ([spk["address"]] if spk.get("address") else [])
            return FundingObservation(
                confirmations=int(tx.get("confirmations") or 0),
                recipientAddress=addresses[0] if addresses else None,
                value=_to_sats(out.get("value", 0)),
            )
        return None

    async def address_balance(self, address: str) -> int:
        r = await self.http.get(f"{self.base_url}/electrumx/balance/{address}")
        r.raise_for_status()
        data = _json_object(r.json(), "electrumx balance")
        if not data.get("success", True):
            raise ValueError(f"balance lookup rejected: {data.get('error')}")
        balance = _json_object(data.get("balance") or {}, "electrumx balance")
        return int(balance.get("confirmed", 0)) + int(balance.get("unconfirmed", 0))


class RestBroadcaster:
    """Broadcaster backed by the wallet-service sidecar.

    POST {base}/wallet/send {outputs: [{address, amount}]} -> {txid}
    """

    def __init__(self, base_url: str, *, http: Optional[httpx.AsyncClient] = None, timeout_s: float = 30.0):
        if not base_url:
            raise ValueError("base_url required for RestBroadcaster")
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.AsyncClient(timeout=timeout_s)

    async def send(self, outputs: List[Dict[str, Any]]) -> Optional[str]:
        r = await self.http.post(f"{self.base_url}/wallet/send", json={"outputs": outputs})
        r.raise_for_status()
        return _json_object(r.json(), "wallet send").get("txid") or None
