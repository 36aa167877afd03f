# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union

from opentelemetry import trace

from .chain import Broadcaster, ChainOracle, ChainUnavailableError, same_address
from .codec import EnvelopeError, canonical_message, parse_payment_payload, payment_kind, payment_version
from .config import FacilitatorRuntimeConfig
from .ledger import DebitContext, DebitResult, FundingLedger
from .models import (
    FundingRef,
    PaymentEnvelope,
    PaymentRequirements,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyResponse,
)
from .reasons import InvalidReason
from .signature import SignatureVerifier
from .store import LedgerStoreError

logger = logging.getLogger(__name__)
tracer = trace.get_tracer("x402_utxo_facilitator")

RawPayload = Union[PaymentEnvelope, Dict[str, Any]]


def _extract_payer(pp: Any) -> str:
    if isinstance(pp, PaymentEnvelope):
        return pp.payload.authorization.from_
    for path in (("payload", "authorization", "from"), ("payload", "from"), ("from",)):
        ref: Any = pp
        for key in path:
            if not isinstance(ref, dict) or key not in ref:
                ref = None
                break
            ref = ref[key]
        if isinstance(ref, str):
            return ref
    return ""


@dataclass(frozen=True)
class Verdict:
    """Outcome of the shared verification pipeline."""

    result: VerifyResponse
    envelope: Optional[PaymentEnvelope] = None
    debit: Optional[DebitResult] = None

    @property
    def funding_ref(self) -> Optional[FundingRef]:
        if self.envelope is None or self.debit is None:
            return None
        return self.envelope.payload.authorization.funding_ref


def _invalid(reason: InvalidReason, payer: str = "") -> Verdict:
    return Verdict(result=VerifyResponse(isValid=False, payer=payer, invalidReason=reason.value))


class SettlementEngine:
    """Verifies payment authorizations and settles them on-chain.

    ``verify`` and ``settle`` share one pipeline; settlement never relies on
    an earlier verify call. A funding-object authorization commits a ledger
    debit as the last pipeline step, so each call through either entry point
    consumes one metered unit.
    """

    def __init__(
        self,
        cfg: FacilitatorRuntimeConfig,
        *,
        signatures: SignatureVerifier,
        oracle: ChainOracle,
        ledger: FundingLedger,
        broadcaster: Broadcaster,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.signatures = signatures
        self.oracle = oracle
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.clock = clock

    def supported(self) -> SupportedResponse:
        return SupportedResponse(
            kinds=[SupportedKind(x402Version=self.cfg.x402_version, scheme=self.cfg.scheme, network=self.cfg.network)]
        )

    async def run_pipeline(
        self,
        payment_payload: RawPayload,
        requirements: PaymentRequirements,
        *,
        x402_version: Optional[int] = None,
    ) -> Verdict:
        # Payment kind gates everything else
        scheme, network = payment_kind(payment_payload)
        if requirements.network != self.cfg.network or network != self.cfg.network:
            return _invalid(InvalidReason.invalid_network)
        if requirements.scheme != self.cfg.scheme or scheme != self.cfg.scheme:
            return _invalid(InvalidReason.invalid_scheme)
        version = self.cfg.x402_version
        if payment_version(payment_payload) != version or x402_version not in (None, version):
            return _invalid(InvalidReason.invalid_x402_version)

        try:
            envelope = parse_payment_payload(payment_payload)
        except EnvelopeError as e:
            logger.info(f"[VERIFY] Malformed payment payload: {e}")
            return _invalid(InvalidReason.invalid_payload, _extract_payer(payment_payload))

        auth = envelope.payload.authorization
        payer = auth.from_

        message = canonical_message(auth)
        if not await self.signatures.verify(message, envelope.payload.signature, payer):
            return _invalid(InvalidReason.invalid_signature, payer)

        now = int(self.clock())
        if now < auth.validAfter:
            return _invalid(InvalidReason.authorization_not_yet_valid, payer)
        if now >= auth.validBefore:
            return _invalid(InvalidReason.authorization_expired, payer)

        if not same_address(auth.to, requirements.payTo):
            return _invalid(InvalidReason.recipient_mismatch, payer)

        if auth.value <= 0:
            return _invalid(InvalidReason.authorization_value_too_low, payer)
        if auth.value < requirements.maxAmountRequired:
            return _invalid(InvalidReason.invalid_exact_payload_authorization_value, payer)

        ref = auth.funding_ref
        if ref is None:
            # No funding object: the payer's own balance is the only signal, and an
            # unreachable indexer does not block verification.
            try:
                balance = await self.oracle.address_balance(payer)
                if balance < auth.value:
                    return _invalid(InvalidReason.insufficient_funds, payer)
            except ChainUnavailableError as e:
                logger.warning(f"[VERIFY] Payer balance check skipped for {payer}: {e}")
            return Verdict(result=VerifyResponse(isValid=True, payer=payer), envelope=envelope)

        debit = await self.ledger.debit(ref, auth.value, DebitContext(requirements=requirements, payer=payer))
        if not debit.isValid:
            return _invalid(debit.invalidReason, payer)
        return Verdict(result=VerifyResponse(isValid=True, payer=payer), envelope=envelope, debit=debit)

    async def verify(
        self,
        payment_payload: RawPayload,
        requirements: PaymentRequirements,
        *,
        x402_version: Optional[int] = None,
    ) -> VerifyResponse:
        with tracer.start_as_current_span("facilitator.verify") as span:
            span.set_attribute("x402.network", requirements.network)
            try:
                verdict = await self.run_pipeline(payment_payload, requirements, x402_version=x402_version)
            except Exception as e:
                logger.exception(f"[VERIFY] Unexpected error: {e!r}")
                span.set_attribute("x402.reason", InvalidReason.unexpected_verify_error.value)
                return VerifyResponse(
                    isValid=False,
                    payer=_extract_payer(payment_payload),
                    invalidReason=InvalidReason.unexpected_verify_error.value,
                )
            span.set_attribute("x402.valid", verdict.result.isValid)
            if verdict.result.invalidReason:
                span.set_attribute("x402.reason", verdict.result.invalidReason)
            return verdict.result

    async def _reverse(self, verdict: Verdict, amount: int) -> None:
        ref = verdict.funding_ref
        if ref is None:
            return
        try:
            await self.ledger.reverse(ref, amount)
        except LedgerStoreError as e:
            logger.error(f"[SETTLE] Could not reverse debit of {amount} on {ref.key}: {e}")

    async def settle(
        self,
        payment_payload: RawPayload,
        requirements: PaymentRequirements,
        *,
        x402_version: Optional[int] = None,
    ) -> SettleResponse:
        with tracer.start_as_current_span("facilitator.settle") as span:
            span.set_attribute("x402.network", requirements.network)
            result = await self._settle(payment_payload, requirements, x402_version)
            span.set_attribute("x402.success", result.success)
            if result.errorReason:
                span.set_attribute("x402.reason", result.errorReason)
            return result

    async def _settle(
        self, payment_payload: RawPayload, requirements: PaymentRequirements, x402_version: Optional[int]
    ) -> SettleResponse:
        network = self.cfg.network
        verdict: Optional[Verdict] = None
        broadcast_attempted = False

        def fail(reason: InvalidReason, payer: str) -> SettleResponse:
            return SettleResponse(success=False, errorReason=reason.value, transaction="", network=network, payer=payer)

        try:
            verdict = await self.run_pipeline(payment_payload, requirements, x402_version=x402_version)
            payer = verdict.result.payer
            if not verdict.result.isValid:
                return SettleResponse(
                    success=False,
                    errorReason=verdict.result.invalidReason,
                    transaction="",
                    network=network,
                    payer=payer,
                )

            amount = verdict.envelope.payload.authorization.value
            source = self.cfg.facilitator_address
            if not source:
                raise RuntimeError("FACILITATOR_ADDRESS not configured")
            try:
                available = await self.oracle.address_balance(source)
            except ChainUnavailableError as e:
                logger.warning(f"[SETTLE] Payout source {source} balance unavailable: {e}")
                await self._reverse(verdict, amount)
                return fail(InvalidReason.utxo_validation_failed, payer)
            if available < amount:
                logger.warning(f"[SETTLE] Payout source {source} holds {available}, needs {amount}")
                await self._reverse(verdict, amount)
                return fail(InvalidReason.insufficient_funds, payer)

            outputs = [{"address": requirements.payTo, "amount": amount}]
            broadcast_attempted = True
            try:
                txid = await asyncio.wait_for(
                    self.broadcaster.send(outputs), timeout=self.cfg.broadcast_timeout_s
                )
            except asyncio.TimeoutError:
                # The transfer may or may not be on the network; never retried here.
                logger.error(
                    f"[SETTLE] Broadcast of {amount} to {requirements.payTo} for {payer} timed out after "
                    f"{self.cfg.broadcast_timeout_s}s; outcome unknown, possible double-broadcast on retry"
                )
                return fail(InvalidReason.settlement_outcome_unknown, payer)

            if not txid:
                await self._reverse(verdict, amount)
                return fail(InvalidReason.invalid_transaction_state, payer)

            if (requirements.minConfirmations or 0) > 0:
                logger.info(f"[SETTLE] {txid} broadcast; confirmations are checked out of band")
            logger.info(f"[SETTLE] Settled {amount} to {requirements.payTo} for {payer}: {txid}")
            return SettleResponse(success=True, transaction=txid, network=network, payer=payer)
        except Exception as e:
            logger.exception(f"[SETTLE] Unexpected error: {e!r}")
            if verdict is not None and verdict.result.isValid and not broadcast_attempted:
                await self._reverse(verdict, verdict.envelope.payload.authorization.value)
            return fail(InvalidReason.unexpected_settle_error, _extract_payer(payment_payload))
