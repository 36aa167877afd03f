# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""Metered debit ledger for on-chain funding objects.

One funding object (a transaction output paid to the resource server) backs
many API calls. Each call debits its cost from the object's record until the
balance is exhausted. Between revalidations the cached balance is trusted;
once a record is older than ``revalidate_after_s`` the chain is consulted
again and the record is reconciled against what it reports.

Debits against the same funding object are serialized by a per-key lock and
written with compare-and-swap, so two calls never both spend the same
balance. Debits against different objects never contend.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Callable, Dict, Optional

from .chain import ChainOracle, ChainUnavailableError, same_address
from .models import FundingRef, LedgerRecord, PaymentRequirements
from .reasons import InvalidReason
from .store import LedgerStore, LedgerStoreError, VersionConflictError

logger = logging.getLogger(__name__)

DEFAULT_REVALIDATE_AFTER_S = 300.0


@dataclass(frozen=True)
class DebitContext:
    requirements: PaymentRequirements
    payer: str


@dataclass(frozen=True)
class DebitResult:
    isValid: bool
    remainingBalance: int = 0
    invalidReason: Optional[InvalidReason] = None
    record: Optional[LedgerRecord] = None


def _reject(reason: InvalidReason, remaining: int = 0) -> DebitResult:
    return DebitResult(isValid=False, remainingBalance=remaining, invalidReason=reason)


class FundingLedger:
    def __init__(
        self,
        store: LedgerStore,
        oracle: ChainOracle,
        *,
        revalidate_after_s: float = DEFAULT_REVALIDATE_AFTER_S,
        cas_retries: int = 3,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.oracle = oracle
        self.revalidate_after_s = revalidate_after_s
        self.cas_retries = cas_retries
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if not self._holders[key]:
                del self._holders[key]
                del self._locks[key]

    async def get(self, ref: FundingRef) -> Optional[LedgerRecord]:
        return await self.store.get(ref.key)

    async def debit(self, ref: FundingRef, call_cost: int, context: DebitContext) -> DebitResult:
        if call_cost <= 0:
            raise ValueError("call_cost must be positive")
        async with self._locked(ref.key):
            for attempt in range(1, self.cas_retries + 2):
                try:
                    return await self._debit_once(ref, call_cost, context)
                except VersionConflictError as e:
                    # Another process wrote the record; start over from a fresh read.
                    logger.info(f"[LEDGER] {ref.key}: write conflict on attempt {attempt}: {e}")
                except LedgerStoreError as e:
                    logger.error(f"[LEDGER] {ref.key}: store unavailable: {e}")
                    return _reject(InvalidReason.unexpected_utxo_validation_error)
        logger.error(f"[LEDGER] {ref.key}: giving up after {self.cas_retries + 1} conflicting writes")
        return _reject(InvalidReason.unexpected_utxo_validation_error)

    async def _debit_once(self, ref: FundingRef, cost: int, ctx: DebitContext) -> DebitResult:
        record = await self.store.get(ref.key)
        if record is None:
            return await self._open(ref, cost, ctx)
        return await self._draw(record, ref, cost, ctx)

    async def _open(self, ref: FundingRef, cost: int, ctx: DebitContext) -> DebitResult:
        """First sighting: no record is created unless the chain vouches for it.

        The record is bound to the first payer whose signed authorization names
        the output. The oracle only reports the output's recipient, so that
        payer is not matched against the funding transaction's sender.
        """
        try:
            check = await self.oracle.revalidate(ref, ctx.requirements)
        except ChainUnavailableError as e:
            logger.warning(f"[LEDGER] {ref.key}: cannot open record without chain state: {e}")
            return _reject(InvalidReason.utxo_validation_failed)
        if not check.ok:
            logger.info(f"[LEDGER] {ref.key}: rejected on first sighting: {check.reason.value}")
            return _reject(check.reason)

        obs = check.observation
        min_amount = ctx.requirements.minAmountRequired
        if min_amount is not None and obs.value < min_amount:
            return _reject(InvalidReason.insufficient_utxo_balance, obs.value)
        remaining = obs.value - cost
        if remaining < 0:
            return _reject(InvalidReason.insufficient_utxo_balance, obs.value)

        now = self.clock()
        record = LedgerRecord(
            fundingRef=ref.key,
            payerAddress=ctx.payer,
            receiverAddress=obs.recipientAddress or ctx.requirements.payTo,
            originalValue=obs.value,
            remainingBalance=remaining,
            totalDebited=cost,
            firstSeen=now,
            lastUpdated=now,
            lastChecked=now,
            confirmations=obs.confirmations,
        )
        stored = await self.store.put(record, expected_version=None)
        logger.info(
            f"[LEDGER] {ref.key}: opened value={obs.value} debit={cost} remaining={remaining} payer={ctx.payer}"
        )
        return DebitResult(isValid=True, remainingBalance=stored.remainingBalance, record=stored)

    async def _draw(self, record: LedgerRecord, ref: FundingRef, cost: int, ctx: DebitContext) -> DebitResult:
        if not same_address(record.payerAddress, ctx.payer):
            return _reject(InvalidReason.payer_mismatch, record.remainingBalance)
        if not same_address(record.receiverAddress, ctx.requirements.payTo):
            return _reject(InvalidReason.recipient_mismatch, record.remainingBalance)

        now = self.clock()
        remaining = record.remainingBalance
        original = record.originalValue
        last_checked = record.lastChecked
        confirmations = record.confirmations

        if now - record.lastChecked > self.revalidate_after_s:
            try:
                check = await self.oracle.revalidate(ref, ctx.requirements)
            except ChainUnavailableError as e:
                logger.warning(f"[LEDGER] {ref.key}: stale record and chain unavailable: {e}")
                return _reject(InvalidReason.utxo_validation_failed, remaining)
            if not check.ok:
                reason = check.reason
                if reason == InvalidReason.utxo_not_spendable:
                    # Seen spendable before, gone now: consumed outside this ledger.
                    reason = InvalidReason.utxo_previous_spend_detected
                logger.warning(f"[LEDGER] {ref.key}: revalidation failed: {reason.value}")
                return _reject(reason, remaining)

            obs = check.observation
            ceiling = obs.value - record.totalDebited
            if ceiling < 0:
                logger.warning(
                    f"[LEDGER] {ref.key}: previous spend detected, on-chain value {obs.value} "
                    f"below total debited {record.totalDebited}"
                )
                return _reject(InvalidReason.utxo_previous_spend_detected, remaining)
            if ceiling < remaining:
                logger.warning(
                    f"[LEDGER] {ref.key}: balance inconsistency, clamping remaining {remaining} -> {ceiling} "
                    f"(on-chain value {obs.value}, recorded {record.originalValue})"
                )
                remaining = ceiling
                original = obs.value
            last_checked = now
            confirmations = obs.confirmations

        updated = remaining - cost
        if updated < 0:
            return _reject(InvalidReason.insufficient_utxo_balance, remaining)

        new = record.replace(
            originalValue=original,
            remainingBalance=updated,
            totalDebited=record.totalDebited + cost,
            lastUpdated=now,
            lastChecked=last_checked,
            confirmations=confirmations,
        )
        stored = await self.store.put(new, expected_version=record.version)
        logger.info(f"[LEDGER] {ref.key}: debit={cost} remaining={updated} total={stored.totalDebited}")
        return DebitResult(isValid=True, remainingBalance=stored.remainingBalance, record=stored)

    async def reverse(self, ref: FundingRef, amount: int) -> Optional[LedgerRecord]:
        """Return a committed debit whose settlement never reached the chain."""
        async with self._locked(ref.key):
            for _ in range(self.cas_retries + 1):
                record = await self.store.get(ref.key)
                if record is None:
                    return None
                refund = min(amount, record.totalDebited)
                new = record.replace(
                    remainingBalance=record.remainingBalance + refund,
                    totalDebited=record.totalDebited - refund,
                    lastUpdated=self.clock(),
                )
                try:
                    stored = await self.store.put(new, expected_version=record.version)
                except VersionConflictError:
                    continue
                logger.info(f"[LEDGER] {ref.key}: reversed {refund}, remaining={stored.remainingBalance}")
                return stored
        raise LedgerStoreError(f"{ref.key}: could not reverse debit of {amount}")
