# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class FundingRef(NamedTuple):
    """On-chain funding object: transaction id + output index."""

    txid: str
    vout: int

    @property
    def key(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, key: str) -> "FundingRef":
        txid, _, vout = key.rpartition(":")
        if not txid or not vout.isdigit():
            raise ValueError(f"invalid funding reference: {key!r}")
        return cls(txid=txid, vout=int(vout))


# -------------------------------
# Wire models
# -------------------------------


class PaymentAuthorization(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    from_: str = Field(..., alias="from", description="Payer address")
    to: str = Field(..., description="Recipient address")
    value: int = Field(..., description="Amount in the smallest unit (satoshis)")
    validAfter: int = 0
    validBefore: int
    nonce: str = ""
    # Funding object backing a metered authorization
    txid: Optional[str] = None
    vout: Optional[int] = None

    @property
    def funding_ref(self) -> Optional[FundingRef]:
        if self.txid is None or self.vout is None:
            return None
        return FundingRef(txid=self.txid, vout=self.vout)


class AuthorizationPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    authorization: PaymentAuthorization
    signature: str


class PaymentEnvelope(BaseModel):
    model_config = ConfigDict(frozen=True)

    x402Version: int = 1
    scheme: str
    network: str
    payload: AuthorizationPayload


class PaymentRequirements(BaseModel):
    """Set by the resource server; trusted input to verify/settle."""

    model_config = ConfigDict(frozen=True)

    scheme: str
    network: str
    payTo: str
    maxAmountRequired: int
    minAmountRequired: Optional[int] = None
    minConfirmations: Optional[int] = None
    maxTimeoutSeconds: int = 60
    resource: Optional[str] = None
    description: Optional[str] = None
    mimeType: Optional[str] = None
    extra: Optional[Dict[str, Any]] = None


class VerifyResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    isValid: bool
    payer: str = ""
    invalidReason: Optional[str] = None


class SettleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool
    payer: str = ""
    transaction: str = ""
    network: Optional[str] = None
    errorReason: Optional[str] = None


class SupportedKind(BaseModel):
    x402Version: int
    scheme: str
    network: str


class SupportedResponse(BaseModel):
    kinds: List[SupportedKind] = Field(default_factory=list)


# -------------------------------
# Ledger
# -------------------------------


class LedgerRecord(BaseModel):
    """Debit state of one funding object. Replaced, never mutated in place."""

    model_config = ConfigDict(frozen=True)

    fundingRef: str
    payerAddress: str
    receiverAddress: str
    originalValue: int
    remainingBalance: int
    totalDebited: int
    firstSeen: float
    lastUpdated: float
    lastChecked: float
    confirmations: int = 0
    version: int = 0

    @model_validator(mode="after")
    def _balance_invariant(self) -> "LedgerRecord":
        if self.remainingBalance < 0:
            raise ValueError("remainingBalance cannot be negative")
        if self.remainingBalance + self.totalDebited != self.originalValue:
            raise ValueError("remainingBalance + totalDebited must equal originalValue")
        return self

    def replace(self, **changes: Any) -> "LedgerRecord":
        # model_copy(update=...) skips validation
        return LedgerRecord(**{**self.model_dump(), **changes})
