# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""x402 UTXO Facilitator

Verifies and settles x402 payment authorizations backed by on-chain funding
objects, metering one funding object across many API calls.

Usage:
    from x402_utxo_facilitator import router, get_engine

    app = FastAPI()
    app.dependency_overrides[get_engine] = lambda: engine
    app.include_router(router)
"""

from .chain import ChainOracle, ChainUnavailableError, RestBroadcaster, RestChainClient
from .codec import (
    EnvelopeError,
    canonical_message,
    decode_payment_header,
    encode_payment_header,
    parse_payment_payload,
)
from .config import FacilitatorRuntimeConfig, get_facilitator_cfg
from .engine import SettlementEngine
from .ledger import DebitContext, DebitResult, FundingLedger
from .models import (
    FundingRef,
    LedgerRecord,
    PaymentAuthorization,
    PaymentEnvelope,
    PaymentRequirements,
    SettleResponse,
    SupportedResponse,
    VerifyResponse,
)
from .otel import setup_otel_from_env
from .reasons import InvalidReason
from .routes import FacilitatorRequest, get_engine, router
from .signature import RestSignatureService, SignatureVerifier
from .store import LedgerStoreError, MemoryLedgerStore, RedisLedgerStore, VersionConflictError

__version__ = "0.1.0"

__all__ = [
    "router",
    "get_engine",
    "FacilitatorRequest",
    "FacilitatorRuntimeConfig",
    "get_facilitator_cfg",
    "SettlementEngine",
    "FundingLedger",
    "DebitContext",
    "DebitResult",
    "ChainOracle",
    "ChainUnavailableError",
    "RestChainClient",
    "RestBroadcaster",
    "SignatureVerifier",
    "RestSignatureService",
    "MemoryLedgerStore",
    "RedisLedgerStore",
    "LedgerStoreError",
    "VersionConflictError",
    "EnvelopeError",
    "parse_payment_payload",
    "canonical_message",
    "decode_payment_header",
    "encode_payment_header",
    "FundingRef",
    "LedgerRecord",
    "PaymentAuthorization",
    "PaymentEnvelope",
    "PaymentRequirements",
    "VerifyResponse",
    "SettleResponse",
    "SupportedResponse",
    "InvalidReason",
    "setup_otel_from_env",
]
