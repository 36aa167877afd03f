# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import os
from typing import Optional

from pydantic import BaseModel, Field


def _flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _optional(name: str) -> Optional[str]:
    return os.getenv(name) or None


class FacilitatorRuntimeConfig(BaseModel):
    # Supported payment kind
    network: str = Field(default_factory=lambda: os.getenv("FACILITATOR_NETWORK", "bch"))
    scheme: str = Field(default_factory=lambda: os.getenv("FACILITATOR_SCHEME", "utxo"))
    x402_version: int = Field(default_factory=lambda: int(os.getenv("FACILITATOR_X402_VERSION", "1")))

    # Payout source for settlement broadcasts
    facilitator_address: Optional[str] = Field(default_factory=lambda: _optional("FACILITATOR_ADDRESS"))

    # Upstream capabilities
    chain_api_url: str = Field(
        default_factory=lambda: os.getenv("FACILITATOR_CHAIN_API_URL", "https://api.fullstack.cash/v5")
    )
    chain_api_token: Optional[str] = Field(default_factory=lambda: _optional("FACILITATOR_CHAIN_API_TOKEN"))
    wallet_url: str = Field(default_factory=lambda: os.getenv("FACILITATOR_WALLET_URL", "http://localhost:5010"))
    chain_timeout_s: float = Field(default_factory=lambda: float(os.getenv("FACILITATOR_CHAIN_TIMEOUT_S", "10")))
    broadcast_timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("FACILITATOR_BROADCAST_TIMEOUT_S", "30"))
    )

    # Ledger policy
    revalidate_after_s: float = Field(
        default_factory=lambda: float(os.getenv("FACILITATOR_REVALIDATE_AFTER_S", "300"))
    )
    min_confirmations: int = Field(default_factory=lambda: int(os.getenv("FACILITATOR_MIN_CONFIRMATIONS", "1")))
    ledger_backend: str = Field(default_factory=lambda: os.getenv("FACILITATOR_LEDGER_BACKEND", "memory").lower())
    redis_url: str = Field(default_factory=lambda: os.getenv("FACILITATOR_REDIS_URL", "redis://localhost:6379/0"))
    ledger_cas_retries: int = Field(default_factory=lambda: int(os.getenv("FACILITATOR_LEDGER_CAS_RETRIES", "3")))

    debug_enabled: bool = Field(default_factory=lambda: _flag("FACILITATOR_DEBUG_ENABLED", "1"))


def get_facilitator_cfg() -> FacilitatorRuntimeConfig:
    return FacilitatorRuntimeConfig()
