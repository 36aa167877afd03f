# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
import os
import sys
from typing import Any, Dict

import pytest


def _add_project_sources_to_syspath() -> None:
    root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    for path in (
        root,
        os.path.join(root, "facilitator", "src"),
        os.path.join(root, "packages", "x402-utxo-client", "src"),
    ):
        if path not in sys.path:
            sys.path.insert(0, path)


_add_project_sources_to_syspath()


# Import after adding to syspath
from fakes import (  # noqa: E402
    FACILITATOR,
    PAY_TO,
    PAYER,
    TXID,
    FakeBroadcaster,
    FakeChainClient,
    FakeClock,
    FakeSignatureService,
)
from x402_utxo_facilitator import (  # noqa: E402
    ChainOracle,
    FacilitatorRuntimeConfig,
    FundingLedger,
    MemoryLedgerStore,
    PaymentRequirements,
    SettlementEngine,
    SignatureVerifier,
)
from x402_utxo_facilitator.chain import FundingObservation  # noqa: E402


@pytest.fixture
def test_env(monkeypatch) -> None:
    """Set up test environment variables."""
    monkeypatch.setenv("FACILITATOR_NETWORK", "bch")
    monkeypatch.setenv("FACILITATOR_SCHEME", "utxo")
    monkeypatch.setenv("FACILITATOR_ADDRESS", FACILITATOR)
    monkeypatch.setenv("FACILITATOR_CHAIN_API_URL", "http://chain.test/v5")
    monkeypatch.setenv("FACILITATOR_WALLET_URL", "http://wallet.test")
    monkeypatch.setenv("FACILITATOR_LEDGER_BACKEND", "memory")
    monkeypatch.setenv("FACILITATOR_DEBUG_ENABLED", "1")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_700_000_000.0)


@pytest.fixture
def chain() -> FakeChainClient:
    """Chain with one 1000-sat funding object paid to PAY_TO and a funded payout source."""
    c = FakeChainClient()
    c.add_output(TXID, 0, FundingObservation(confirmations=3, recipientAddress=PAY_TO, value=1000))
    c.balances[FACILITATOR] = 1_000_000
    c.balances[PAYER] = 5_000
    return c


@pytest.fixture
def signer() -> FakeSignatureService:
    return FakeSignatureService(PAYER)


@pytest.fixture
def broadcaster() -> FakeBroadcaster:
    return FakeBroadcaster()


@pytest.fixture
def oracle(chain: FakeChainClient) -> ChainOracle:
    return ChainOracle(chain, timeout_s=0.5, default_min_confirmations=1)


@pytest.fixture
def store() -> MemoryLedgerStore:
    return MemoryLedgerStore()


@pytest.fixture
def ledger(store, oracle, clock) -> FundingLedger:
    return FundingLedger(store, oracle, revalidate_after_s=300, cas_retries=3, clock=clock)


@pytest.fixture
def cfg(test_env) -> FacilitatorRuntimeConfig:
    return FacilitatorRuntimeConfig(broadcast_timeout_s=0.5)


@pytest.fixture
def engine(cfg, signer, oracle, ledger, broadcaster, clock) -> SettlementEngine:
    return SettlementEngine(
        cfg,
        signatures=SignatureVerifier(signer),
        oracle=oracle,
        ledger=ledger,
        broadcaster=broadcaster,
        clock=clock,
    )


@pytest.fixture
def requirements_data() -> Dict[str, Any]:
    return {
        "scheme": "utxo",
        "network": "bch",
        "payTo": PAY_TO,
        "maxAmountRequired": 100,
        "maxTimeoutSeconds": 60,
        "resource": "https://api.example.com/weather",
        "description": "Weather lookup",
    }


@pytest.fixture
def requirements(requirements_data) -> PaymentRequirements:
    return PaymentRequirements(**requirements_data)
