# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Check the facilitator payout source and, optionally, a funding object.

Usage:
  python scripts/check_balances.py [<txid>:<vout>]
"""

import asyncio
import os
import sys
from datetime import datetime

from dotenv import load_dotenv

# Load environment variables
sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "facilitator", "src"))
load_dotenv()

from x402_utxo_facilitator import ChainOracle, ChainUnavailableError, FacilitatorRuntimeConfig, RestChainClient  # noqa: E402
from x402_utxo_facilitator.chain import SATS_PER_COIN  # noqa: E402
from x402_utxo_facilitator.models import FundingRef  # noqa: E402


def _coins(sats: int) -> str:
    return f"{sats / SATS_PER_COIN:.8f}"


async def check_balances(funding_key: str = ""):
    """Check payout source balance and funding object state"""

    print("""
╔══════════════════════════════════════════════════════════╗
║           UTXO Facilitator Balance Check                 ║
╚══════════════════════════════════════════════════════════╝
    """)

    cfg = FacilitatorRuntimeConfig()
    client = RestChainClient(cfg.chain_api_url, api_token=cfg.chain_api_token, timeout_s=cfg.chain_timeout_s)
    oracle = ChainOracle(client, timeout_s=cfg.chain_timeout_s, default_min_confirmations=cfg.min_confirmations)
    print(f"🔗 Indexer: {cfg.chain_api_url} (network: {cfg.network})")
    print(f"📅 Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")

    try:
        if not cfg.facilitator_address:
            print("\n❌ FACILITATOR_ADDRESS not configured; settlement will fail")
        else:
            sats = await oracle.address_balance(cfg.facilitator_address)
            print(f"\n💰 Payout source: {cfg.facilitator_address}")
            print(f"   Balance: {sats} sats ({_coins(sats)})")
            if sats <= 0:
                print("   ❌ Empty: every settlement will return insufficient_funds")

        if funding_key:
            ref = FundingRef.parse(funding_key)
            print(f"\n🧾 Funding object: {ref.key}")
            if not await oracle.spendable(ref):
                print("   ❌ Not spendable (spent or unknown)")
                return
            obs = await oracle.describe(ref)
            if obs is None:
                print("   ❌ Output not found in transaction")
                return
            print(f"   Value:         {obs.value} sats ({_coins(obs.value)})")
            print(f"   Recipient:     {obs.recipientAddress}")
            print(f"   Confirmations: {obs.confirmations} (required: {cfg.min_confirmations})")
    except ChainUnavailableError as e:
        print(f"\n❌ Chain lookup failed: {e}")
    finally:
        await client.http.aclose()


if __name__ == "__main__":
    asyncio.run(check_balances(sys.argv[1] if len(sys.argv) > 1 else ""))
