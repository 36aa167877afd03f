#!/usr/bin/env python3
# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
View a funding object's ledger record on a running facilitator

Usage:
  python scripts/view_ledger.py <txid>:<vout>

Or view the latest verify/settle outcomes:
  python scripts/view_ledger.py --debug
"""

import asyncio
import json
import os
import sys

import httpx

FACILITATOR_URL = os.getenv("FACILITATOR_URL", "http://localhost:8000")


async def view_ledger(funding_key: str, base_url: str = FACILITATOR_URL):
    """View a single ledger record"""
    txid, _, vout = funding_key.rpartition(":")
    if not txid or not vout.isdigit():
        print(f"❌ Expected <txid>:<vout>, got {funding_key!r}")
        return
    async with httpx.AsyncClient() as client:
        try:
            resp = await client.get(f"{base_url}/x402/ledger/{txid}/{vout}")
        except httpx.HTTPError as e:
            print(f"❌ Connection failed: {e}")
            return
    if resp.status_code != 200:
        print(f"❌ Error: {resp.status_code} - {resp.text}")
        return
    record = resp.json()
    print("\n" + "=" * 80)
    print(f"🧾 Ledger record for {funding_key}")
    print("=" * 80)
    print(json.dumps(record, indent=2))
    print("=" * 80 + "\n")
    spent = record["totalDebited"]
    total = record["originalValue"] or 1
    print(f"📊 Used {spent}/{record['originalValue']} sats ({100 * spent / total:.1f}%), "
          f"{record['remainingBalance']} remaining")


async def view_debug(base_url: str = FACILITATOR_URL):
    """Display health and latest outcomes"""
    async with httpx.AsyncClient() as client:
        try:
            health = await client.get(f"{base_url}/health")
            debug = await client.get(f"{base_url}/x402/debug")
        except httpx.HTTPError as e:
            print(f"❌ Connection failed: {e}")
            return
    print("\n🏥 Health:")
    print(json.dumps(health.json(), indent=2))
    if debug.status_code == 200:
        print("\n🔍 Debug:")
        print(json.dumps(debug.json(), indent=2))
    else:
        print(f"\n⚠️  Debug endpoint unavailable ({debug.status_code}); set FACILITATOR_DEBUG_ENABLED=1")


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    if sys.argv[1] == "--debug":
        asyncio.run(view_debug())
    else:
        asyncio.run(view_ledger(sys.argv[1]))


if __name__ == "__main__":
    main()
