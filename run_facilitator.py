#!/usr/bin/env python3
# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
"""
Standalone runner for the x402 UTXO Facilitator.

Env:
  - FACILITATOR_PORT (default: 8000)
  - FACILITATOR_HOST (default: 0.0.0.0)
  - FACILITATOR_CHAIN_API_URL / FACILITATOR_CHAIN_API_TOKEN (chain indexer)
  - FACILITATOR_WALLET_URL (wallet service: signatures and broadcast)
  - FACILITATOR_ADDRESS (payout source checked before each broadcast)
  - FACILITATOR_LEDGER_BACKEND (memory|redis), FACILITATOR_REDIS_URL
  - LOG_LEVEL (default: INFO)
"""

import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

# Add package sources to Python path
repo_root = os.path.dirname(os.path.abspath(__file__))
sys.path.insert(0, os.path.join(repo_root, "facilitator", "src"))

# Load .env BEFORE building config so env vars are visible to default factories
from dotenv import load_dotenv  # type: ignore

load_dotenv()

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from x402_utxo_facilitator import (
    ChainOracle,
    FacilitatorRuntimeConfig,
    FundingLedger,
    MemoryLedgerStore,
    RedisLedgerStore,
    RestBroadcaster,
    RestChainClient,
    RestSignatureService,
    SettlementEngine,
    SignatureVerifier,
    get_engine,
    get_facilitator_cfg,
    router,
    setup_otel_from_env,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger("utxo_facilitator")


def build_engine(cfg: FacilitatorRuntimeConfig, chain_http: httpx.AsyncClient, wallet_http: httpx.AsyncClient):
    oracle = ChainOracle(
        RestChainClient(cfg.chain_api_url, http=chain_http),
        timeout_s=cfg.chain_timeout_s,
        default_min_confirmations=cfg.min_confirmations,
    )
    if cfg.ledger_backend == "redis":
        store = RedisLedgerStore.from_url(cfg.redis_url)
    elif cfg.ledger_backend == "memory":
        store = MemoryLedgerStore()
    else:
        raise ValueError(f"Unknown FACILITATOR_LEDGER_BACKEND: {cfg.ledger_backend}")
    ledger = FundingLedger(
        store,
        oracle,
        revalidate_after_s=cfg.revalidate_after_s,
        cas_retries=cfg.ledger_cas_retries,
    )
    logger.info(f"Ledger backend: {cfg.ledger_backend}")
    return SettlementEngine(
        cfg,
        signatures=SignatureVerifier(RestSignatureService(cfg.wallet_url, http=wallet_http)),
        oracle=oracle,
        ledger=ledger,
        broadcaster=RestBroadcaster(cfg.wallet_url, http=wallet_http),
    )


def build_app(
    cfg: Optional[FacilitatorRuntimeConfig] = None,
    *,
    engine: Optional[SettlementEngine] = None,
) -> FastAPI:
    cfg = cfg or FacilitatorRuntimeConfig()
    clients = []
    if engine is None:
        chain_headers = {"Authorization": f"Token {cfg.chain_api_token}"} if cfg.chain_api_token else {}
        chain_http = httpx.AsyncClient(timeout=cfg.chain_timeout_s, headers=chain_headers)
        wallet_http = httpx.AsyncClient(timeout=cfg.broadcast_timeout_s)
        clients = [chain_http, wallet_http]
        engine = build_engine(cfg, chain_http, wallet_http)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        for client in clients:
            await client.aclose()
        redis_client = getattr(engine.ledger.store, "redis", None)
        if redis_client is not None:
            await redis_client.aclose()

    app = FastAPI(
        title="x402 UTXO Facilitator",
        description="Metered x402 verify/settle over on-chain funding objects",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Wire runtime config and engine via dependencies
    app.dependency_overrides[get_facilitator_cfg] = lambda: cfg
    app.dependency_overrides[get_engine] = lambda: engine

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        req_id = uuid.uuid4().hex
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
        return JSONResponse(
            status_code=400,
            content={
                "error": {"code": "BAD_REQUEST", "message": f"Missing or malformed fields: {fields}"},
                "request_id": req_id,
            },
            headers={"X-Request-ID": req_id},
        )

    # Health
    @app.get("/health")
    async def health(cfg: FacilitatorRuntimeConfig = Depends(get_facilitator_cfg)) -> dict:
        return {
            "status": "ok",
            "time": datetime.now(timezone.utc).isoformat(),
            "network": cfg.network,
            "scheme": cfg.scheme,
            "ledger_backend": cfg.ledger_backend,
        }

    # Mount facilitator router (/x402/*)
    app.include_router(router)

    logger.info("UTXO Facilitator app initialized")
    return app


if __name__ == "__main__":
    import uvicorn

    setup_otel_from_env()
    host = os.getenv("FACILITATOR_HOST", "0.0.0.0")
    port = int(os.getenv("FACILITATOR_PORT", "8000"))
    uvicorn.run(build_app(), host=host, port=port, log_level="info")
