# Copyright 2025 t54 labs
# SPDX-License-Identifier: Apache-2.0
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from cachetools import TTLCache
from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from .codec import EnvelopeError, decode_payment_header
from .config import FacilitatorRuntimeConfig, get_facilitator_cfg
from .engine import SettlementEngine
from .models import FundingRef, PaymentRequirements, SettleResponse, SupportedResponse, VerifyResponse

logger = logging.getLogger(__name__)

# Debug: most recent verify/settle outcomes
SNAPSHOTS: TTLCache[str, Dict[str, Any]] = TTLCache(maxsize=16, ttl=3600)


class FacilitatorRequest(BaseModel):
    x402Version: int = Field(1, description="x402 API version")
    paymentPayload: Optional[Dict[str, Any]] = None
    paymentHeader: Optional[str] = Field(None, description="base64(JSON paymentPayload), X-PAYMENT form")
    paymentRequirements: Dict[str, Any]


def get_engine() -> SettlementEngine:
    # Replaced via app.dependency_overrides in run_facilitator.build_app
    raise RuntimeError("SettlementEngine not configured")


router = APIRouter(prefix="/x402", tags=["x402-facilitator"])


def _error_code(status_code: int) -> str:
    return {400: "BAD_REQUEST", 404: "NOT_FOUND"}.get(status_code, "INTERNAL_ERROR")


def _error_response(e: HTTPException, req_id: str) -> JSONResponse:
    msg = e.detail if isinstance(e.detail, str) else str(e.detail)
    return JSONResponse(
        status_code=e.status_code,
        content={"error": {"code": _error_code(e.status_code), "message": msg}, "request_id": req_id},
        headers={"X-Request-ID": req_id},
    )


def _unpack(body: FacilitatorRequest) -> Tuple[Dict[str, Any], PaymentRequirements]:
    try:
        requirements = PaymentRequirements.model_validate(body.paymentRequirements)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise HTTPException(status_code=400, detail=f"Invalid paymentRequirements: {fields}")
    if body.paymentPayload is not None:
        return body.paymentPayload, requirements
    if not body.paymentHeader:
        raise HTTPException(status_code=400, detail="paymentPayload or paymentHeader required")
    try:
        return decode_payment_header(body.paymentHeader), requirements
    except EnvelopeError as e:
        raise HTTPException(status_code=400, detail=f"Invalid paymentHeader: {e}")


def _snapshot(kind: str, req_id: str, requirements: PaymentRequirements, result: BaseModel) -> None:
    SNAPSHOTS[kind] = {
        "at": datetime.now(timezone.utc).isoformat(),
        "request_id": req_id,
        "payTo": requirements.payTo,
        "maxAmountRequired": requirements.maxAmountRequired,
        "result": result.model_dump(),
    }


@router.get("/supported", response_model=SupportedResponse)
async def supported(engine: SettlementEngine = Depends(get_engine)):
    return engine.supported()


@router.post("/verify", response_model=VerifyResponse)
async def verify(
    body: FacilitatorRequest,
    response: Response,
    engine: SettlementEngine = Depends(get_engine),
):
    req_id = uuid.uuid4().hex
    response.headers["X-Request-ID"] = req_id
    try:
        payload, requirements = _unpack(body)
        result = await engine.verify(payload, requirements, x402_version=body.x402Version)
    except HTTPException as e:
        logger.info(f"[{req_id}] [VERIFY] Rejected request: {e.detail}")
        return _error_response(e, req_id)
    except Exception as e:
        logger.exception(f"[{req_id}] [VERIFY] Unhandled error: {e!r}")
        return _error_response(HTTPException(status_code=500, detail="Internal error"), req_id)
    logger.info(f"[{req_id}] [VERIFY] isValid={result.isValid} reason={result.invalidReason} payer={result.payer}")
    _snapshot("last_verify", req_id, requirements, result)
    return result


@router.post("/settle", response_model=SettleResponse)
async def settle(
    body: FacilitatorRequest,
    response: Response,
    engine: SettlementEngine = Depends(get_engine),
):
    req_id = uuid.uuid4().hex
    response.headers["X-Request-ID"] = req_id
    try:
        payload, requirements = _unpack(body)
        result = await engine.settle(payload, requirements, x402_version=body.x402Version)
    except HTTPException as e:
        logger.info(f"[{req_id}] [SETTLE] Rejected request: {e.detail}")
        return _error_response(e, req_id)
    except Exception as e:
        logger.exception(f"[{req_id}] [SETTLE] Unhandled error: {e!r}")
        return _error_response(HTTPException(status_code=500, detail="Internal error"), req_id)
    logger.info(
        f"[{req_id}] [SETTLE] success={result.success} tx={result.transaction or '-'} reason={result.errorReason}"
    )
    _snapshot("last_settle", req_id, requirements, result)
    return result


@router.get("/debug")
async def debug(cfg: FacilitatorRuntimeConfig = Depends(get_facilitator_cfg)) -> Dict[str, Any]:
    if not cfg.debug_enabled:
        raise HTTPException(status_code=404, detail="Not Found")
    return {
        "supported": {"x402Version": cfg.x402_version, "scheme": cfg.scheme, "network": cfg.network},
        "upstream": {
            "chain_api_url": cfg.chain_api_url,
            "wallet_url": cfg.wallet_url,
            "ledger_backend": cfg.ledger_backend,
        },
        "last_verify": SNAPSHOTS.get("last_verify"),
        "last_settle": SNAPSHOTS.get("last_settle"),
    }


@router.get("/ledger/{txid}/{vout}")
async def ledger_record(
    txid: str,
    vout: int,
    cfg: FacilitatorRuntimeConfig = Depends(get_facilitator_cfg),
    engine: SettlementEngine = Depends(get_engine),
) -> Dict[str, Any]:
    if not cfg.debug_enabled:
        raise HTTPException(status_code=404, detail="Not Found")
    record = await engine.ledger.get(FundingRef(txid, vout))
    if record is None:
        raise HTTPException(status_code=404, detail=f"No ledger record for {txid}:{vout}")
    return record.model_dump()
