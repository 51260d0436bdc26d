"""Tenant credit ledger router."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_tenant_scope, get_auth_context, require_role
from routers.rate_limit import rate_limit
from services.auto_topup import check_auto_topup
from services.credit_costs import list_credit_costs
from services.credit_reports import get_credit_summary, get_usage_breakdown, list_credit_transactions
from services.credits import consume_credits, refund_credits, transfer_credits, update_credit_balance

router = APIRouter()
logger = logging.getLogger(__name__)

FAILURE_STATUS_CODES = {
    "insufficient_credits": 402,
    "rate_limited": 429,
    "invalid_code": 404,
    "invalid_amount": 422,
    "invalid_transaction_type": 422,
    "invalid_reference": 422,
    "invalid_transfer": 422,
    "invalid_grant_type": 422,
    "invalid_max_uses": 422,
    "invalid_period": 422,
}


def raise_for_ledger_failure(result: Dict[str, Any]) -> Dict[str, Any]:
    """Translate a ``success: False`` ledger result into an HTTP error."""
    if result.get("success", True):
        return result
    status_code = FAILURE_STATUS_CODES.get(str(result.get("error")), 409)
    headers = None
    if status_code == 429 and result.get("retry_after_seconds"):
        headers = {"Retry-After": str(result["retry_after_seconds"])}
    raise HTTPException(status_code=status_code, detail=result, headers=headers)


class ConsumeRequest(BaseModel):
    tenant_id: Optional[str] = None
    action_key: str = Field(min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=200)
    reference_type: Optional[str] = Field(default=None, max_length=80)


class BalanceUpdateRequest(BaseModel):
    tenant_id: str
    amount: int = Field(ge=1)
    transaction_type: str
    description: Optional[str] = Field(default=None, max_length=500)
    reference_id: Optional[str] = Field(default=None, max_length=200)
    reference_type: Optional[str] = Field(default=None, max_length=80)
    metadata: Optional[Dict[str, Any]] = None


class TransferRequest(BaseModel):
    from_tenant_id: Optional[str] = None
    to_tenant_id: str
    amount: int = Field(ge=1)
    reference_id: Optional[str] = Field(default=None, max_length=200)
    description: Optional[str] = Field(default=None, max_length=500)


class RefundRequest(BaseModel):
    tenant_id: str
    amount: int = Field(ge=1)
    reference_id: Optional[str] = Field(default=None, max_length=200)
    reference_type: Optional[str] = Field(default=None, max_length=80)
    description: Optional[str] = Field(default=None, max_length=500)


@router.get("")
async def credits_summary(
    tenant_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, tenant_id)
    return await get_credit_summary(db, scoped_tenant_id)


@router.get("/transactions")
async def credit_transactions(
    tenant_id: Optional[str] = Query(default=None),
    transaction_type: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, tenant_id)
    return await list_credit_transactions(
        db,
        scoped_tenant_id,
        limit=limit,
        offset=offset,
        transaction_type=transaction_type,
    )


@router.get("/usage")
async def credit_usage(
    tenant_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, tenant_id)
    return await get_usage_breakdown(db, scoped_tenant_id)


@router.get("/costs")
async def credit_costs(
    category: Optional[str] = Query(default=None),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await list_credit_costs(db, category=category)}


@router.post("/consume")
async def consume(
    request: ConsumeRequest,
    _rate_limit: None = Depends(rate_limit("credits_consume", limit=600, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, request.tenant_id)
    result = await consume_credits(
        db,
        scoped_tenant_id,
        request.action_key,
        description=request.description,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
    )
    raise_for_ledger_failure(result)
    if not result.get("free_action"):
        result["auto_topup"] = await check_auto_topup(db, scoped_tenant_id, result.get("new_balance"))
    return result


@router.post("/transactions")
async def create_transaction(
    request: BalanceUpdateRequest,
    _rate_limit: None = Depends(rate_limit("credits_transactions", limit=600, window_seconds=60)),
    auth: AuthContext = Depends(require_role("admin", "service")),
    db: AsyncSession = Depends(get_db),
):
    result = await update_credit_balance(
        db,
        request.tenant_id,
        request.amount,
        request.transaction_type,
        description=request.description,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        metadata={**(request.metadata or {}), "requested_by": auth.user_id},
    )
    return raise_for_ledger_failure(result)


@router.post("/transfer")
async def transfer(
    request: TransferRequest,
    _rate_limit: None = Depends(rate_limit("credits_transfer", limit=60, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    from_tenant_id = ensure_tenant_scope(auth, request.from_tenant_id)
    result = await transfer_credits(
        db,
        from_tenant_id,
        request.to_tenant_id,
        request.amount,
        reference_id=request.reference_id,
        description=request.description,
    )
    return raise_for_ledger_failure(result)


@router.post("/refund")
async def refund(
    request: RefundRequest,
    _auth: AuthContext = Depends(require_role("admin", "service")),
    db: AsyncSession = Depends(get_db),
):
    result = await refund_credits(
        db,
        request.tenant_id,
        request.amount,
        reference_id=request.reference_id,
        reference_type=request.reference_type,
        description=request.description,
    )
    return raise_for_ledger_failure(result)
