"""Promo and referral code router."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_tenant_scope, get_auth_context, require_role
from routers.credits import raise_for_ledger_failure
from routers.rate_limit import rate_limit
from services.promotions import (
    create_promo_code,
    get_or_create_referral_code,
    redeem_promo_code,
    redeem_referral_code,
)

router = APIRouter()


class RedeemRequest(BaseModel):
    tenant_id: Optional[str] = None
    code: str = Field(min_length=1, max_length=64)


class PromoCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    credits_amount: int = Field(ge=1)
    description: Optional[str] = Field(default=None, max_length=500)
    max_uses: Optional[int] = Field(default=None, ge=1)
    valid_from: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@router.post("/promo/redeem")
async def redeem_promo(
    request: RedeemRequest,
    _rate_limit: None = Depends(rate_limit("promo_redeem", limit=10, window_seconds=300)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, request.tenant_id)
    result = await redeem_promo_code(db, scoped_tenant_id, request.code)
    return raise_for_ledger_failure(result)


@router.post("/promo")
async def create_promo(
    request: PromoCreateRequest,
    _auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    result = await create_promo_code(
        db,
        request.code,
        request.credits_amount,
        description=request.description,
        max_uses=request.max_uses,
        valid_from=request.valid_from,
        expires_at=request.expires_at,
    )
    return raise_for_ledger_failure(result)


@router.get("/referral")
async def referral_code(
    tenant_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, tenant_id)
    return await get_or_create_referral_code(db, scoped_tenant_id)


@router.post("/referral/redeem")
async def redeem_referral(
    request: RedeemRequest,
    _rate_limit: None = Depends(rate_limit("referral_redeem", limit=10, window_seconds=300)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, request.tenant_id)
    result = await redeem_referral_code(db, scoped_tenant_id, request.code)
    return raise_for_ledger_failure(result)
