"""Billing router: purchases and automatic top-ups."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_tenant_scope, get_auth_context, require_role
from routers.credits import raise_for_ledger_failure
from routers.rate_limit import rate_limit
from services.auto_topup import (
    check_auto_topup,
    get_auto_topup_config,
    record_auto_topup,
    serialize_auto_topup_config,
    upsert_auto_topup_config,
)
from services.credits import get_tenant_or_404, record_credit_purchase

router = APIRouter()
logger = logging.getLogger(__name__)


class AutoTopupConfigRequest(BaseModel):
    tenant_id: Optional[str] = None
    enabled: Optional[bool] = None
    trigger_threshold: Optional[int] = Field(default=None, ge=0)
    topup_amount: Optional[int] = Field(default=None, ge=1)
    max_per_month: Optional[int] = Field(default=None, ge=0)
    payment_method_id: Optional[str] = Field(default=None, max_length=200)


class AutoTopupRecordRequest(BaseModel):
    tenant_id: str
    credits_amount: int = Field(ge=1)
    external_payment_id: str = Field(min_length=1, max_length=200)


class PurchaseRequest(BaseModel):
    tenant_id: str
    credits: int = Field(ge=1)
    external_payment_id: str = Field(min_length=1, max_length=200)
    provider: str = Field(default="stripe", max_length=40)


@router.get("/auto-topup")
async def auto_topup_config(
    tenant_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, tenant_id)
    await get_tenant_or_404(db, scoped_tenant_id)
    config = await get_auto_topup_config(db, scoped_tenant_id)
    return serialize_auto_topup_config(config, scoped_tenant_id)


@router.put("/auto-topup")
async def update_auto_topup_config(
    request: AutoTopupConfigRequest,
    _rate_limit: None = Depends(rate_limit("auto_topup_config", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, request.tenant_id)
    return await upsert_auto_topup_config(
        db,
        scoped_tenant_id,
        enabled=request.enabled,
        trigger_threshold=request.trigger_threshold,
        topup_amount=request.topup_amount,
        max_per_month=request.max_per_month,
        payment_method_id=request.payment_method_id,
    )


@router.get("/auto-topup/check")
async def auto_topup_check(
    tenant_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_tenant_id = ensure_tenant_scope(auth, tenant_id)
    await get_tenant_or_404(db, scoped_tenant_id)
    return await check_auto_topup(db, scoped_tenant_id)


@router.post("/auto-topup/record")
async def auto_topup_record(
    request: AutoTopupRecordRequest,
    _auth: AuthContext = Depends(require_role("service")),
    db: AsyncSession = Depends(get_db),
):
    result = await record_auto_topup(db, request.tenant_id, request.credits_amount, request.external_payment_id)
    return raise_for_ledger_failure(result)


@router.post("/purchases")
async def record_purchase(
    request: PurchaseRequest,
    _auth: AuthContext = Depends(require_role("service")),
    db: AsyncSession = Depends(get_db),
):
    result = await record_credit_purchase(
        db,
        request.tenant_id,
        request.credits,
        external_payment_id=request.external_payment_id,
        provider=request.provider,
    )
    return raise_for_ledger_failure(result)
