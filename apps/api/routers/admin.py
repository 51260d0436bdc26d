"""Administrative ledger router: tenants, adjustments, pricing and sweeps."""

from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, require_role
from routers.credits import raise_for_ledger_failure
from services.credit_costs import list_credit_costs, upsert_credit_cost
from services.credit_reports import get_platform_credit_stats, list_tenants_with_credits, reconcile_ledger
from services.credits import admin_adjust_credits, grant_bulk_credits
from services.free_grants import grant_free_credits
from services.ledger_jobs import LEDGER_SWEEPS, enqueue_ledger_sweep, run_ledger_sweep
from services.tenants import create_tenant

router = APIRouter()
logger = logging.getLogger(__name__)


class TenantCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    slug: str = Field(min_length=2, max_length=63)
    is_free_tier: bool = True


class AdjustRequest(BaseModel):
    tenant_id: str
    amount: int
    reason: str = Field(min_length=1, max_length=200)
    notes: Optional[str] = Field(default=None, max_length=1000)


class BulkGrantRequest(BaseModel):
    tenant_ids: List[str] = Field(min_length=1, max_length=1000)
    amount: int = Field(ge=1)
    grant_type: str = "support"
    notes: Optional[str] = Field(default=None, max_length=1000)


class FreeGrantRequest(BaseModel):
    tenant_id: Optional[str] = None
    amount: Optional[int] = Field(default=None, ge=0)


class CreditCostRequest(BaseModel):
    credits: int = Field(ge=0)
    action_name: Optional[str] = Field(default=None, max_length=200)
    category: Optional[str] = Field(default=None, max_length=80)
    description: Optional[str] = Field(default=None, max_length=500)
    is_active: bool = True


@router.post("/tenants")
async def register_tenant(
    request: TenantCreateRequest,
    _auth: AuthContext = Depends(require_role("admin", "service")),
    db: AsyncSession = Depends(get_db),
):
    return await create_tenant(db, request.name, request.slug, request.is_free_tier)


@router.get("/tenants")
async def tenants(
    status: Optional[str] = Query(default=None),
    search: Optional[str] = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    items = await list_tenants_with_credits(db, status=status, search=search, limit=limit, offset=offset)
    return {"items": items, "limit": limit, "offset": offset}


@router.get("/tenants/{tenant_id}/reconcile")
async def tenant_reconcile(
    tenant_id: str,
    _auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    return await reconcile_ledger(db, tenant_id)


@router.post("/credits/adjust")
async def adjust_credits(
    request: AdjustRequest,
    auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    result = await admin_adjust_credits(
        db,
        request.tenant_id,
        request.amount,
        reason=request.reason,
        notes=request.notes,
        admin_user_id=auth.user_id,
    )
    return raise_for_ledger_failure(result)


@router.post("/credits/bulk-grant")
async def bulk_grant(
    request: BulkGrantRequest,
    auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    result = await grant_bulk_credits(
        db,
        request.tenant_ids,
        request.amount,
        request.grant_type,
        notes=request.notes,
        admin_user_id=auth.user_id,
    )
    return raise_for_ledger_failure(result)


@router.post("/credits/free-grant")
async def free_grant(
    request: FreeGrantRequest,
    _auth: AuthContext = Depends(require_role("admin", "service")),
    db: AsyncSession = Depends(get_db),
):
    result = await grant_free_credits(db, tenant_id=request.tenant_id, amount=request.amount)
    return raise_for_ledger_failure(result)


@router.get("/credit-costs")
async def credit_costs(
    category: Optional[str] = Query(default=None),
    include_inactive: bool = Query(default=True),
    _auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await list_credit_costs(db, category=category, include_inactive=include_inactive)}


@router.put("/credit-costs/{action_key}")
async def update_credit_cost(
    action_key: str,
    request: CreditCostRequest,
    _auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    return await upsert_credit_cost(
        db,
        action_key,
        credits=request.credits,
        action_name=request.action_name,
        category=request.category,
        description=request.description,
        is_active=request.is_active,
    )


@router.post("/sweeps/{name}")
async def run_sweep(
    name: str,
    background: bool = Query(default=False),
    auth: AuthContext = Depends(require_role("admin", "service")),
    db: AsyncSession = Depends(get_db),
):
    if name not in LEDGER_SWEEPS:
        raise HTTPException(status_code=404, detail=f"Unknown sweep: {name}")
    if background:
        try:
            job = enqueue_ledger_sweep(name)
        except Exception as exc:
            logger.error("ledger_sweep_enqueue_failed name=%s: %s", name, exc)
            raise HTTPException(status_code=503, detail="Sweep queue is unavailable.") from exc
        return {"queued": True, "sweep": name, "job_id": job.id}

    logger.info("ledger_sweep_requested name=%s by=%s", name, auth.user_id)
    result = await run_ledger_sweep(name, db)
    return {"queued": False, "sweep": name, **result}


@router.get("/stats")
async def platform_stats(
    _auth: AuthContext = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
):
    return await get_platform_credit_stats(db)
