"""Read-only credit reporting: summaries, history, reconciliation and platform stats."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import HTTPException
from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import TenantCreditAccount
from models.credit_analytics_event import CreditAnalyticsEvent
from models.credit_transaction import TRANSACTION_TYPES, CreditTransaction
from models.tenant import Tenant
from services.credits import get_tenant_or_404


CREDIT_STATUSES = ("depleted", "critical", "warning", "healthy")


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def classify_credit_status(balance: int) -> str:
    balance = int(balance or 0)
    if balance <= 0:
        return "depleted"
    if balance <= int(settings.CREDIT_STATUS_CRITICAL):
        return "critical"
    if balance <= int(settings.CREDIT_STATUS_WARNING):
        return "warning"
    return "healthy"


def serialize_transaction(row: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "amount": int(row.amount),
        "balance_after": int(row.balance_after),
        "transaction_type": row.transaction_type,
        "action_type": row.action_type,
        "reference_id": row.reference_id,
        "reference_type": row.reference_type,
        "description": row.description,
        "metadata": row.metadata_json or {},
        "created_at": _iso(row.created_at),
    }


async def get_credit_summary(db: AsyncSession, tenant_id: str) -> Dict[str, Any]:
    """Balance and counters for one tenant; does not create the account."""
    tenant = await get_tenant_or_404(db, tenant_id)
    account = await db.get(TenantCreditAccount, tenant_id)
    if account is None:
        return {
            "tenant_id": tenant_id,
            "tenant_name": tenant.name,
            "balance": 0,
            "free_credits_balance": 0,
            "purchased_credits_balance": 0,
            "lifetime_earned": 0,
            "lifetime_spent": 0,
            "is_free_tier": bool(tenant.is_free_tier),
            "credits_used_today": 0,
            "credits_used_this_week": 0,
            "credits_used_this_month": 0,
            "last_free_grant_at": None,
            "next_free_grant_at": None,
            "status": classify_credit_status(0),
        }
    return {
        "tenant_id": tenant_id,
        "tenant_name": tenant.name,
        "balance": int(account.balance),
        "free_credits_balance": int(account.free_credits_balance),
        "purchased_credits_balance": int(account.purchased_credits_balance),
        "lifetime_earned": int(account.lifetime_earned),
        "lifetime_spent": int(account.lifetime_spent),
        "is_free_tier": bool(account.is_free_tier),
        "credits_used_today": int(account.credits_used_today),
        "credits_used_this_week": int(account.credits_used_this_week),
        "credits_used_this_month": int(account.credits_used_this_month),
        "last_free_grant_at": _iso(account.last_free_grant_at),
        "next_free_grant_at": _iso(account.next_free_grant_at),
        "status": classify_credit_status(account.balance),
    }


async def list_credit_transactions(
    db: AsyncSession,
    tenant_id: str,
    *,
    limit: int = 50,
    offset: int = 0,
    transaction_type: Optional[str] = None,
) -> Dict[str, Any]:
    await get_tenant_or_404(db, tenant_id)
    if transaction_type and transaction_type not in TRANSACTION_TYPES:
        raise HTTPException(status_code=422, detail=f"Unknown transaction_type: {transaction_type}")
    limit = min(max(int(limit), 1), 200)
    offset = max(int(offset), 0)

    filters = [CreditTransaction.tenant_id == tenant_id]
    if transaction_type:
        filters.append(CreditTransaction.transaction_type == transaction_type)

    total = (await db.execute(select(func.count(CreditTransaction.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(CreditTransaction)
        .where(*filters)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(limit)
        .offset(offset)
    )
    return {
        "tenant_id": tenant_id,
        "total": int(total or 0),
        "limit": limit,
        "offset": offset,
        "items": [serialize_transaction(row) for row in result.scalars().all()],
    }


async def get_usage_breakdown(db: AsyncSession, tenant_id: str) -> Dict[str, Any]:
    """Credits spent per action key, largest first."""
    await get_tenant_or_404(db, tenant_id)
    spent = func.sum(-CreditTransaction.amount)
    result = await db.execute(
        select(CreditTransaction.action_type, func.count(CreditTransaction.id), spent)
        .where(
            CreditTransaction.tenant_id == tenant_id,
            CreditTransaction.transaction_type == "usage",
        )
        .group_by(CreditTransaction.action_type)
        .order_by(spent.desc())
    )
    actions = [
        {"action_key": action or "unknown", "count": int(count or 0), "credits": int(credits or 0)}
        for action, count, credits in result.all()
    ]
    return {
        "tenant_id": tenant_id,
        "total_credits": sum(item["credits"] for item in actions),
        "actions": actions,
    }


async def reconcile_ledger(db: AsyncSession, tenant_id: str) -> Dict[str, Any]:
    """Compare the stored balance with the replayed sum of ledger amounts."""
    await get_tenant_or_404(db, tenant_id)
    account = await db.get(TenantCreditAccount, tenant_id)
    balance = int(account.balance) if account is not None else 0
    row = (
        await db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0), func.count(CreditTransaction.id)).where(
                CreditTransaction.tenant_id == tenant_id
            )
        )
    ).one()
    ledger_sum = int(row[0] or 0)
    return {
        "tenant_id": tenant_id,
        "balance": balance,
        "ledger_sum": ledger_sum,
        "difference": balance - ledger_sum,
        "consistent": balance == ledger_sum,
        "transaction_count": int(row[1] or 0),
    }


async def get_platform_credit_stats(db: AsyncSession) -> Dict[str, Any]:
    account = TenantCreditAccount
    totals = (
        await db.execute(
            select(
                func.count(account.tenant_id),
                func.coalesce(func.sum(account.balance), 0),
                func.coalesce(func.sum(account.lifetime_earned), 0),
                func.coalesce(func.sum(account.lifetime_spent), 0),
                func.coalesce(func.sum(account.credits_used_today), 0),
                func.coalesce(func.sum(account.credits_used_this_month), 0),
            )
        )
    ).one()
    tenant_count = (await db.execute(select(func.count(Tenant.id)))).scalar_one()
    free_tier_count = (
        await db.execute(select(func.count(Tenant.id)).where(Tenant.is_free_tier.is_(True)))
    ).scalar_one()

    by_type_rows = await db.execute(
        select(CreditTransaction.transaction_type, func.count(CreditTransaction.id), func.sum(CreditTransaction.amount))
        .group_by(CreditTransaction.transaction_type)
        .order_by(CreditTransaction.transaction_type)
    )
    by_type = {
        tx_type: {"count": int(count or 0), "net_amount": int(amount or 0)}
        for tx_type, count, amount in by_type_rows.all()
    }
    events = await db.execute(
        select(CreditAnalyticsEvent.event_type, func.count(CreditAnalyticsEvent.id)).group_by(
            CreditAnalyticsEvent.event_type
        )
    )

    status_counts = {status: 0 for status in CREDIT_STATUSES}
    balances = await db.execute(select(account.balance))
    for balance in balances.scalars().all():
        status_counts[classify_credit_status(balance)] += 1

    return {
        "tenant_count": int(tenant_count or 0),
        "free_tier_tenant_count": int(free_tier_count or 0),
        "account_count": int(totals[0] or 0),
        "total_balance": int(totals[1] or 0),
        "lifetime_earned": int(totals[2] or 0),
        "lifetime_spent": int(totals[3] or 0),
        "credits_used_today": int(totals[4] or 0),
        "credits_used_this_month": int(totals[5] or 0),
        "transactions_by_type": by_type,
        "events_by_type": {event_type: int(count or 0) for event_type, count in events.all()},
        "status_counts": status_counts,
    }


async def list_tenants_with_credits(
    db: AsyncSession,
    *,
    status: Optional[str] = None,
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> List[Dict[str, Any]]:
    """Tenants joined with their balances, lowest balance first."""
    if status and status not in CREDIT_STATUSES:
        raise HTTPException(status_code=422, detail=f"status must be one of: {', '.join(CREDIT_STATUSES)}")

    balance = func.coalesce(TenantCreditAccount.balance, 0)
    query = (
        select(Tenant, TenantCreditAccount)
        .outerjoin(TenantCreditAccount, TenantCreditAccount.tenant_id == Tenant.id)
        .order_by(balance.asc(), Tenant.slug.asc())
    )
    if search:
        pattern = f"%{search.strip().lower()}%"
        query = query.where(or_(func.lower(Tenant.name).like(pattern), func.lower(Tenant.slug).like(pattern)))
    if status == "depleted":
        query = query.where(balance <= 0)
    elif status == "critical":
        query = query.where(balance > 0, balance <= int(settings.CREDIT_STATUS_CRITICAL))
    elif status == "warning":
        query = query.where(
            balance > int(settings.CREDIT_STATUS_CRITICAL),
            balance <= int(settings.CREDIT_STATUS_WARNING),
        )
    elif status == "healthy":
        query = query.where(balance > int(settings.CREDIT_STATUS_WARNING))

    query = query.limit(min(max(int(limit), 1), 200)).offset(max(int(offset), 0))
    result = await db.execute(query)

    rows: List[Dict[str, Any]] = []
    for tenant, account in result.all():
        current = int(account.balance) if account is not None else 0
        rows.append(
            {
                "tenant_id": tenant.id,
                "name": tenant.name,
                "slug": tenant.slug,
                "is_free_tier": bool(tenant.is_free_tier),
                "balance": current,
                "lifetime_spent": int(account.lifetime_spent) if account is not None else 0,
                "credits_used_this_month": int(account.credits_used_this_month) if account is not None else 0,
                "next_free_grant_at": _iso(account.next_free_grant_at) if account is not None else None,
                "status": classify_credit_status(current),
            }
        )
    return rows
