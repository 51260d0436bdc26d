"""Free-tier grant cycle and periodic usage counter resets."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import TenantCreditAccount
from models.tenant import Tenant
from services.credits import WARNING_FLAGS, as_utc, lock_credit_account, utcnow, write_ledger_entry


logger = logging.getLogger(__name__)

USAGE_PERIODS = {
    "daily": ("credits_used_today", "last_daily_reset"),
    "weekly": ("credits_used_this_week", "last_weekly_reset"),
    "monthly": ("credits_used_this_month", "last_monthly_reset"),
}


def _grant_amount(amount: Optional[int]) -> Optional[int]:
    value = int(settings.FREE_TIER_MONTHLY_CREDITS) if amount is None else amount
    try:
        value = int(value)
    except (TypeError, ValueError):
        return None
    return value if value >= 0 else None


def _is_grant_due(account: TenantCreditAccount, now: datetime) -> bool:
    next_grant = as_utc(account.next_free_grant_at)
    return next_grant is None or next_grant <= now


async def apply_free_grant(
    db: AsyncSession,
    account: TenantCreditAccount,
    amount: int,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Run one grant cycle on a locked account (caller commits)."""
    current = now or utcnow()
    expired = 0
    if settings.FREE_CREDITS_EXPIRE_ON_GRANT and int(account.free_credits_balance) > 0:
        expired = min(int(account.free_credits_balance), int(account.balance))
        if expired > 0:
            await write_ledger_entry(
                db,
                account,
                -expired,
                "expiration",
                description="Unused free credits expired",
                reference_type="free_grant_cycle",
                now=current,
            )

    entry = await write_ledger_entry(
        db,
        account,
        amount,
        "free_grant",
        description="Monthly free credit grant",
        reference_type="free_grant_cycle",
        metadata={"expired_credits": expired},
        now=current,
    )
    account.free_credits_balance = amount
    account.last_free_grant_at = current
    account.next_free_grant_at = current + timedelta(days=max(int(settings.FREE_GRANT_INTERVAL_DAYS), 1))
    account.credits_used_today = 0
    account.credits_used_this_month = 0
    for flag in WARNING_FLAGS:
        setattr(account, flag, False)

    return {
        "tenant_id": account.tenant_id,
        "transaction_id": entry.id,
        "amount": amount,
        "expired_credits": expired,
        "new_balance": int(account.balance),
        "free_credits_balance": int(account.free_credits_balance),
        "next_free_grant_at": account.next_free_grant_at.isoformat(),
    }


async def grant_free_credits(
    db: AsyncSession,
    tenant_id: Optional[str] = None,
    amount: Optional[int] = None,
) -> Dict[str, Any]:
    """Grant free credits to one tenant, or sweep every due free-tier tenant.

    With a tenant the grant is unconditional. Without one, only tenants whose
    ``next_free_grant_at`` is unset or past are granted, so re-running the
    sweep in the same period is a no-op.
    """
    grant = _grant_amount(amount)
    if grant is None:
        return {"success": False, "error": "invalid_amount", "message": "amount must be >= 0"}

    if tenant_id:
        try:
            account = await lock_credit_account(db, tenant_id)
            result = await apply_free_grant(db, account, grant)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("free_grant_failed tenant=%s: %s", tenant_id, exc)
            raise
        logger.info("free_grant tenant=%s amount=%s balance=%s", tenant_id, grant, result["new_balance"])
        return {"success": True, **result}

    return await run_free_grant_sweep(db, amount=grant)


async def _due_free_tier_tenant_ids(db: AsyncSession, now: datetime) -> List[str]:
    account = TenantCreditAccount
    result = await db.execute(
        select(Tenant.id)
        .outerjoin(account, account.tenant_id == Tenant.id)
        .where(
            or_(
                and_(account.tenant_id.is_(None), Tenant.is_free_tier.is_(True)),
                and_(
                    account.is_free_tier.is_(True),
                    or_(account.next_free_grant_at.is_(None), account.next_free_grant_at <= now),
                ),
            )
        )
        .order_by(Tenant.id)
    )
    return [str(row) for row in result.scalars().all()]


async def run_free_grant_sweep(db: AsyncSession, amount: Optional[int] = None) -> Dict[str, Any]:
    grant = _grant_amount(amount)
    if grant is None:
        return {"success": False, "error": "invalid_amount", "message": "amount must be >= 0"}

    now = utcnow()
    granted: List[str] = []
    for tenant_id in await _due_free_tier_tenant_ids(db, now):
        try:
            account = await lock_credit_account(db, tenant_id)
            # Another sweep may have granted this tenant since the scan.
            if not account.is_free_tier or not _is_grant_due(account, now):
                await db.commit()
                continue
            await apply_free_grant(db, account, grant, now)
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("free_grant_sweep_failed tenant=%s: %s", tenant_id, exc)
            raise
        granted.append(tenant_id)

    logger.info("free_grant_sweep granted=%s amount=%s", len(granted), grant)
    return {"success": True, "granted_count": len(granted), "tenant_ids": granted, "amount": grant}


def usage_period_start(period: str, now: Optional[datetime] = None) -> datetime:
    current = (now or utcnow()).astimezone(timezone.utc)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "daily":
        return midnight
    if period == "weekly":
        # Weeks start on Sunday.
        return midnight - timedelta(days=(midnight.weekday() + 1) % 7)
    if period == "monthly":
        return midnight.replace(day=1)
    raise ValueError(f"Unknown usage period: {period}")


async def reset_usage_counters(
    db: AsyncSession,
    period: str,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Zero one usage counter on every account whose last reset predates the current period."""
    if period not in USAGE_PERIODS:
        return {"success": False, "error": "invalid_period", "message": f"Unknown usage period: {period}"}

    current = now or utcnow()
    counter_column, reset_column = USAGE_PERIODS[period]
    counter = getattr(TenantCreditAccount, counter_column)
    last_reset = getattr(TenantCreditAccount, reset_column)
    period_start = usage_period_start(period, current)

    result = await db.execute(
        update(TenantCreditAccount)
        .where(or_(last_reset.is_(None), last_reset < period_start))
        .values({counter: 0, last_reset: current})
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    reset_count = int(result.rowcount or 0)
    logger.info("usage_reset period=%s accounts=%s", period, reset_count)
    return {"success": True, "period": period, "reset_count": reset_count, "period_start": period_start.isoformat()}
